"""Unit tests for the shard group coordinator."""

from __future__ import annotations

from pathlib import Path

import pytest
import torch
import torch.nn as nn

from conftest import assert_tensor_close
from trainsync.config import GroupConfig
from trainsync.data import BatchStats
from trainsync.data import fake_batch
from trainsync.runtime.batch_fit import BatchFitEstimator
from trainsync.runtime.collectives import LocalCollectives
from trainsync.runtime.group import GroupCoordinator
from trainsync.scheduler import TrainingScheduler


class _TinyLM(nn.Module):
    def __init__(self) -> None:
        super().__init__()
        self.embed = nn.Embedding(8, 4)
        self.proj = nn.Linear(4, 1)

    def forward(self, stream_0: torch.Tensor) -> torch.Tensor:
        return self.proj(self.embed(stream_0)).pow(2).mean()


def _config(tmp_path: Path, **kwargs) -> GroupConfig:
    options = {
        "model": str(tmp_path / "model.pt"),
        "devices": ["cpu", "cpu"],
        "learning_rate": 1e-2,
        "vocab_sizes": [8],
    }
    options.update(kwargs)
    return GroupConfig(**options)


def _group(tmp_path: Path, **kwargs) -> GroupCoordinator:
    scheduler = kwargs.pop("scheduler", None)
    loss_fn = kwargs.pop("loss_fn", None)
    return GroupCoordinator(
        _config(tmp_path, **kwargs),
        _TinyLM,
        scheduler=scheduler,
        collectives=LocalCollectives(),
        loss_fn=loss_fn,
    )


def _batches(count: int, seed: int = 0) -> list[dict[str, torch.Tensor]]:
    generator = torch.Generator().manual_seed(seed)
    return [fake_batch([5], 3, [8], generator=generator) for _ in range(count)]


def _assert_replicas_equal(group: GroupCoordinator) -> None:
    reference = group.shards[0].module.state_dict()
    for shard in group.shards[1:]:
        for name, tensor in shard.module.state_dict().items():
            assert torch.equal(tensor, reference[name]), name


def test_builds_one_synchronized_shard_per_device(tmp_path: Path) -> None:
    group = _group(tmp_path, devices=["cpu", "cpu", "cpu"])

    assert [shard.index for shard in group.shards] == [0, 1, 2]
    assert len(group.optimizer_shards) == 3
    assert group.shards[0].module is not group.shards[1].module
    assert not group.cost_scale.enabled
    _assert_replicas_equal(group)


def test_unknown_device_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="Unknown device string"):
        _group(tmp_path, devices=["not-a-device"])


def test_scheduler_without_required_methods_is_rejected(tmp_path: Path) -> None:
    class _Incomplete:
        def load(self, path):
            del path

    with pytest.raises(TypeError, match="number_of_completed_updates"):
        _group(tmp_path, scheduler=_Incomplete())


def test_update_matches_adamw_on_averaged_gradients(tmp_path: Path) -> None:
    group = _group(tmp_path)
    reference = _TinyLM()
    reference.load_state_dict(group.shards[0].module.state_dict())
    batches = _batches(2)

    assert group.update(batches)

    for batch in batches:
        reference(**batch).backward()
    for param in reference.parameters():
        param.grad.div_(2.0)
    torch.optim.AdamW(reference.parameters(), lr=1e-2, betas=(0.9, 0.98), eps=1e-9, weight_decay=0.0).step()

    for name, param in reference.named_parameters():
        assert_tensor_close(
            dict(group.shards[0].module.named_parameters())[name], param, rtol=1e-5, atol=1e-6, msg=name
        )
    _assert_replicas_equal(group)
    assert all(param.grad is None for shard in group.shards for param in shard.module.parameters())


def test_update_requires_one_batch_per_shard(tmp_path: Path) -> None:
    group = _group(tmp_path)

    with pytest.raises(ValueError, match="one per shard"):
        group.update(_batches(1))


def test_overflow_skips_update_and_reduces_factor(tmp_path: Path) -> None:
    def nan_loss(module, batch):
        return module(**batch) * float("nan")

    group = _group(tmp_path, cost_scaling=["4", "100", "2.0", "0.5"], loss_fn=nan_loss)
    before = {name: tensor.clone() for name, tensor in group.shards[0].module.state_dict().items()}

    assert not group.update(_batches(2))

    assert group.cost_scale.factor == 8.0
    for name, tensor in group.shards[0].module.state_dict().items():
        assert torch.equal(tensor, before[name])
    assert all(param.grad is None for shard in group.shards for param in shard.module.parameters())


def test_clean_updates_grow_factor_and_advance_scheduler(tmp_path: Path) -> None:
    scheduler = TrainingScheduler(learning_rate=1e-2)
    group = _group(tmp_path, cost_scaling=["2", "2", "2.0", "0.5"], scheduler=scheduler)

    for seed in range(4):
        assert group.update(_batches(2, seed=seed))

    assert group.cost_scale.factor == 16.0
    assert scheduler.number_of_completed_updates() == 4
    assert scheduler.last_loss is not None


def test_collect_stats_defaults_multiplier_to_shard_count(tmp_path: Path, monkeypatch) -> None:
    seen = {}

    def fake_estimate(self, multiplier=1.0):
        seen["engine"] = self.engine
        seen["multiplier"] = multiplier
        return BatchStats()

    monkeypatch.setattr(BatchFitEstimator, "estimate", fake_estimate)
    group = _group(tmp_path, devices=["cpu", "cpu", "cpu"], workspace_mb=64)

    group.collect_stats()
    assert seen["multiplier"] == 3.0
    assert seen["engine"] is group.shards[0].engine

    group.collect_stats(multiplier=1.5)
    assert seen["multiplier"] == 1.5


def test_collect_stats_without_workspace_is_rejected(tmp_path: Path) -> None:
    group = _group(tmp_path)

    with pytest.raises(ValueError, match="workspace_mb"):
        group.collect_stats()


def test_collect_stats_with_workspace_terminates(tmp_path: Path) -> None:
    group = _group(tmp_path, workspace_mb=1, mini_batch_fit_step=10, max_length=30)

    stats = group.collect_stats()

    sizes = [size for _, size in stats.items()]
    assert list(stats) == [(10,), (20,), (30,)]
    assert all(size > 0 and size % 2 == 0 for size in sizes)
    assert all(earlier >= later for earlier, later in zip(sizes, sizes[1:]))


def test_typical_trg_batch_words_is_plain_state(tmp_path: Path) -> None:
    group = _group(tmp_path)

    group.set_typical_trg_batch_words(4096)

    assert group.typical_trg_batch_words == 4096


def test_finalized_group_rejects_further_work(tmp_path: Path) -> None:
    group = _group(tmp_path)
    group.finalize()

    assert group.is_finalized
    for call in (
        group.save,
        group.load,
        group.collect_stats,
        lambda: group.update(_batches(2)),
    ):
        with pytest.raises(RuntimeError, match="Training has already finished."):
            call()


def test_save_then_load_restores_training_state(tmp_path: Path) -> None:
    scheduler = TrainingScheduler(learning_rate=1e-2)
    group = _group(tmp_path, scheduler=scheduler)
    for seed in range(3):
        group.update(_batches(2, seed=seed))

    group.save()

    assert (tmp_path / "model.pt").exists()
    assert (tmp_path / "model.iter3.pt").exists()
    assert (tmp_path / "model.pt.optimizer.pt").exists()
    assert (tmp_path / "model.pt.progress.yml").exists()

    restored_scheduler = TrainingScheduler(learning_rate=1e-2)
    restored = _group(tmp_path, scheduler=restored_scheduler)
    assert restored.load()

    assert restored_scheduler.number_of_completed_updates() == 3
    for original, loaded in zip(group.shards, restored.shards):
        for name, tensor in original.module.state_dict().items():
            assert torch.equal(loaded.module.state_dict()[name], tensor)
    for original, loaded in zip(group.optimizer_shards, restored.optimizer_shards):
        assert loaded.step_count == original.step_count == 3
        for name in original.owned_names():
            assert torch.equal(loaded.state[name]["exp_avg"], original.state[name]["exp_avg"])


def test_load_skips_checkpoint_missing_optimizer_state(tmp_path: Path) -> None:
    group = _group(tmp_path, scheduler=TrainingScheduler(learning_rate=1e-2))
    for seed in range(2):
        group.update(_batches(2, seed=seed))
    group.save()
    (tmp_path / "model.pt.optimizer.pt").unlink()

    restored_scheduler = TrainingScheduler(learning_rate=1e-2)
    restored = _group(tmp_path, scheduler=restored_scheduler)
    fresh = {name: tensor.clone() for name, tensor in restored.shards[0].module.state_dict().items()}

    assert not restored.load()

    assert restored_scheduler.number_of_completed_updates() == 0
    assert all(optimizer.step_count == 0 for optimizer in restored.optimizer_shards)
    for name, tensor in restored.shards[0].module.state_dict().items():
        assert torch.equal(tensor, fresh[name])


def test_smoothed_save_keeps_live_weights_in_memory(tmp_path: Path) -> None:
    group = _group(tmp_path, exponential_smoothing=0.1, overwrite=True)
    for seed in range(3):
        group.update(_batches(2, seed=seed))
    live = {name: tensor.clone() for name, tensor in group.shards[0].module.state_dict().items()}

    group.save(is_final=True)

    for name, tensor in group.shards[0].module.state_dict().items():
        assert torch.equal(tensor, live[name])
    saved = torch.load(tmp_path / "model.pt", weights_only=True)["state_dict"]
    assert not torch.equal(saved["proj.weight"], live["proj.weight"])
    assert not (tmp_path / "model.iter3.pt").exists()
    _assert_replicas_equal(group)


def test_load_seeds_pretrained_weights(tmp_path: Path) -> None:
    seed_group = _group(tmp_path / "seed")
    seed_group.update(_batches(2))
    seed_group.save()

    group = _group(tmp_path, pretrained_model=str(tmp_path / "seed" / "model.pt"))
    assert not group.load()

    for shard in group.shards:
        for name, tensor in seed_group.shards[0].module.state_dict().items():
            assert torch.equal(shard.module.state_dict()[name], tensor)
    assert all(optimizer.step_count == 0 for optimizer in group.optimizer_shards)
