"""Unit tests for model weight persistence."""

from __future__ import annotations

from pathlib import Path

import pytest
import torch
import yaml

from trainsync.model import TorchModelWrapper
from trainsync.model import inference_config_path
from trainsync.runtime.contracts import Shard


def _shard(seed: int) -> Shard:
    torch.manual_seed(seed)
    return Shard(index=0, device=torch.device("cpu"), module=torch.nn.Linear(3, 2), engine=None)


def test_save_load_round_trip(tmp_path: Path) -> None:
    path = str(tmp_path / "nested" / "model.pt")
    source = _shard(0)
    target = _shard(1)
    wrapper = TorchModelWrapper()

    wrapper.save(source, path)
    wrapper.load(target, path)

    assert torch.equal(source.module.weight, target.module.weight)
    assert torch.equal(source.module.bias, target.module.bias)


def test_pretrained_load_copies_weights(tmp_path: Path) -> None:
    path = str(tmp_path / "seed.pt")
    wrapper = TorchModelWrapper()
    source = _shard(0)
    wrapper.save(source, path)
    target = _shard(1)

    wrapper.load(target, path, load_optimizer_relevant_state=False)

    assert torch.equal(source.module.weight, target.module.weight)


def test_inference_config_written_on_request(tmp_path: Path) -> None:
    path = str(tmp_path / "model.pt")
    wrapper = TorchModelWrapper({"beam_size": 4, "normalize": 0.6})

    wrapper.save(_shard(0), path)
    assert not Path(inference_config_path(path)).exists()

    wrapper.save(_shard(0), path, write_inference_config=True)
    with open(inference_config_path(path), "r", encoding="utf-8") as handle:
        assert yaml.safe_load(handle) == {"beam_size": 4, "normalize": 0.6}
    assert torch.load(path, weights_only=True)["inference_config"]["beam_size"] == 4


def test_load_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError, match="Model file not found"):
        TorchModelWrapper().load(_shard(0), str(tmp_path / "missing.pt"))


def test_load_rejects_unknown_format(tmp_path: Path) -> None:
    path = tmp_path / "model.pt"
    torch.save({"format_version": 99, "state_dict": {}}, path)

    with pytest.raises(ValueError, match="Unsupported model format version"):
        TorchModelWrapper().load(_shard(0), str(path))
