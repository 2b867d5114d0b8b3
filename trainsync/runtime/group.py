"""
Shard group coordinator.

Builds one model replica per configured device and ties cost scaling, batch fitting and
checkpointing together behind one object. Local shards run sequentially in the calling
thread; cross-process work goes through the injected collectives strategy.
"""

from __future__ import annotations

from typing import Any
from typing import Callable
from typing import Optional
from typing import Sequence

import torch
import torch.nn as nn

from trainsync.config import GroupConfig
from trainsync.data import BatchStats
from trainsync.logging import get_logger
from trainsync.model import TorchModelWrapper
from trainsync.optimizer import ShardedAdamW
from trainsync.runtime.batch_fit import BatchFitEstimator
from trainsync.runtime.checkpoint import CheckpointCoordinator
from trainsync.runtime.collectives import TorchCollectives
from trainsync.runtime.contracts import Batch
from trainsync.runtime.contracts import Collectives
from trainsync.runtime.contracts import ModelWrapper
from trainsync.runtime.contracts import Scheduler
from trainsync.runtime.contracts import Shard
from trainsync.runtime.cost_scaling import CostScaleController
from trainsync.runtime.engine import LossFn
from trainsync.runtime.engine import TorchExecutionEngine


logger = get_logger(__name__)

_MODEL_WRAPPER_METHODS = ("load", "save")
_SCHEDULER_METHODS = ("load", "save", "number_of_completed_updates", "validate")


def _require_methods(obj: Any, methods: Sequence[str], role: str) -> None:
    missing = [name for name in methods if not callable(getattr(obj, name, None))]
    if missing:
        raise TypeError(f"{role} does not implement {', '.join(missing)}")


def parse_device(value: str) -> torch.device:
    try:
        return torch.device(value)
    except RuntimeError as exc:
        raise ValueError(f"Unknown device string: {value!r}") from exc


class GroupCoordinator:
    """Synchronous training group over the configured devices."""

    def __init__(
        self,
        config: GroupConfig,
        model_factory: Callable[[], nn.Module],
        *,
        model_wrapper: Optional[ModelWrapper] = None,
        scheduler: Optional[Scheduler] = None,
        collectives: Optional[Collectives] = None,
        loss_fn: Optional[LossFn] = None,
    ) -> None:
        self.config = config
        self.model_wrapper = model_wrapper if model_wrapper is not None else TorchModelWrapper()
        _require_methods(self.model_wrapper, _MODEL_WRAPPER_METHODS, "model_wrapper")
        if scheduler is not None:
            _require_methods(scheduler, _SCHEDULER_METHODS, "scheduler")

        self._scheduler = scheduler
        self._collectives: Collectives = collectives if collectives is not None else TorchCollectives()
        self._cost_scale = CostScaleController(config.cost_scaling_config)
        self._typical_trg_batch_words = 0
        self._finalized = False

        self._shards = self._build_shards(model_factory, loss_fn)
        num_shards = len(self._shards)
        self._optimizer_shards = [
            ShardedAdamW(
                shard.module,
                shard_index=shard.index,
                num_shards=num_shards,
                lr=config.learning_rate,
                weight_decay=config.weight_decay,
                betas=(float(config.betas[0]), float(config.betas[1])),
                eps=config.eps,
                smoothing=config.exponential_smoothing,
            )
            for shard in self._shards
        ]

        attach = getattr(scheduler, "attach_optimizers", None)
        if callable(attach):
            attach(self._optimizer_shards)

        self.checkpoint = CheckpointCoordinator(
            config,
            self._shards,
            self._optimizer_shards,  # type: ignore[arg-type]
            self.model_wrapper,
            scheduler,
            barrier=self._collectives.barrier,
        )
        logger.info(
            "Group initialized with %d shard(s) on %s (process %d/%d)",
            num_shards,
            ", ".join(str(shard.device) for shard in self._shards),
            self._collectives.rank,
            self._collectives.world_size,
        )

    def _build_shards(
        self,
        model_factory: Callable[[], nn.Module],
        loss_fn: Optional[LossFn],
    ) -> list[Shard]:
        shards: list[Shard] = []
        for index, name in enumerate(self.config.devices):
            device = parse_device(name)
            module = model_factory()
            if not isinstance(module, nn.Module):
                raise TypeError(f"model_factory must return nn.Module, got {type(module).__name__}")
            module.to(device)
            if shards:
                # Replicas start from identical weights.
                module.load_state_dict(shards[0].module.state_dict())
            engine = TorchExecutionEngine(
                module,
                device,
                loss_fn=loss_fn,
                memory_budget_bytes=self.config.memory_budget_bytes,
            )
            shards.append(Shard(index=index, device=device, module=module, engine=engine))
        return shards

    @property
    def shards(self) -> list[Shard]:
        return self._shards

    @property
    def optimizer_shards(self) -> list[ShardedAdamW]:
        return self._optimizer_shards

    @property
    def scheduler(self) -> Optional[Scheduler]:
        return self._scheduler

    @property
    def cost_scale(self) -> CostScaleController:
        return self._cost_scale

    @property
    def collectives(self) -> Collectives:
        return self._collectives

    @property
    def typical_trg_batch_words(self) -> int:
        return self._typical_trg_batch_words

    def set_typical_trg_batch_words(self, words: int) -> None:
        """Record the typical target-side words per batch, used to scale dynamic batches."""
        self._typical_trg_batch_words = int(words)

    @property
    def is_finalized(self) -> bool:
        return self._finalized

    def ensure_not_finalized(self) -> None:
        if self._finalized:
            raise RuntimeError("Training has already finished.")

    def finalize(self) -> None:
        self._finalized = True
        logger.info("Training group finalized")

    def increase_cost_scale_factor(self) -> None:
        self._cost_scale.increase()

    def decrease_cost_scale_factor(self) -> None:
        self._cost_scale.decrease()

    @torch.no_grad()
    def distribute_params(self) -> None:
        """Copy every shard's owned parameter slices into all other replicas."""
        if len(self._shards) < 2:
            return
        named = [dict(shard.module.named_parameters()) for shard in self._shards]
        for owner_index, optimizer in enumerate(self._optimizer_shards):
            for name in optimizer.owned_names():
                start, end = optimizer.owned_slice(name)
                if start == end:
                    continue
                source = named[owner_index][name].data.view(-1)[start:end]
                for target_index, params in enumerate(named):
                    if target_index == owner_index:
                        continue
                    target = params[name].data.view(-1)[start:end]
                    target.copy_(source.to(device=target.device))

    def collect_stats(self, multiplier: Optional[float] = None) -> BatchStats:
        """Fit batch sizes on shard 0 and project them onto the group."""
        self.ensure_not_finalized()
        if multiplier is None:
            multiplier = float(len(self._shards))

        estimator = BatchFitEstimator.from_config(
            self._shards[0].engine,
            self.config,
            show_progress=self._collectives.is_main_process,
        )
        stats = estimator.estimate(multiplier)
        logger.info("[batching] Collected batch statistics for %d length bucket(s)", len(stats))
        return stats

    def save(self, is_final: bool = False) -> None:
        self.ensure_not_finalized()
        self.checkpoint.save(
            is_final,
            self.distribute_params,
            self._collectives.gather,
            self._collectives.is_main_process,
        )

    def load(self) -> bool:
        """Restore the latest checkpoint (or pretrained weights); True if a checkpoint was restored."""
        self.ensure_not_finalized()
        return self.checkpoint.load(self._collectives.scatter, self._collectives.is_main_process)

    def _zero_grads(self) -> None:
        for shard in self._shards:
            shard.module.zero_grad(set_to_none=True)

    @torch.no_grad()
    def _average_gradients(self) -> dict[str, torch.Tensor]:
        """Average local shard gradients into shard 0's parameters and return them by name."""
        primary = dict(self._shards[0].module.named_parameters())
        others = [dict(shard.module.named_parameters()) for shard in self._shards[1:]]
        scale = 1.0 / len(self._shards)

        grads: dict[str, torch.Tensor] = {}
        for name, param in primary.items():
            parts = [param.grad] + [params[name].grad for params in others]
            present = [grad for grad in parts if grad is not None]
            if not present:
                continue
            total = present[0].clone()
            for grad in present[1:]:
                total.add_(grad.to(device=total.device))
            if scale != 1.0:
                total.mul_(scale)
            param.grad = total
            grads[name] = total

        for params in others:
            for param in params.values():
                param.grad = None
        return grads

    def update(self, batches: Sequence[Batch]) -> bool:
        """
        Run one synchronous update with one batch per shard.

        Returns False when the gradients overflowed and the update was skipped.
        """
        self.ensure_not_finalized()
        if len(batches) != len(self._shards):
            raise ValueError(f"Expected {len(self._shards)} batches (one per shard), got {len(batches)}")

        loss_total = 0.0
        for shard, batch in zip(self._shards, batches):
            loss = shard.engine.forward(batch)
            self._cost_scale.scale_loss(loss).backward()
            loss_total += float(loss.detach())

        grads = self._average_gradients()
        finite = self._cost_scale.unscale_and_check(self._shards[0].module.parameters())
        if not finite:
            self._zero_grads()
            self._cost_scale.decrease()
            logger.debug("Skipped update with non-finite gradients")
            return False

        for shard, optimizer in zip(self._shards, self._optimizer_shards):
            optimizer.step(shard.module, grads)
        self.distribute_params()
        self._zero_grads()
        self._cost_scale.increase()

        update = getattr(self._scheduler, "update", None)
        if callable(update):
            update(loss_total / len(self._shards))
        return True
