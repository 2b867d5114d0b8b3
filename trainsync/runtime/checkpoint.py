"""Checkpoint save/load sequencing across shards and processes."""

from __future__ import annotations

import os
from typing import Callable
from typing import Optional
from typing import Sequence

from trainsync.config import GroupConfig
from trainsync.logging import get_logger
from trainsync.optimizer import load_optimizer_checkpoint
from trainsync.optimizer import save_optimizer_checkpoint
from trainsync.runtime.contracts import DistributeFn
from trainsync.runtime.contracts import GatherStateFn
from trainsync.runtime.contracts import ModelWrapper
from trainsync.runtime.contracts import OptimizerShard
from trainsync.runtime.contracts import ScatterStateFn
from trainsync.runtime.contracts import Scheduler
from trainsync.runtime.contracts import Shard


logger = get_logger(__name__)

DEFAULT_EXTENSION = ".pt"


def numbered_model_path(path: str, updates: str) -> str:
    """Insert `.iter<updates>` before the extension: model.pt -> model.iter1000.pt."""
    root, ext = os.path.splitext(path)
    return f"{root}.iter{updates}{ext}"


def optimizer_checkpoint_path(path: str) -> str:
    """Combined optimizer state next to the model: model.pt -> model.pt.optimizer.pt."""
    ext = os.path.splitext(path)[1] or DEFAULT_EXTENSION
    return f"{path}.optimizer{ext}"


def _check_parity(shards: Sequence[Shard], optimizer_shards: Sequence[OptimizerShard]) -> None:
    if len(shards) != len(optimizer_shards):
        raise RuntimeError(
            "Number of shards and optimizer shards has to be equal "
            f"({len(shards)} != {len(optimizer_shards)})"
        )


def swap_with_smoothed(
    shards: Sequence[Shard],
    optimizer_shards: Sequence[OptimizerShard],
    distribute_fn: DistributeFn,
) -> None:
    """Bring every shard's smoothed parameters in, then distribute them once."""
    _check_parity(shards, optimizer_shards)
    for index, shard in enumerate(shards):
        optimizer_shards[index].swap_with_smoothed(shard.module, index, len(shards), True)
    distribute_fn()


def swap_with_original(
    shards: Sequence[Shard],
    optimizer_shards: Sequence[OptimizerShard],
    distribute_fn: DistributeFn,
) -> None:
    """Put every shard's live parameters back, then distribute them once."""
    _check_parity(shards, optimizer_shards)
    for index, shard in enumerate(shards):
        optimizer_shards[index].swap_with_smoothed(shard.module, index, len(shards), False)
    distribute_fn()


def _noop() -> None:
    return None


class CheckpointCoordinator:
    """
    Persist and restore model, optimizer and scheduler state for a shard group.

    `shards` and `optimizer_shards` are the group's own lists, not copies. `barrier`
    rendezvouses all processes; `local_barrier` rendezvouses this process's shards inside
    the main-process branch, where the other processes are not participating.
    """

    def __init__(
        self,
        config: GroupConfig,
        shards: list[Shard],
        optimizer_shards: list[OptimizerShard],
        model_wrapper: ModelWrapper,
        scheduler: Optional[Scheduler] = None,
        *,
        barrier: Optional[Callable[[], None]] = None,
        local_barrier: Optional[Callable[[], None]] = None,
    ) -> None:
        self.config = config
        self.shards = shards
        self.optimizer_shards = optimizer_shards
        self.model_wrapper = model_wrapper
        self.scheduler = scheduler
        self.barrier = barrier or _noop
        self.local_barrier = local_barrier or _noop

    @property
    def model_path(self) -> str:
        return self.config.model

    @property
    def optimizer_path(self) -> str:
        return optimizer_checkpoint_path(self.config.model)

    def save(
        self,
        is_final: bool,
        distribute_fn: DistributeFn,
        gather_fn: GatherStateFn,
        is_main_process: bool,
    ) -> None:
        """Write a consistent checkpoint set; every process must call this."""
        self.barrier()

        if is_main_process:
            # Validation and the saved model both use the smoothed parameters.
            swap_with_smoothed(self.shards, self.optimizer_shards, distribute_fn)
            try:
                if is_final and self.scheduler is not None:
                    self.scheduler.validate(self.shards, is_final)

                self.local_barrier()
                self.save_model(is_final)
            finally:
                # Live weights must be restored even when validation or writing fails.
                swap_with_original(self.shards, self.optimizer_shards, distribute_fn)

        self.barrier()
        self.save_checkpoint(gather_fn, is_main_process)
        self.barrier()

    def save_model(self, is_final: bool = False) -> None:
        """Write the canonical model file (and a numbered copy for intermediate saves)."""
        name = self.model_path
        shard = self.shards[0]

        if not self.config.overwrite and not is_final:
            updates = (
                str(self.scheduler.number_of_completed_updates())
                if self.scheduler is not None
                else "unknown"
            )
            self.model_wrapper.save(shard, numbered_model_path(name, updates), False)

        self.model_wrapper.save(shard, name, True)
        if self.scheduler is not None:
            self.scheduler.save(name)

    def save_checkpoint(self, gather_fn: GatherStateFn, is_main_process: bool) -> None:
        """Persist optimizer slices of all processes; collective, written by main only."""
        save_optimizer_checkpoint(
            self.optimizer_path,
            self.optimizer_shards,
            gather_fn,
            is_main_process,
        )

    def load(self, scatter_fn: ScatterStateFn, is_main_process: bool = True) -> bool:
        """
        Restore from the configured model path, or seed weights from a pretrained model.

        Returns True when a training checkpoint was restored.
        """
        if self.config.no_reload:
            return False

        name = self.model_path
        if os.path.exists(name) and not os.path.exists(self.optimizer_path):
            # The optimizer file is written last; without it the set is from an interrupted save.
            logger.warning(
                "[training] Ignoring incomplete checkpoint %s: optimizer state %s is missing",
                name,
                self.optimizer_path,
            )
        elif os.path.exists(name):
            if self.scheduler is not None:
                self.scheduler.load(name)

            # Re-read per shard; the file is in the OS cache after the first read.
            for shard in self.shards:
                self.model_wrapper.load(shard, name, True)

            self.restore_checkpoint(scatter_fn, is_main_process)
            logger.info("[training] Model reloaded from %s", name)
            return True

        if self.config.pretrained_model:
            pretrained = self.config.pretrained_model
            logger.info("[training] Initializing model weights with pre-trained model %s", pretrained)
            for shard in self.shards:
                self.model_wrapper.load(shard, pretrained, False)
        return False

    def restore_checkpoint(self, scatter_fn: ScatterStateFn, is_main_process: bool = True) -> bool:
        _check_parity(self.shards, self.optimizer_shards)
        return load_optimizer_checkpoint(
            self.optimizer_path,
            self.optimizer_shards,  # type: ignore[arg-type]
            scatter_fn,
            is_main_process,
            devices=[shard.device for shard in self.shards],
        )
