"""
Training progress scheduler: counters, learning-rate schedule and validation hooks.
"""

from __future__ import annotations

import math
import os
from typing import Any
from typing import Callable
from typing import Optional
from typing import Sequence

import torch
import yaml

from trainsync.logging import get_logger
from trainsync.runtime.contracts import Shard


logger = get_logger(__name__)

Validator = Callable[[torch.nn.Module], float]


def progress_path(path: str) -> str:
    return f"{path}.progress.yml"


class TrainingScheduler:
    """Track training progress and drive the learning rate of attached optimizers."""

    def __init__(
        self,
        *,
        learning_rate: float,
        warmup_updates: int = 0,
        max_updates: int = 0,
        min_lr: float = 0.0,
        validators: Optional[dict[str, Validator]] = None,
    ) -> None:
        """
        Args:
            learning_rate: Peak learning rate reached after warmup
            warmup_updates: Number of linear warmup updates
            max_updates: Updates over which to cosine-anneal to `min_lr` (0 keeps it constant)
            min_lr: Floor of the cosine schedule
            validators: Named callables scoring a module, run at validation points
        """
        if warmup_updates < 0:
            raise ValueError("warmup_updates must be >= 0")
        if max_updates < 0:
            raise ValueError("max_updates must be >= 0")
        if max_updates and warmup_updates >= max_updates:
            raise ValueError("warmup_updates must be smaller than max_updates")
        if min_lr < 0:
            raise ValueError("min_lr must be >= 0")

        self.base_lr = float(learning_rate)
        self.warmup_updates = warmup_updates
        self.max_updates = max_updates
        self.min_lr = min_lr
        self.validators: dict[str, Validator] = dict(validators or {})
        self.optimizers: list[Any] = []

        self.updates = 0
        self.batches = 0
        self.epochs = 1
        self.labels = 0
        self.last_loss: Optional[float] = None
        self.last_validation: dict[str, float] = {}

    def attach_optimizers(self, optimizers: Sequence[Any]) -> None:
        """Bind optimizers whose `param_groups` learning rate follows this schedule."""
        self.optimizers = list(optimizers)
        self._apply_lr()

    def get_lr(self) -> float:
        """Learning rate for the next update."""
        step = self.updates + 1
        if self.warmup_updates > 0 and step <= self.warmup_updates:
            return self.base_lr * step / self.warmup_updates
        if self.max_updates <= 0:
            return self.base_lr

        progress = (step - self.warmup_updates) / (self.max_updates - self.warmup_updates)
        progress = min(max(progress, 0.0), 1.0)
        return self.min_lr + (self.base_lr - self.min_lr) * 0.5 * (1 + math.cos(math.pi * progress))

    def _apply_lr(self) -> None:
        lr = self.get_lr()
        for optimizer in self.optimizers:
            for group in optimizer.param_groups:
                group["lr"] = lr

    def update(self, loss: float, labels: int = 0) -> None:
        """Record one completed update."""
        self.updates += 1
        self.batches += 1
        self.labels += int(labels)
        self.last_loss = float(loss)
        self._apply_lr()

    def new_epoch(self) -> None:
        self.epochs += 1
        logger.info("Starting epoch %d", self.epochs)

    def number_of_completed_updates(self) -> int:
        return self.updates

    def validate(self, shards: Sequence[Shard], is_final: bool = False) -> None:
        """Score shard 0's module with every registered validator."""
        if not self.validators or not shards:
            return

        module = shards[0].module
        was_training = module.training
        module.eval()
        try:
            with torch.no_grad():
                for name, validator in self.validators.items():
                    value = float(validator(module))
                    self.last_validation[name] = value
                    logger.info(
                        "[valid] Ep. %d : Up. %d : %s : %.4f%s",
                        self.epochs,
                        self.updates,
                        name,
                        value,
                        " (final)" if is_final else "",
                    )
        finally:
            module.train(was_training)

    def state_dict(self) -> dict[str, Any]:
        return {
            "updates": self.updates,
            "batches": self.batches,
            "epochs": self.epochs,
            "labels": self.labels,
            "last_loss": self.last_loss,
            "last_validation": dict(self.last_validation),
            "base_lr": self.base_lr,
        }

    def load_state_dict(self, state: dict[str, Any]) -> None:
        self.updates = int(state.get("updates", 0))
        self.batches = int(state.get("batches", self.updates))
        self.epochs = int(state.get("epochs", 1))
        self.labels = int(state.get("labels", 0))
        last_loss = state.get("last_loss")
        self.last_loss = None if last_loss is None else float(last_loss)
        self.last_validation = {
            str(key): float(value) for key, value in (state.get("last_validation") or {}).items()
        }
        if "base_lr" in state:
            self.base_lr = float(state["base_lr"])
        # Keep optimizer LR consistent with the restored position.
        self._apply_lr()

    def save(self, path: str) -> None:
        target = progress_path(path)
        directory = os.path.dirname(target)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(target, "w", encoding="utf-8") as handle:
            yaml.safe_dump(self.state_dict(), handle, sort_keys=True)

    def load(self, path: str) -> None:
        target = progress_path(path)
        if not os.path.exists(target):
            return
        with open(target, "r", encoding="utf-8") as handle:
            state = yaml.safe_load(handle) or {}
        self.load_state_dict(state)
        logger.info("Restored training progress from %s (%d updates)", target, self.updates)
