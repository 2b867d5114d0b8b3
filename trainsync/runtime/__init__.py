"""Runtime coordination package.

The package uses lazy exports to avoid import cycles between the scheduler/model
helpers and the runtime contracts they depend on.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any


_EXPORTS: dict[str, tuple[str, str]] = {
    "BatchFitEstimator": ("trainsync.runtime.batch_fit", "BatchFitEstimator"),
    "CheckpointCoordinator": ("trainsync.runtime.checkpoint", "CheckpointCoordinator"),
    "numbered_model_path": ("trainsync.runtime.checkpoint", "numbered_model_path"),
    "optimizer_checkpoint_path": ("trainsync.runtime.checkpoint", "optimizer_checkpoint_path"),
    "swap_with_original": ("trainsync.runtime.checkpoint", "swap_with_original"),
    "swap_with_smoothed": ("trainsync.runtime.checkpoint", "swap_with_smoothed"),
    "LocalCollectives": ("trainsync.runtime.collectives", "LocalCollectives"),
    "TorchCollectives": ("trainsync.runtime.collectives", "TorchCollectives"),
    "Batch": ("trainsync.runtime.contracts", "Batch"),
    "Collectives": ("trainsync.runtime.contracts", "Collectives"),
    "ExecutionEngine": ("trainsync.runtime.contracts", "ExecutionEngine"),
    "ModelWrapper": ("trainsync.runtime.contracts", "ModelWrapper"),
    "OptimizerShard": ("trainsync.runtime.contracts", "OptimizerShard"),
    "Scheduler": ("trainsync.runtime.contracts", "Scheduler"),
    "Shard": ("trainsync.runtime.contracts", "Shard"),
    "CostScaleController": ("trainsync.runtime.cost_scaling", "CostScaleController"),
    "CostScaleState": ("trainsync.runtime.cost_scaling", "CostScaleState"),
    "TorchExecutionEngine": ("trainsync.runtime.engine", "TorchExecutionEngine"),
    "GroupCoordinator": ("trainsync.runtime.group", "GroupCoordinator"),
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily resolve runtime exports to avoid import-time dependency cycles."""
    target = _EXPORTS.get(name)
    if target is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    module_name, attr_name = target
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
