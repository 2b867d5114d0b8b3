"""Runtime component contracts and shared value objects."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from typing import Callable
from typing import Optional
from typing import Protocol
from typing import Sequence

import torch


Batch = dict[str, torch.Tensor]

# Collective hooks handed to the checkpoint coordinator by the caller.
DistributeFn = Callable[[], None]
GatherStateFn = Callable[[Any], Optional[list[Any]]]
ScatterStateFn = Callable[[Optional[list[Any]]], Any]


class ExecutionEngine(Protocol):
    """Opaque tensor/graph engine exercised by batch fitting."""

    def build_loss_graph(self, batch: Batch) -> Optional[torch.Tensor]:
        """Build forward/backward for `batch` and return the loss (None if allocation failed)."""
        ...

    def fits_memory_budget(self) -> bool:
        """Return whether the last built graph stayed within the allocator budget."""
        ...

    def set_overflow_abort_enabled(self, enabled: bool) -> None:
        """Toggle aborting on non-finite values."""
        ...

    @property
    def overflow_abort_enabled(self) -> bool:
        ...


@dataclass
class Shard:
    """One parallel replica of the model bound to a device."""

    index: int
    device: torch.device
    module: torch.nn.Module
    engine: ExecutionEngine


class OptimizerShard(Protocol):
    """Per-shard optimizer state with a smoothed parameter copy."""

    def swap_with_smoothed(
        self,
        module: torch.nn.Module,
        shard_index: int,
        num_shards: int,
        swap_avg: bool,
    ) -> None:
        """Exchange this shard's owned parameter slices with the averaged copy."""
        ...

    def state_dict(self) -> dict[str, Any]:
        ...

    def load_state_dict(self, state: dict[str, Any], device: Optional[torch.device] = None) -> None:
        ...


class ModelWrapper(Protocol):
    """Model persistence for one shard's parameters."""

    def load(self, shard: Shard, path: str, load_optimizer_relevant_state: bool = True) -> None:
        """Load weights from `path` into `shard`."""
        ...

    def save(self, shard: Shard, path: str, write_inference_config: bool = False) -> None:
        """Save `shard` weights to `path`, optionally with the inference config."""
        ...


class Scheduler(Protocol):
    """Training progress collaborator consulted at load/save/validation points."""

    def load(self, path: str) -> None:
        ...

    def save(self, path: str) -> None:
        ...

    def number_of_completed_updates(self) -> int:
        ...

    def validate(self, shards: Sequence[Shard], is_final: bool = False) -> None:
        ...


class Collectives(Protocol):
    """Injected cross-process transport: rendezvous and object broadcast/gather/scatter."""

    @property
    def rank(self) -> int:
        ...

    @property
    def world_size(self) -> int:
        ...

    @property
    def is_main_process(self) -> bool:
        ...

    def barrier(self) -> None:
        ...

    def broadcast(self, obj: Any, src: int = 0) -> Any:
        """Return `src`'s object on every process."""
        ...

    def gather(self, obj: Any, dst: int = 0) -> Optional[list[Any]]:
        """Return every process's object (rank order) on `dst`, None elsewhere."""
        ...

    def scatter(self, objs: Optional[list[Any]], src: int = 0) -> Any:
        """Return this process's element of `src`'s list."""
        ...
