"""Collective transport strategies injected into the group coordinator."""

from __future__ import annotations

from typing import Any
from typing import Optional

import torch.distributed as dist


def _is_distributed() -> bool:
    return dist.is_available() and dist.is_initialized()


class LocalCollectives:
    """Single-process transport: every collective is the identity."""

    @property
    def rank(self) -> int:
        return 0

    @property
    def world_size(self) -> int:
        return 1

    @property
    def is_main_process(self) -> bool:
        return True

    def barrier(self) -> None:
        return None

    def broadcast(self, obj: Any, src: int = 0) -> Any:
        del src
        return obj

    def gather(self, obj: Any, dst: int = 0) -> Optional[list[Any]]:
        del dst
        return [obj]

    def scatter(self, objs: Optional[list[Any]], src: int = 0) -> Any:
        del src
        if not objs:
            raise ValueError("scatter on a single process requires a one-element list")
        return objs[0]


class TorchCollectives:
    """
    Transport over `torch.distributed` object collectives.

    Falls back to single-process semantics while the default process group is not
    initialized, so the same coordinator code runs under plain `python` and `torchrun`.
    """

    def __init__(self, group=None) -> None:
        self.group = group
        self._local = LocalCollectives()

    @property
    def rank(self) -> int:
        if not _is_distributed():
            return 0
        return int(dist.get_rank(group=self.group))

    @property
    def world_size(self) -> int:
        if not _is_distributed():
            return 1
        return int(dist.get_world_size(group=self.group))

    @property
    def is_main_process(self) -> bool:
        return self.rank == 0

    def barrier(self) -> None:
        if not _is_distributed():
            return
        dist.barrier(group=self.group)

    def broadcast(self, obj: Any, src: int = 0) -> Any:
        if not _is_distributed():
            return self._local.broadcast(obj, src)
        payload = [obj if self.rank == src else None]
        dist.broadcast_object_list(payload, src=src, group=self.group)
        return payload[0]

    def gather(self, obj: Any, dst: int = 0) -> Optional[list[Any]]:
        if not _is_distributed():
            return self._local.gather(obj, dst)
        output: Optional[list[Any]] = [None] * self.world_size if self.rank == dst else None
        dist.gather_object(obj, output, dst=dst, group=self.group)
        return output

    def scatter(self, objs: Optional[list[Any]], src: int = 0) -> Any:
        if not _is_distributed():
            return self._local.scatter(objs, src)
        if self.rank == src:
            if objs is None or len(objs) != self.world_size:
                raise ValueError(
                    f"scatter source needs {self.world_size} objects, got "
                    f"{0 if objs is None else len(objs)}"
                )
            inputs: Optional[list[Any]] = list(objs)
        else:
            inputs = None
        output: list[Any] = [None]
        dist.scatter_object_list(output, inputs, src=src, group=self.group)
        return output[0]
