"""Unit tests for collective transport strategies outside a process group."""

from __future__ import annotations

import pytest

from trainsync.runtime.collectives import LocalCollectives
from trainsync.runtime.collectives import TorchCollectives


@pytest.mark.parametrize("factory", [LocalCollectives, TorchCollectives])
def test_single_process_semantics(factory) -> None:
    collectives = factory()

    assert collectives.rank == 0
    assert collectives.world_size == 1
    assert collectives.is_main_process
    collectives.barrier()
    assert collectives.broadcast({"a": 1}) == {"a": 1}
    assert collectives.gather("slice") == ["slice"]
    assert collectives.scatter(["mine"]) == "mine"


def test_local_scatter_requires_an_object() -> None:
    with pytest.raises(ValueError, match="one-element list"):
        LocalCollectives().scatter(None)
