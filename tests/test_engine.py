"""Unit tests for the torch execution engine adapter."""

from __future__ import annotations

import pytest
import torch
import torch.nn as nn

from trainsync.data import fake_batch
from trainsync.runtime.engine import TorchExecutionEngine


class _EmbeddingModel(nn.Module):
    def __init__(self, vocab_size: int = 8, hidden: int = 16) -> None:
        super().__init__()
        self.embed = nn.Embedding(vocab_size, hidden)
        self.proj = nn.Linear(hidden, 1)

    def forward(self, stream_0: torch.Tensor) -> torch.Tensor:
        return self.proj(torch.tanh(self.embed(stream_0))).mean()


def _engine(device: torch.device, **kwargs) -> TorchExecutionEngine:
    model = _EmbeddingModel().to(device)
    return TorchExecutionEngine(model, device, **kwargs)


def test_unbounded_budget_always_fits(device) -> None:
    engine = _engine(device)

    loss = engine.build_loss_graph(fake_batch([4], 2, [8]))

    assert loss is not None
    assert engine.fits_memory_budget()
    assert engine.last_footprint_bytes > 0


def test_footprint_grows_with_batch_size(device) -> None:
    engine = _engine(device)

    engine.build_loss_graph(fake_batch([16], 4, [8]))
    small = engine.last_footprint_bytes
    engine.build_loss_graph(fake_batch([16], 64, [8]))
    large = engine.last_footprint_bytes

    assert large > small


def test_budget_separates_small_and_large_batches(device) -> None:
    sizing = _engine(device)
    sizing.build_loss_graph(fake_batch([16], 8, [8]))
    budget = sizing.last_footprint_bytes

    engine = _engine(device, memory_budget_bytes=budget)
    engine.build_loss_graph(fake_batch([16], 8, [8]))
    assert engine.fits_memory_budget()

    engine.build_loss_graph(fake_batch([16], 256, [8]))
    assert not engine.fits_memory_budget()


def test_build_loss_graph_clears_gradients(device) -> None:
    engine = _engine(device)

    engine.build_loss_graph(fake_batch([4], 2, [8]))

    assert all(param.grad is None for param in engine.module.parameters())


def test_overflow_abort_raises_on_non_finite_loss(device) -> None:
    def nan_loss(module, batch):
        return module(**batch) * float("nan")

    engine = _engine(device, loss_fn=nan_loss, overflow_abort=True)
    with pytest.raises(FloatingPointError, match="Non-finite loss"):
        engine.forward(fake_batch([4], 2, [8]))

    engine.set_overflow_abort_enabled(False)
    assert not engine.overflow_abort_enabled
    assert not torch.isfinite(engine.forward(fake_batch([4], 2, [8])))


def test_rejects_non_positive_budget() -> None:
    with pytest.raises(ValueError, match="memory_budget_bytes"):
        _engine(torch.device("cpu"), memory_budget_bytes=0)
