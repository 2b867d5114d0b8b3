"""
Pytest fixtures and shared test helpers.

Test modules import helpers via `from conftest import ...`, so this file lives at the
repository root (which pytest adds to `sys.path`) rather than under `tests/`.
"""

from __future__ import annotations

from typing import Optional

import pytest
import torch


@pytest.fixture(params=["cpu"])
def device(request) -> torch.device:
    """Device fixture used by unit tests."""
    return torch.device(request.param)


def assert_tensor_close(
    actual: torch.Tensor,
    expected: torch.Tensor,
    rtol: float = 1e-5,
    atol: float = 1e-8,
    msg: Optional[str] = None,
) -> None:
    """
    Assert two tensors are close within tolerances.

    Args:
        actual: Tensor under test.
        expected: Reference tensor.
        rtol: Relative tolerance.
        atol: Absolute tolerance.
        msg: Optional message prefix on failure.
    """
    if actual.shape != expected.shape:
        raise AssertionError(f"Shape mismatch: {actual.shape} vs {expected.shape}")

    actual = actual.detach().cpu()
    expected = expected.detach().cpu()
    if not torch.allclose(actual, expected, rtol=rtol, atol=atol):
        diff = (actual - expected).abs()
        max_diff = float(diff.max().item()) if diff.numel() > 0 else 0.0
        raise AssertionError(f"{msg or 'Tensors not close'}: max diff = {max_diff}")
