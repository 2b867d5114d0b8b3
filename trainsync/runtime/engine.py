"""Execution engine adapter that builds loss graphs on one shard's module."""

from __future__ import annotations

from typing import Callable
from typing import Optional

import torch

from trainsync.logging import get_logger
from trainsync.runtime.contracts import Batch


logger = get_logger(__name__)

LossFn = Callable[[torch.nn.Module, Batch], torch.Tensor]


def default_loss_fn(module: torch.nn.Module, batch: Batch) -> torch.Tensor:
    """Call the module with the batch streams as keyword arguments."""
    return module(**batch)


def _tensor_bytes(tensor: torch.Tensor) -> int:
    return int(tensor.numel() * tensor.element_size())


class TorchExecutionEngine:
    """
    Build forward/backward graphs for a module and report whether they fit a memory budget.

    On CUDA the footprint is the allocator's peak during the build. Elsewhere it is
    estimated as parameter bytes + gradient bytes + bytes of tensors autograd saved for
    backward (deduplicated by storage).
    """

    def __init__(
        self,
        module: torch.nn.Module,
        device: torch.device,
        *,
        loss_fn: Optional[LossFn] = None,
        memory_budget_bytes: Optional[int] = None,
        overflow_abort: bool = False,
    ) -> None:
        if memory_budget_bytes is not None and memory_budget_bytes <= 0:
            raise ValueError("memory_budget_bytes must be > 0 when set")
        self.module = module
        self.device = device
        self.loss_fn = loss_fn or default_loss_fn
        self.memory_budget_bytes = memory_budget_bytes
        self._overflow_abort = bool(overflow_abort)
        self._last_fits = True
        self.last_footprint_bytes = 0

    @property
    def overflow_abort_enabled(self) -> bool:
        return self._overflow_abort

    def set_overflow_abort_enabled(self, enabled: bool) -> None:
        self._overflow_abort = bool(enabled)

    def fits_memory_budget(self) -> bool:
        return self._last_fits

    def _to_device(self, batch: Batch) -> Batch:
        return {key: value.to(self.device) for key, value in batch.items()}

    def _check_finite(self, loss: torch.Tensor) -> None:
        if self._overflow_abort and not bool(torch.isfinite(loss.detach()).all()):
            raise FloatingPointError(f"Non-finite loss: {loss.detach().float().sum().item()}")

    def forward(self, batch: Batch) -> torch.Tensor:
        """Return the loss for `batch` with the autograd graph attached."""
        loss = self.loss_fn(self.module, self._to_device(batch))
        self._check_finite(loss)
        return loss

    def build_loss_graph(self, batch: Batch) -> Optional[torch.Tensor]:
        """
        Run forward and backward on `batch`, record the footprint and clear gradients.

        Returns the detached loss, or None when the device ran out of memory.
        """
        batch = self._to_device(batch)
        try:
            if self.device.type == "cuda":
                footprint = self._build_cuda(batch)
            else:
                footprint = self._build_host(batch)
        except torch.cuda.OutOfMemoryError:
            self._last_fits = False
            self.last_footprint_bytes = -1
            torch.cuda.empty_cache()
            return None
        finally:
            self.module.zero_grad(set_to_none=True)

        loss, self.last_footprint_bytes = footprint
        budget = self.memory_budget_bytes
        self._last_fits = budget is None or self.last_footprint_bytes <= budget
        return loss

    def _build_cuda(self, batch: Batch) -> tuple[torch.Tensor, int]:
        torch.cuda.reset_peak_memory_stats(self.device)
        loss = self.forward(batch)
        loss.backward()
        peak = int(torch.cuda.max_memory_allocated(self.device))
        return loss.detach(), peak

    def _build_host(self, batch: Batch) -> tuple[torch.Tensor, int]:
        param_storages = {
            param.untyped_storage().data_ptr() for param in self.module.parameters()
        }
        saved: dict[int, int] = {}

        def _pack(tensor: torch.Tensor) -> torch.Tensor:
            storage = tensor.untyped_storage()
            ptr = storage.data_ptr()
            if ptr not in param_storages:
                saved[ptr] = int(storage.nbytes())
            return tensor

        def _unpack(tensor: torch.Tensor) -> torch.Tensor:
            return tensor

        with torch.autograd.graph.saved_tensors_hooks(_pack, _unpack):
            loss = self.forward(batch)
        loss.backward()

        param_bytes = sum(_tensor_bytes(param) for param in self.module.parameters())
        grad_bytes = sum(
            _tensor_bytes(param.grad) for param in self.module.parameters() if param.grad is not None
        )
        return loss.detach(), param_bytes + grad_bytes + sum(saved.values())
