"""
Sharded AdamW with an exponentially averaged ("smoothed") parameter copy.

Primer:
- Shard i of n owns the slice [i*c, min((i+1)*c, numel)) of every flattened parameter,
  c = ceil(numel / n). Moments and the averaged copy exist only for owned slices.
- After each step the owner writes its slice into its own replica; the group then
  distributes owned slices to every other replica.
- Swapping exchanges owned parameter slices with the averaged copy. An exchange is its
  own inverse, so swapping in and back out restores the live parameters exactly.
"""

from __future__ import annotations

import os
from typing import Any
from typing import Callable
from typing import Mapping
from typing import Optional
from typing import Sequence

import torch
import torch.nn as nn

from trainsync.logging import get_logger


logger = get_logger(__name__)
OPTIMIZER_CHECKPOINT_FORMAT_VERSION = 1


def _ceil_div(n: int, d: int) -> int:
    return (n + d - 1) // d


def compute_shard(numel: int, rank: int, size: int) -> tuple[int, int]:
    """Return [start, end) of the slice owned by `rank` out of `size` shards."""
    # Ceil-div chunks give every shard deterministic bounds even when `numel` is not
    # divisible by `size`; trailing shards may own an empty slice.
    chunk_size = _ceil_div(numel, size)
    start = min(rank * chunk_size, numel)
    end = min(start + chunk_size, numel)
    return start, end


def _flat(param: torch.Tensor) -> torch.Tensor:
    return param.data.view(-1)


class ShardedAdamW:
    """AdamW over one shard's parameter slices, with optional parameter averaging."""

    def __init__(
        self,
        module: nn.Module,
        *,
        shard_index: int,
        num_shards: int,
        lr: float,
        weight_decay: float = 0.0,
        betas: tuple[float, float] = (0.9, 0.98),
        eps: float = 1e-9,
        smoothing: float = 0.0,
    ) -> None:
        if num_shards < 1:
            raise ValueError("num_shards must be >= 1")
        if not (0 <= shard_index < num_shards):
            raise ValueError(f"shard_index must be in [0, {num_shards - 1}]")
        if not (0.0 <= smoothing < 1.0):
            raise ValueError("smoothing must be in [0, 1)")

        self.shard_index = shard_index
        self.num_shards = num_shards
        self.smoothing = float(smoothing)
        self.param_groups = [
            {
                "lr": float(lr),
                "weight_decay": float(weight_decay),
                "betas": tuple(betas),
                "eps": float(eps),
            }
        ]

        self._slices: dict[str, tuple[int, int]] = {}
        self._numels: dict[str, int] = {}
        for name, param in module.named_parameters():
            if not param.requires_grad:
                continue
            self._numels[name] = param.numel()
            self._slices[name] = compute_shard(param.numel(), shard_index, num_shards)

        self.state: dict[str, dict[str, torch.Tensor]] = {}
        self.step_count = 0
        self._holds_smoothed = False

    @property
    def has_smoothed(self) -> bool:
        return self.smoothing > 0.0

    @property
    def holds_smoothed(self) -> bool:
        """Whether the replica currently carries the averaged parameters."""
        return self._holds_smoothed

    def owned_slice(self, name: str) -> tuple[int, int]:
        return self._slices[name]

    def owned_names(self) -> list[str]:
        return list(self._slices)

    def _named_owned(self, module: nn.Module) -> list[tuple[str, nn.Parameter]]:
        params = dict(module.named_parameters())
        missing = [name for name in self._slices if name not in params]
        if missing:
            raise ValueError(f"Module is missing optimizer parameters: {missing[:5]}")
        return [(name, params[name]) for name in self._slices]

    def _ensure_state(self, module: nn.Module) -> None:
        if self.state:
            return
        for name, param in self._named_owned(module):
            start, end = self._slices[name]
            owned = _flat(param)[start:end].float()
            record = {
                "exp_avg": torch.zeros_like(owned),
                "exp_avg_sq": torch.zeros_like(owned),
            }
            if self.has_smoothed:
                record["avg"] = owned.clone()
            self.state[name] = record

    @torch.no_grad()
    def step(self, module: nn.Module, grads: Mapping[str, Optional[torch.Tensor]]) -> None:
        """Apply one AdamW step to owned slices using full (already reduced) gradients."""
        if self._holds_smoothed:
            raise RuntimeError("Cannot step while smoothed parameters are swapped in")
        self._ensure_state(module)

        group = self.param_groups[0]
        lr = float(group["lr"])
        beta1, beta2 = group["betas"]
        eps = float(group["eps"])
        weight_decay = float(group["weight_decay"])

        self.step_count += 1
        step = self.step_count
        bias_correction1 = 1.0 - float(beta1) ** step
        bias_correction2 = 1.0 - float(beta2) ** step

        for name, param in self._named_owned(module):
            grad = grads.get(name)
            start, end = self._slices[name]
            if grad is None or start == end:
                continue

            state = self.state[name]
            owned = _flat(param)[start:end]
            grad_slice = grad.reshape(-1)[start:end].to(device=owned.device, dtype=torch.float32)
            exp_avg = state["exp_avg"]
            exp_avg_sq = state["exp_avg_sq"]
            param_f = owned.float()

            exp_avg.mul_(beta1).add_(grad_slice, alpha=1.0 - beta1)
            exp_avg_sq.mul_(beta2).addcmul_(grad_slice, grad_slice, value=1.0 - beta2)

            denom = exp_avg_sq.sqrt().div_(bias_correction2**0.5).add_(eps)
            param_f.mul_(1.0 - lr * weight_decay)
            param_f.addcdiv_(exp_avg, denom, value=-lr / bias_correction1)
            owned.copy_(param_f.to(dtype=owned.dtype))

        if self.has_smoothed:
            self._update_average(module)

    def _update_average(self, module: nn.Module) -> None:
        # Ramp: early steps follow the live weights closely.
        batches_seen = self.step_count - 1
        weight = max(self.smoothing, 1.0 - (batches_seen + 1) / (batches_seen + 10))
        for name, param in self._named_owned(module):
            start, end = self._slices[name]
            avg = self.state[name]["avg"]
            avg.mul_(1.0 - weight).add_(_flat(param)[start:end].float(), alpha=weight)

    @torch.no_grad()
    def swap_with_smoothed(
        self,
        module: nn.Module,
        shard_index: int,
        num_shards: int,
        swap_avg: bool = True,
    ) -> None:
        """
        Exchange owned parameter slices of `module` with the averaged copy.

        `swap_avg=True` brings the smoothed parameters in, `False` restores the originals.
        A no-op when smoothing is disabled.
        """
        if shard_index != self.shard_index or num_shards != self.num_shards:
            raise ValueError(
                f"Optimizer shard {self.shard_index}/{self.num_shards} asked to swap as "
                f"{shard_index}/{num_shards}"
            )
        if not self.has_smoothed:
            return
        if swap_avg and self._holds_smoothed:
            raise RuntimeError("Smoothed parameters are already swapped in")
        if not swap_avg and not self._holds_smoothed:
            raise RuntimeError("Original parameters are already in place")

        self._ensure_state(module)
        for name, param in self._named_owned(module):
            start, end = self._slices[name]
            owned = _flat(param)[start:end]
            avg = self.state[name]["avg"]
            live = owned.detach().float().clone()
            owned.copy_(avg.to(dtype=owned.dtype))
            avg.copy_(live)
        self._holds_smoothed = swap_avg

    def state_dict(self) -> dict[str, Any]:
        """Return this shard's slice state with tensors on CPU."""
        parameters: dict[str, dict[str, Any]] = {}
        for name, record in self.state.items():
            start, end = self._slices[name]
            entry: dict[str, Any] = {"start": start, "end": end, "numel": self._numels[name]}
            for key, tensor in record.items():
                entry[key] = tensor.detach().cpu().clone()
            parameters[name] = entry
        return {
            "shard_index": self.shard_index,
            "num_shards": self.num_shards,
            "step_count": self.step_count,
            "smoothing": self.smoothing,
            "param_groups": [dict(group, betas=list(group["betas"])) for group in self.param_groups],
            "parameters": parameters,
        }

    def load_state_dict(self, state: Mapping[str, Any], device: Optional[torch.device] = None) -> None:
        """Load slice state produced by `state_dict` on a shard with the same layout."""
        if int(state.get("shard_index", -1)) != self.shard_index:
            raise ValueError(
                f"Optimizer state for shard {state.get('shard_index')} loaded into shard "
                f"{self.shard_index}"
            )
        if int(state.get("num_shards", -1)) != self.num_shards:
            raise ValueError(
                "Optimizer shard count mismatch: "
                f"{state.get('num_shards')} vs {self.num_shards}"
            )

        parameters = state.get("parameters")
        if not isinstance(parameters, Mapping):
            raise ValueError("Invalid optimizer state payload: missing 'parameters' dict")

        loaded: dict[str, dict[str, torch.Tensor]] = {}
        for name, record in parameters.items():
            if name not in self._slices:
                raise ValueError(f"Unexpected parameter in optimizer state: {name}")
            start, end = self._slices[name]
            if (int(record["start"]), int(record["end"])) != (start, end):
                raise ValueError(
                    f"Slice mismatch for {name}: expected [{start}, {end}), "
                    f"got [{record['start']}, {record['end']})"
                )
            keys = ["exp_avg", "exp_avg_sq"] + (["avg"] if self.has_smoothed else [])
            entry: dict[str, torch.Tensor] = {}
            for key in keys:
                tensor = record.get(key)
                if not torch.is_tensor(tensor):
                    raise ValueError(f"Missing tensor '{key}' for parameter '{name}'")
                if tensor.numel() != end - start:
                    raise ValueError(
                        f"Shard size mismatch for {name}:{key} "
                        f"(expected {end - start}, got {tensor.numel()})"
                    )
                entry[key] = tensor.detach().to(device=device, dtype=torch.float32).clone()
            loaded[name] = entry

        if loaded and set(loaded) != set(self._slices):
            missing = sorted(set(self._slices) - set(loaded))
            raise ValueError(f"Missing parameter slices in optimizer state: {missing[:5]}")

        self.state = loaded
        self.step_count = int(state.get("step_count", 0))
        for current, saved in zip(self.param_groups, state.get("param_groups", [])):
            current["lr"] = float(saved.get("lr", current["lr"]))
            current["weight_decay"] = float(saved.get("weight_decay", current["weight_decay"]))
            current["betas"] = tuple(saved.get("betas", current["betas"]))
            current["eps"] = float(saved.get("eps", current["eps"]))
        self._holds_smoothed = False


def save_optimizer_checkpoint(
    path: str,
    optimizer_shards: Sequence[ShardedAdamW],
    gather_fn: Callable[[Any], Optional[list[Any]]],
    is_main_process: bool,
) -> None:
    """
    Persist every process's optimizer slices into one file.

    `gather_fn` is collective: every process must call this function, only the main
    process writes.
    """
    local_states = [optimizer.state_dict() for optimizer in optimizer_shards]
    gathered = gather_fn(local_states)
    if not is_main_process:
        return
    if gathered is None:
        raise RuntimeError("Optimizer state gather returned nothing on the main process")

    payload = {
        "format_version": OPTIMIZER_CHECKPOINT_FORMAT_VERSION,
        "num_shards": len(optimizer_shards),
        "processes": list(gathered),
    }
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    torch.save(payload, path)
    logger.info("Saved optimizer state for %d process(es) to %s", len(payload["processes"]), path)


def load_optimizer_checkpoint(
    path: str,
    optimizer_shards: Sequence[ShardedAdamW],
    scatter_fn: Callable[[Optional[list[Any]]], Any],
    is_main_process: bool,
    devices: Optional[Sequence[torch.device]] = None,
) -> bool:
    """
    Restore optimizer slices written by `save_optimizer_checkpoint`.

    The main process reads the file and `scatter_fn` hands each process its own list of
    slice states. Returns False (and leaves state untouched) when the file is missing.
    """
    if not os.path.exists(path):
        logger.warning(
            "No optimizer checkpoint found at %s, optimizer state starts fresh", path
        )
        return False

    processes: Optional[list[Any]] = None
    if is_main_process:
        payload = torch.load(path, map_location="cpu", weights_only=True)
        format_version = int(payload.get("format_version", -1))
        if format_version != OPTIMIZER_CHECKPOINT_FORMAT_VERSION:
            raise ValueError(
                f"Unsupported optimizer checkpoint format version: {format_version}. "
                f"Expected {OPTIMIZER_CHECKPOINT_FORMAT_VERSION}."
            )
        if int(payload.get("num_shards", -1)) != len(optimizer_shards):
            raise ValueError(
                "Optimizer checkpoint shard count mismatch: "
                f"{payload.get('num_shards')} vs {len(optimizer_shards)}"
            )
        processes = list(payload["processes"])

    local_states = scatter_fn(processes)
    if len(local_states) != len(optimizer_shards):
        raise ValueError(
            f"Received {len(local_states)} optimizer states for {len(optimizer_shards)} shards"
        )
    for index, (optimizer, state) in enumerate(zip(optimizer_shards, local_states)):
        device = devices[index] if devices is not None else None
        optimizer.load_state_dict(state, device=device)
    logger.info("Restored optimizer state from %s", path)
    return True
