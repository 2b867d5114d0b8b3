"""
Configuration system for trainsync.

Dataclass-based configuration; YAML files and dotlist overrides are merged through
OmegaConf structured configs so unknown keys and type errors fail at load time.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
import math
import re
from typing import Any
from typing import List
from typing import Optional
from typing import Sequence

from omegaconf import OmegaConf


@dataclass(frozen=True)
class CostScalingConfig:
    """Parsed `cost_scaling` option: 2**exponent seed, growth frequency, multiplier, NaN tolerance."""

    exponent: float
    frequency: int
    multiplier: float
    tolerance: float

    @property
    def initial_factor(self) -> float:
        return math.pow(2.0, self.exponent)

    @classmethod
    def from_option(cls, value: object) -> Optional["CostScalingConfig"]:
        """
        Parse the composite option value.

        Accepts a comma/whitespace separated string ("4,100,2.0,0.5") or a sequence of four
        fields. `None`, an empty string or an empty sequence disables cost scaling.
        """
        fields = split_option(value)
        if not fields:
            return None
        if len(fields) != 4:
            raise ValueError(
                "cost_scaling expects 4 fields (exponent, frequency, multiplier, tolerance), "
                f"got {len(fields)}: {fields}"
            )
        try:
            config = cls(
                exponent=float(fields[0]),
                frequency=int(fields[1]),
                multiplier=float(fields[2]),
                tolerance=float(fields[3]),
            )
        except ValueError as exc:
            raise ValueError(f"Invalid cost_scaling value {fields}: {exc}") from exc

        if config.frequency < 1:
            raise ValueError("cost_scaling frequency must be >= 1")
        if config.multiplier <= 0.0:
            raise ValueError("cost_scaling multiplier must be > 0")
        return config


def split_option(value: object) -> list[str]:
    """Split a composite option into string fields."""
    if value is None:
        return []
    if isinstance(value, str):
        return [item for item in re.split(r"[,\s]+", value.strip()) if item]
    if isinstance(value, Sequence) or OmegaConf.is_list(value):
        return [str(item).strip() for item in value if str(item).strip()]
    text = str(value).strip()
    return [text] if text else []


@dataclass
class GroupConfig:
    """Configuration consumed by the group, checkpoint and batch-fit coordinators."""

    # Checkpointing
    model: str = "model.pt"
    no_reload: bool = False
    pretrained_model: Optional[str] = None
    overwrite: bool = False

    # Cost scaling: empty disables it. Four fields: exponent, frequency, multiplier, tolerance.
    cost_scaling: List[str] = field(default_factory=list)

    # Batch fitting
    mini_batch_fit_step: int = 10
    max_length: int = 50
    train_sets: List[str] = field(default_factory=list)
    input_types: List[str] = field(default_factory=list)
    vocab_sizes: List[int] = field(default_factory=list)
    workspace_mb: Optional[int] = None

    # Shards
    devices: List[str] = field(default_factory=lambda: ["cpu"])

    # Optimizer
    learning_rate: float = 1e-4
    weight_decay: float = 0.0
    betas: List[float] = field(default_factory=lambda: [0.9, 0.98])
    eps: float = 1e-9
    exponential_smoothing: float = 0.0

    # Schedule
    warmup_updates: int = 0
    max_updates: int = 0
    min_lr: float = 0.0

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self) -> None:
        """Normalize composite options and validate ranges."""
        self.cost_scaling = split_option(self.cost_scaling)
        self.devices = split_option(self.devices)
        self.input_types = split_option(self.input_types)

        # Raises on malformed values.
        CostScalingConfig.from_option(self.cost_scaling)

        if not self.model:
            raise ValueError("model path must be non-empty")
        if self.mini_batch_fit_step < 1:
            raise ValueError("mini_batch_fit_step must be >= 1")
        if self.max_length < 1:
            raise ValueError("max_length must be >= 1")
        if len(self.input_types) > self.num_streams:
            raise ValueError(
                f"input_types has {len(self.input_types)} entries but only "
                f"{self.num_streams} input streams are configured"
            )
        if self.vocab_sizes and len(self.vocab_sizes) != self.num_streams:
            raise ValueError(
                f"vocab_sizes must have one entry per input stream ({self.num_streams})"
            )
        if any(size < 1 for size in self.vocab_sizes):
            raise ValueError("vocab_sizes entries must be >= 1")
        if self.workspace_mb is not None and self.workspace_mb <= 0:
            raise ValueError("workspace_mb must be > 0 when set")
        if not self.devices:
            raise ValueError("devices must name at least one device")
        if not (0.0 <= self.exponential_smoothing < 1.0):
            raise ValueError("exponential_smoothing must be in [0, 1)")
        if len(self.betas) != 2:
            raise ValueError("betas must have exactly two entries")
        if self.warmup_updates < 0:
            raise ValueError("warmup_updates must be >= 0")
        if self.max_updates < 0:
            raise ValueError("max_updates must be >= 0")
        if self.max_updates and self.warmup_updates >= self.max_updates:
            raise ValueError("warmup_updates must be smaller than max_updates")

    @property
    def num_streams(self) -> int:
        """Number of parallel input streams (one per training corpus)."""
        return len(self.train_sets) or len(self.vocab_sizes) or 1

    @property
    def cost_scaling_config(self) -> Optional[CostScalingConfig]:
        return CostScalingConfig.from_option(self.cost_scaling)

    @property
    def memory_budget_bytes(self) -> Optional[int]:
        if self.workspace_mb is None:
            return None
        return int(self.workspace_mb) * 1024 * 1024


def _normalize_keys(raw: dict[str, Any]) -> dict[str, Any]:
    """Accept dashed option names (`cost-scaling`) next to dataclass field names."""
    normalized: dict[str, Any] = {}
    for key, value in raw.items():
        name = str(key).replace("-", "_")
        if name in ("cost_scaling", "devices", "input_types") and isinstance(value, str):
            value = split_option(value)
        normalized[name] = value
    return normalized


def load_config(
    path: Optional[str] = None,
    overrides: Optional[Sequence[str]] = None,
) -> GroupConfig:
    """
    Build a `GroupConfig` from an optional YAML file and dotlist overrides.

    Args:
        path: YAML file with top-level option keys
        overrides: Dotlist entries such as ["overwrite=true", "max_length=128"]

    Returns:
        Validated GroupConfig
    """
    merged = OmegaConf.structured(GroupConfig)
    if path is not None:
        loaded = OmegaConf.to_container(OmegaConf.load(path), resolve=True)
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        merged = OmegaConf.merge(merged, _normalize_keys(loaded))
    if overrides:
        dotlist = OmegaConf.to_container(OmegaConf.from_dotlist(list(overrides)), resolve=True)
        assert isinstance(dotlist, dict)
        merged = OmegaConf.merge(merged, _normalize_keys(dotlist))
    config = OmegaConf.to_object(merged)
    assert isinstance(config, GroupConfig)
    return config
