"""
trainsync package entrypoint.

Coordinates a group of model shards for synchronous data-parallel training: cost
scaling, batch-size fitting and checkpoint sequencing. Runtime classes are exported
lazily from `trainsync.runtime`.
"""

from __future__ import annotations

from trainsync.config import CostScalingConfig
from trainsync.config import GroupConfig
from trainsync.config import load_config

__all__ = ["CostScalingConfig", "GroupConfig", "load_config"]
