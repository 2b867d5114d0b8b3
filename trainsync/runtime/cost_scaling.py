"""Dynamic cost (loss) scaling driven by observed gradient overflow."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable
from typing import Optional

import torch

from trainsync.config import CostScalingConfig
from trainsync.logging import get_logger
from trainsync.logging import log_once


logger = get_logger(__name__)


@dataclass
class CostScaleState:
    """Mutable cost-scaling counters; exists only when cost scaling is enabled."""

    factor: float
    frequency: int
    multiplier: float
    tolerance: float
    no_nan_seen: int = 0
    nan_seen: int = 0
    enabled: bool = True

    @property
    def overflow_percentage(self) -> float:
        # Cold start reports 1.0 on purpose; it makes early reductions aggressive.
        if self.no_nan_seen == 0:
            return 1.0
        return float(self.nan_seen) / float(self.no_nan_seen)


class CostScaleController:
    """
    Grow the cost-scaling factor after overflow-free stretches and shrink it on overflow.

    `increase()` is called once per applied update, `decrease()` once per update whose
    gradients contained NaN/Inf. Both are no-ops when cost scaling is disabled.
    """

    def __init__(self, config: Optional[CostScalingConfig] = None) -> None:
        self.state: Optional[CostScaleState] = None
        if config is None:
            return

        self.state = CostScaleState(
            factor=config.initial_factor,
            frequency=config.frequency,
            multiplier=config.multiplier,
            tolerance=config.tolerance,
        )
        log_once(
            logger,
            logging.INFO,
            "Training with cost scaling - factor: 2^%s = %s, frequency: %d, multiplier: %s, "
            "tolerance: %s",
            config.exponent,
            self.state.factor,
            config.frequency,
            config.multiplier,
            config.tolerance,
        )

    @classmethod
    def from_option(cls, value: object) -> "CostScaleController":
        """Build from the composite `cost_scaling` option (empty disables)."""
        return cls(CostScalingConfig.from_option(value))

    @property
    def enabled(self) -> bool:
        return self.state is not None

    @property
    def factor(self) -> float:
        if self.state is None:
            return 1.0
        return self.state.factor

    @property
    def overflow_percentage(self) -> Optional[float]:
        if self.state is None:
            return None
        return self.state.overflow_percentage

    def increase(self) -> None:
        """Record an overflow-free update; multiply the factor every `frequency` of them."""
        state = self.state
        if state is None:
            return

        state.no_nan_seen += 1
        if state.no_nan_seen % state.frequency == 0:
            state.factor *= state.multiplier
            logger.info(
                "NaN/Inf percentage %.2f after %d updates. Increasing cost-scaling factor to %s",
                state.overflow_percentage,
                state.no_nan_seen,
                state.factor,
            )

    def decrease(self) -> None:
        """Record an overflowing update; shrink the factor once overflow exceeds tolerance."""
        state = self.state
        if state is None:
            return

        state.nan_seen += 1
        nan_percent = state.overflow_percentage
        if nan_percent > state.tolerance:
            state.factor /= state.multiplier
            logger.warning(
                "NaN/Inf percentage %.2f in gradients, skipping update, reducing cost-scaling "
                "factor to %s",
                nan_percent,
                state.factor,
            )
            state.no_nan_seen = 0
            state.nan_seen = 0

    def scale_loss(self, loss: torch.Tensor) -> torch.Tensor:
        """Return the loss multiplied by the current factor."""
        if self.state is None:
            return loss
        return loss * self.state.factor

    def unscale_and_check(self, params: Iterable[torch.nn.Parameter]) -> bool:
        """Divide present gradients by the factor and return whether all are finite."""
        inv_scale = 1.0 / self.factor
        finite = True
        for param in params:
            grad = param.grad
            if grad is None:
                continue
            if inv_scale != 1.0:
                grad.mul_(inv_scale)
            if finite and not torch.isfinite(grad).all():
                finite = False
        return finite

    def update_after_step(self, *, step_applied: bool) -> None:
        """Feed the per-update gradient-health signal into the factor."""
        if step_applied:
            self.increase()
        else:
            self.decrease()
