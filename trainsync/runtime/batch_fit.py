"""
Empirical batch-size fitting against an execution engine's memory budget.

The engine is tried with synthetic batches: an exponential search at the shortest
length finds an upper bound, then a binary search per length bucket finds the largest
batch that still fits. Capacity only shrinks as length grows, so each bucket's search
starts from the ceiling narrowed by the previous one.
"""

from __future__ import annotations

import math
from typing import Optional
from typing import Sequence

import torch
from tqdm import tqdm

from trainsync.config import GroupConfig
from trainsync.data import BatchStats
from trainsync.data import fake_batch
from trainsync.logging import get_logger
from trainsync.runtime.contracts import ExecutionEngine


logger = get_logger(__name__)

INITIAL_MAX_BATCH = 512
CLASS_INPUT_TYPE = "class"


class BatchFitEstimator:
    """Build a `BatchStats` table of the largest fitting batch per length bucket."""

    def __init__(
        self,
        engine: ExecutionEngine,
        *,
        step: int,
        max_length: int,
        num_streams: int,
        input_types: Sequence[str] = (),
        vocab_sizes: Optional[Sequence[int]] = None,
        show_progress: bool = False,
        generator: Optional[torch.Generator] = None,
    ) -> None:
        if step < 1:
            raise ValueError("step must be >= 1")
        if max_length < 1:
            raise ValueError("max_length must be >= 1")
        if num_streams < 1:
            raise ValueError("num_streams must be >= 1")
        if len(input_types) > num_streams:
            raise ValueError("input_types has more entries than input streams")

        self.engine = engine
        self.step = int(step)
        self.max_length = int(math.ceil(max_length / float(step)) * step)
        self.num_streams = int(num_streams)
        self.vocab_sizes = list(vocab_sizes) if vocab_sizes else None
        self.show_progress = show_progress
        self.generator = generator

        # One class label per line: such streams never exceed length 1.
        self.local_maxes = [self.max_length] * self.num_streams
        for index, input_type in enumerate(input_types):
            if input_type == CLASS_INPUT_TYPE:
                self.local_maxes[index] = 1

    @classmethod
    def from_config(
        cls,
        engine: ExecutionEngine,
        config: GroupConfig,
        *,
        show_progress: bool = False,
    ) -> "BatchFitEstimator":
        """Build from config; fitting requires a bounded memory budget (`workspace_mb`)."""
        if config.memory_budget_bytes is None:
            # Without a budget every trial batch fits and the doubling phase never ends.
            raise ValueError("Batch fitting requires workspace_mb to bound the memory budget")
        return cls(
            engine,
            step=config.mini_batch_fit_step,
            max_length=config.max_length,
            num_streams=config.num_streams,
            input_types=config.input_types,
            vocab_sizes=config.vocab_sizes or None,
            show_progress=show_progress,
        )

    def stream_lengths(self, length: int) -> list[int]:
        """Apply per-stream length caps to a bucket length."""
        return [min(length, local_max) for local_max in self.local_maxes]

    def _fits(self, lengths: Sequence[int], batch_size: int) -> bool:
        batch = fake_batch(lengths, batch_size, self.vocab_sizes, generator=self.generator)
        self.engine.build_loss_graph(batch)
        return bool(self.engine.fits_memory_budget())

    def estimate(self, multiplier: float = 1.0) -> BatchStats:
        """
        Run trial batches through the engine and return the batch statistics table.

        `multiplier` projects the single-shard measurement onto all shards; it is applied
        only to recorded sizes, never to the trial batches.
        """
        # Trial data is noise; overflow must not abort the search.
        overflow_abort = self.engine.overflow_abort_enabled
        self.engine.set_overflow_abort_enabled(False)
        try:
            return self._estimate(multiplier)
        finally:
            self.engine.set_overflow_abort_enabled(overflow_abort)

    def _estimate(self, multiplier: float) -> BatchStats:
        stats = BatchStats()

        max_batch = INITIAL_MAX_BATCH
        first_lengths = self.stream_lengths(self.step)
        while self._fits(first_lengths, max_batch):
            max_batch *= 2
        logger.debug("[batching] upper bound at length %d: %d", first_lengths[0], max_batch)

        buckets = range(self.step, self.max_length + 1, self.step)
        for length in tqdm(buckets, desc="Fitting batch sizes", disable=not self.show_progress):
            lengths = self.stream_lengths(length)
            start = 1
            end = max_batch
            while end >= start:
                current = (start + end) // 2
                fits = self._fits(lengths, current)
                logger.debug(
                    "[batching] length: %d - size: %d - fits: %s", lengths[0], current, fits
                )
                if fits:
                    stats.add(lengths, current, multiplier)
                    start = current + 1
                else:
                    end = current - 1
            max_batch = start

        return stats
