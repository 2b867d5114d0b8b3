"""
Batch statistics for dynamic batching and synthetic trial batches.
"""

from __future__ import annotations

import bisect
from typing import Iterator
from typing import Optional
from typing import Sequence

import torch


def stream_key(index: int) -> str:
    """Batch dict key of input stream `index`."""
    return f"stream_{index}"


def fake_batch(
    lengths: Sequence[int],
    batch_size: int,
    vocab_sizes: Optional[Sequence[int]] = None,
    generator: Optional[torch.Generator] = None,
) -> dict[str, torch.Tensor]:
    """
    Build a batch of random token ids shaped `[batch_size, lengths[j]]` per stream.

    Content is irrelevant; only the shapes matter to memory footprint.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    if vocab_sizes is not None and len(vocab_sizes) != len(lengths):
        raise ValueError("vocab_sizes must have one entry per stream")

    batch: dict[str, torch.Tensor] = {}
    for index, length in enumerate(lengths):
        vocab_size = 1 if not vocab_sizes else int(vocab_sizes[index])
        batch[stream_key(index)] = torch.randint(
            0,
            vocab_size,
            (batch_size, int(length)),
            dtype=torch.long,
            generator=generator,
        )
    return batch


class BatchStats:
    """
    Ordered table from per-stream lengths to the largest batch size that fits.

    Built once by batch fitting and read by dynamic batching.
    """

    def __init__(self) -> None:
        self._keys: list[tuple[int, ...]] = []
        self._sizes: dict[tuple[int, ...], int] = {}

    def add(self, lengths: Sequence[int], batch_size: int, multiplier: float = 1.0) -> None:
        """Record `batch_size * multiplier` (truncated) for `lengths`, replacing any entry."""
        key = tuple(int(length) for length in lengths)
        if key not in self._sizes:
            bisect.insort(self._keys, key)
        self._sizes[key] = int(batch_size * multiplier)

    def find_batch_size(self, lengths: Sequence[int]) -> int:
        """Return the entry for the smallest key >= `lengths`, or the last entry past the end."""
        if not self._keys:
            raise LookupError("BatchStats is empty")
        key = tuple(int(length) for length in lengths)
        position = bisect.bisect_left(self._keys, key)
        if position == len(self._keys):
            position -= 1
        return self._sizes[self._keys[position]]

    def items(self) -> list[tuple[tuple[int, ...], int]]:
        return [(key, self._sizes[key]) for key in self._keys]

    def __getitem__(self, lengths: Sequence[int]) -> int:
        return self._sizes[tuple(int(length) for length in lengths)]

    def __contains__(self, lengths: object) -> bool:
        if not isinstance(lengths, (tuple, list)):
            return False
        return tuple(lengths) in self._sizes

    def __iter__(self) -> Iterator[tuple[int, ...]]:
        return iter(list(self._keys))

    def __len__(self) -> int:
        return len(self._keys)

    def __repr__(self) -> str:
        return f"BatchStats({self.items()!r})"
