"""Train a tiny model across a shard group with cost scaling and checkpointing."""

from __future__ import annotations

import argparse
import os
import sys

import torch
import torch.nn as nn
from torch.utils.tensorboard import SummaryWriter
from tqdm import tqdm

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from trainsync.config import load_config
from trainsync.data import fake_batch
from trainsync.logging import get_logger
from trainsync.logging import setup_logging
from trainsync.runtime.collectives import TorchCollectives
from trainsync.runtime.group import GroupCoordinator
from trainsync.scheduler import TrainingScheduler


logger = get_logger(__name__)


class TinyTagger(nn.Module):
    """Embedding + linear head predicting the next token id of every position."""

    def __init__(self, vocab_size: int, hidden: int = 32) -> None:
        super().__init__()
        self.vocab_size = vocab_size
        self.embed = nn.Embedding(vocab_size, hidden)
        self.head = nn.Linear(hidden, vocab_size)

    def forward(self, stream_0: torch.Tensor) -> torch.Tensor:
        logits = self.head(torch.tanh(self.embed(stream_0[:, :-1])))
        return nn.functional.cross_entropy(
            logits.reshape(-1, self.vocab_size),
            stream_0[:, 1:].reshape(-1),
        )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Shard-group training demo")
    parser.add_argument("--config", type=str, default=None, help="YAML config file")
    parser.add_argument("--updates", type=int, default=50)
    parser.add_argument("--save_every", type=int, default=20)
    parser.add_argument("--batch_size", type=int, default=16)
    parser.add_argument("--length", type=int, default=12)
    parser.add_argument("--fit_batches", action="store_true", help="Run batch-size fitting first")
    parser.add_argument("--log_dir", type=str, default="outputs/tensorboard")
    parser.add_argument("overrides", nargs="*", help="Config overrides, e.g. overwrite=true")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    config = load_config(args.config, args.overrides)
    collectives = TorchCollectives()
    setup_logging(log_level=config.log_level, log_file=config.log_file, rank=collectives.rank)

    vocab_size = config.vocab_sizes[0] if config.vocab_sizes else 64
    scheduler = TrainingScheduler(
        learning_rate=config.learning_rate,
        warmup_updates=config.warmup_updates,
        max_updates=config.max_updates,
        min_lr=config.min_lr,
    )
    group = GroupCoordinator(config, lambda: TinyTagger(vocab_size), scheduler=scheduler, collectives=collectives)
    group.load()

    if args.fit_batches:
        if config.workspace_mb is None:
            logger.warning("Batch fitting needs workspace_mb to bound the search; skipping")
        else:
            stats = group.collect_stats()
            logger.info("Batch statistics: %s", stats)

    writer = SummaryWriter(args.log_dir) if group.collectives.is_main_process else None
    generator = torch.Generator().manual_seed(1234)
    start = scheduler.number_of_completed_updates()

    progress = tqdm(range(args.updates), desc="Training", disable=not group.collectives.is_main_process)
    for _ in progress:
        batches = [
            fake_batch([args.length], args.batch_size, [vocab_size], generator=generator)
            for _ in group.shards
        ]
        applied = group.update(batches)
        step = scheduler.number_of_completed_updates()
        if writer is not None:
            writer.add_scalar("CostScale/factor", group.cost_scale.factor, start + progress.n)
            if applied and scheduler.last_loss is not None:
                writer.add_scalar("Loss/train", scheduler.last_loss, step)
                writer.add_scalar("LR", scheduler.get_lr(), step)
        if applied:
            progress.set_postfix(loss=f"{scheduler.last_loss:.4f}", scale=group.cost_scale.factor)
            if args.save_every > 0 and step % args.save_every == 0:
                group.save()

    group.save(is_final=True)
    group.finalize()
    if writer is not None:
        writer.close()
    logger.info("Training completed after %d updates", scheduler.number_of_completed_updates())


if __name__ == "__main__":
    main()
