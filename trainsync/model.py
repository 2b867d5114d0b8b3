"""Model weight persistence for shards."""

from __future__ import annotations

import os
from typing import Any
from typing import Optional

import torch
import yaml

from trainsync.logging import get_logger
from trainsync.runtime.contracts import Shard


logger = get_logger(__name__)
MODEL_FORMAT_VERSION = 1


def inference_config_path(path: str) -> str:
    return f"{path}.inference.yml"


class TorchModelWrapper:
    """
    Save and load one shard's weights with `torch.save`.

    The inference config is a plain mapping describing how to rebuild the model for
    decoding; when requested it is embedded in the weights file and mirrored to
    `<path>.inference.yml`.
    """

    def __init__(self, inference_config: Optional[dict[str, Any]] = None) -> None:
        self.inference_config = dict(inference_config or {})

    def save(self, shard: Shard, path: str, write_inference_config: bool = False) -> None:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        payload: dict[str, Any] = {
            "format_version": MODEL_FORMAT_VERSION,
            "state_dict": {
                name: tensor.detach().cpu() for name, tensor in shard.module.state_dict().items()
            },
        }
        if write_inference_config:
            payload["inference_config"] = dict(self.inference_config)
        torch.save(payload, path)

        if write_inference_config:
            with open(inference_config_path(path), "w", encoding="utf-8") as handle:
                yaml.safe_dump(self.inference_config, handle, sort_keys=True)
        logger.info("Saved model from shard %d to %s", shard.index, path)

    def load(self, shard: Shard, path: str, load_optimizer_relevant_state: bool = True) -> None:
        # The file holds weights only; optimizer state is restored from its own file.
        del load_optimizer_relevant_state
        if not os.path.exists(path):
            raise FileNotFoundError(f"Model file not found: {path}")
        payload = torch.load(path, map_location=shard.device, weights_only=True)
        format_version = int(payload.get("format_version", -1))
        if format_version != MODEL_FORMAT_VERSION:
            raise ValueError(
                f"Unsupported model format version: {format_version}. "
                f"Expected {MODEL_FORMAT_VERSION}."
            )
        shard.module.load_state_dict(payload["state_dict"])
