"""Policy/value networks and their persisted topology + weight blobs."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import time
from typing import Any, Sequence

import torch
import torch.nn as nn

from mallow_rl.config import (
    MODEL_DIR,
    MODEL_FORMAT_VERSION,
    MODEL_INPUT_SIZE,
    MODEL_OUTPUT_SIZE,
    MODEL_SAVE_RETRIES,
    MODEL_SAVE_RETRY_DELAY_SECONDS,
    POLICY_HIDDEN_SIZES,
    USE_GPU,
    VALUE_HIDDEN_SIZES,
)
from mallow_rl.errors import ModelIOError, TopologyMismatchError
from mallow_rl.logging_utils import format_display_path
from mallow_rl.runtime import get_torch_device

LOGGER = logging.getLogger("mallow_rl.model")

device = get_torch_device(prefer_gpu=USE_GPU)


class MLPNetwork(nn.Module):
    """Dense ReLU stack with an optional output activation."""

    def __init__(
        self,
        input_size: int,
        hidden_sizes: Sequence[int],
        output_size: int,
        output_activation: str | None = None,
    ):
        super().__init__()
        if output_activation not in (None, "tanh"):
            raise ValueError(f"Unsupported output activation: {output_activation!r}")
        self.input_size = int(input_size)
        self.hidden_sizes = [int(size) for size in hidden_sizes]
        self.output_size = int(output_size)
        self.output_activation = output_activation

        layers: list[nn.Module] = []
        in_features = self.input_size
        for hidden in self.hidden_sizes:
            layers.extend([nn.Linear(in_features, hidden), nn.ReLU()])
            in_features = hidden
        layers.append(nn.Linear(in_features, self.output_size))
        if output_activation == "tanh":
            layers.append(nn.Tanh())
        self.layers = nn.Sequential(*layers)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        if x.dim() == 1:
            x = x.unsqueeze(0)
        return self.layers(x)

    def topology(self) -> dict[str, Any]:
        return {
            "class_name": type(self).__name__,
            "input_size": self.input_size,
            "hidden_sizes": list(self.hidden_sizes),
            "output_size": self.output_size,
            "output_activation": self.output_activation,
        }

    def get_weights(self) -> list[dict[str, Any]]:
        return [
            {
                "index": index,
                "shape": list(tensor.shape),
                "data": tensor.detach().cpu().reshape(-1).tolist(),
            }
            for index, tensor in enumerate(self.state_dict().values())
        ]

    def set_weights(self, weights: Sequence[dict[str, Any]]) -> None:
        state = self.state_dict()
        if len(weights) != len(state):
            raise TopologyMismatchError(f"Expected {len(state)} weight tensors, got {len(weights)}")

        ordered = sorted(weights, key=lambda entry: int(entry.get("index", 0)))
        new_state = {}
        for (key, current), entry in zip(state.items(), ordered):
            shape = [int(size) for size in entry["shape"]]
            if shape != list(current.shape):
                raise TopologyMismatchError(f"Weight '{key}' has shape {shape}, expected {list(current.shape)}")
            tensor = torch.tensor(entry["data"], dtype=current.dtype)
            if tensor.numel() != current.numel():
                raise TopologyMismatchError(f"Weight '{key}' has {tensor.numel()} values, expected {current.numel()}")
            new_state[key] = tensor.reshape(shape).to(current.device)
        self.load_state_dict(new_state)

    def to_blob(self) -> dict[str, Any]:
        return {
            "format_version": MODEL_FORMAT_VERSION,
            "topology": self.topology(),
            "weights": self.get_weights(),
        }


class PolicyNetwork(MLPNetwork):
    """Actor: observation vector to seven tanh-squashed action outputs."""

    def __init__(
        self,
        input_size: int = MODEL_INPUT_SIZE,
        hidden_sizes: Sequence[int] = POLICY_HIDDEN_SIZES,
        output_size: int = MODEL_OUTPUT_SIZE,
        output_activation: str | None = "tanh",
    ):
        super().__init__(input_size, hidden_sizes, output_size, output_activation)


class ValueNetwork(MLPNetwork):
    """Critic: observation vector to a scalar state-value estimate."""

    def __init__(
        self,
        input_size: int = MODEL_INPUT_SIZE,
        hidden_sizes: Sequence[int] = VALUE_HIDDEN_SIZES,
        output_size: int = 1,
        output_activation: str | None = None,
    ):
        super().__init__(input_size, hidden_sizes, output_size, output_activation)


NETWORK_CLASSES: dict[str, type[MLPNetwork]] = {
    "PolicyNetwork": PolicyNetwork,
    "ValueNetwork": ValueNetwork,
}


def network_from_blob(blob: Any, expected_topology: dict[str, Any] | None = None) -> MLPNetwork:
    """Rebuild a network from a blob; raises ModelIOError without touching any live model."""
    if not isinstance(blob, dict) or "topology" not in blob or "weights" not in blob:
        raise ModelIOError("Model blob must contain 'topology' and 'weights'")
    topology = blob["topology"]
    if not isinstance(topology, dict):
        raise ModelIOError("Model topology must be an object")
    if expected_topology is not None and topology != expected_topology:
        raise TopologyMismatchError(f"Stored topology {topology} does not match expected {expected_topology}")

    network_cls = NETWORK_CLASSES.get(str(topology.get("class_name")))
    if network_cls is None:
        raise ModelIOError(f"Unknown network class: {topology.get('class_name')!r}")
    try:
        network = network_cls(
            input_size=int(topology["input_size"]),
            hidden_sizes=[int(size) for size in topology["hidden_sizes"]],
            output_size=int(topology["output_size"]),
            output_activation=topology.get("output_activation"),
        )
        network.set_weights(blob["weights"])
    except (KeyError, TypeError, ValueError) as error:
        raise ModelIOError(f"Malformed model blob: {error}") from error
    return network.to(device)


def write_json_atomic(file_name: str | Path, payload: Any) -> None:
    path = Path(file_name)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_file = path.with_name(f"{path.name}.tmp.{os.getpid()}")
    last_error = None

    for attempt in range(MODEL_SAVE_RETRIES):
        try:
            temp_file.write_text(json.dumps(payload), encoding="utf-8")
            os.replace(temp_file, path)
            return
        except OSError as error:
            last_error = error
            if temp_file.exists():
                try:
                    temp_file.unlink()
                except OSError:
                    pass
            if attempt < MODEL_SAVE_RETRIES - 1:
                time.sleep(MODEL_SAVE_RETRY_DELAY_SECONDS * (attempt + 1))

    raise ModelIOError(
        f"Failed to write '{format_display_path(path)}' after {MODEL_SAVE_RETRIES} attempts."
    ) from last_error


def read_json(file_name: str | Path) -> Any:
    path = Path(file_name)
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as error:
        raise ModelIOError(f"No model at '{format_display_path(path)}'") from error
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as error:
        raise ModelIOError(f"Could not read '{format_display_path(path)}': {error}") from error


class ModelStore:
    """Directory-backed key-value store of named network blobs."""

    def __init__(self, root: str | Path = MODEL_DIR):
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        return self.root / f"{key}.json"

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def keys(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(path.stem for path in self.root.glob("*.json"))

    def write(self, key: str, blob: dict[str, Any]) -> Path:
        path = self.path_for(key)
        write_json_atomic(path, blob)
        LOGGER.debug("wrote %s", format_display_path(path))
        return path

    def read(self, key: str) -> dict[str, Any]:
        blob = read_json(self.path_for(key))
        if not isinstance(blob, dict):
            raise ModelIOError(f"Blob '{key}' is not a JSON object")
        return blob
