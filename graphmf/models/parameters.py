"""
Learned state of a factorisation model.

``ModelParameters`` owns one dense latent-factor matrix and one dense bias
vector, both with a row per entity id plus a trailing sentinel row, and any
auxiliary dense stores an update rule registers. Stores are float64 torch
tensors mutated in place by update rules; concurrent writers to the same row
race with last-writer-wins semantics.

Checkpoints are plain text so a restarted run can skip random
initialisation:

* ``{id}.manifest.yaml`` with hyperparameters, dimensions and store shapes;
* ``{id}.{store}.mm`` per store: ``%`` comment lines, a ``rows<TAB>cols``
  header, then one value per line in row-major order.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Mapping

import torch
import yaml
from loguru import logger

from graphmf.errors import (
    ConfigurationError,
    CorruptCheckpointError,
    InvalidStateError,
    InvariantViolationError,
    IOFailure,
)

BYTES_PER_VALUE = 8
MIB = 1024 * 1024
MEMORY_SLACK_BYTES = MIB
SENTINEL_ROWS = 1
COMMENT_MARKER = "%"
HEADER_DELIM = "\t"

LATENT_FACTORS = "latent_factors"
BIAS = "bias"


@dataclass(frozen=True)
class Hyperparameters:
    """Training hyperparameters; frozen once a run starts."""

    bias_reg: float = 0.001
    factor_reg: float = 0.06
    num_factors: int = 10
    step_size: float = 0.005
    max_iterations: int = 20
    init_std: float = 0.01
    seed: int | None = None

    # configuration key -> field name
    KEYS = {
        "bias_reg": "bias_reg",
        "factor_reg": "factor_reg",
        "latentFactors": "num_factors",
        "step_size": "step_size",
        "maxIterations": "max_iterations",
        "init_std": "init_std",
        "seed": "seed",
    }

    @classmethod
    def from_mapping(cls, params_map: Mapping[str, str] | None) -> "Hyperparameters":
        """Parse string-valued settings, falling back to defaults for absent keys."""
        values: dict[str, Any] = {}
        types = {f.name: f.type for f in fields(cls)}
        for key, field_name in cls.KEYS.items():
            if not params_map or key not in params_map:
                continue
            raw = params_map[key]
            try:
                if types[field_name] in ("int", "int | None"):
                    values[field_name] = int(str(raw).strip())
                else:
                    values[field_name] = float(str(raw).strip())
            except ValueError as exc:
                raise ConfigurationError(
                    f"Hyperparameter '{key}' has malformed value {raw!r}"
                ) from exc
        hyperparameters = cls(**values)
        hyperparameters.validate()
        return hyperparameters

    def validate(self) -> None:
        if self.num_factors <= 0:
            raise ConfigurationError("latentFactors must be a positive integer.")
        if self.max_iterations < 0:
            raise ConfigurationError("maxIterations must be non-negative.")
        for name in ("bias_reg", "factor_reg", "step_size", "init_std"):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0:
                raise ConfigurationError(f"{name} must be a finite non-negative number.")

    def to_mapping(self) -> dict[str, Any]:
        return asdict(self)


class ModelParameters:
    """Dense parameter stores shared by every update-rule variant."""

    def __init__(
        self,
        model_id: str,
        params_map: Mapping[str, str] | None = None,
        *,
        hyperparameters: Hyperparameters | None = None,
    ) -> None:
        self.id = model_id
        self.params_map = dict(params_map or {})
        self.hyperparameters = hyperparameters or Hyperparameters.from_mapping(self.params_map)
        self.num_users = 0
        self.num_items = 0
        self.latent_factors: torch.Tensor | None = None
        self.bias: torch.Tensor | None = None
        self.auxiliary: dict[str, torch.Tensor] = {}
        self._restored = False
        self._generator: torch.Generator | None = None

    @property
    def is_initialized(self) -> bool:
        return self.latent_factors is not None

    @property
    def is_restored(self) -> bool:
        return self._restored

    @property
    def num_rows(self) -> int:
        return self.num_users + self.num_items + SENTINEL_ROWS

    @property
    def num_factors(self) -> int:
        return self.hyperparameters.num_factors

    def generator(self) -> torch.Generator:
        """RNG used for every random draw of this model, seeded from ``seed``."""
        if self._generator is None:
            self._generator = torch.Generator()
            if self.hyperparameters.seed is not None:
                self._generator.manual_seed(self.hyperparameters.seed)
            else:
                self._generator.seed()
        return self._generator

    def initialize(self, num_users: int, num_items: int) -> None:
        """Fill every factor row and bias entry uniformly from [0, 1)."""
        if self._restored:
            raise InvalidStateError(
                f"Model '{self.id}' was restored from a checkpoint and must not be re-initialised."
            )
        if self.is_initialized:
            raise InvalidStateError(f"Model '{self.id}' is already initialised.")
        if num_users < 0 or num_items < 0:
            raise ValueError("num_users and num_items must be non-negative.")

        self.num_users = int(num_users)
        self.num_items = int(num_items)
        generator = self.generator()
        self.latent_factors = torch.rand(
            (self.num_rows, self.num_factors), generator=generator, dtype=torch.float64
        )
        self.bias = torch.rand((self.num_rows,), generator=generator, dtype=torch.float64)
        logger.info(
            "[{}] initialised parameters | rows={} factors={}",
            self.id,
            self.num_rows,
            self.num_factors,
        )

    def ensure_auxiliary(
        self, name: str, shape: tuple[int, int], *, std: float | None = None
    ) -> torch.Tensor:
        """
        Return the auxiliary store ``name``, allocating it when absent.

        New stores are zero-filled, or drawn from N(0, std) when ``std`` is
        given. Existing (e.g. restored) stores must match ``shape``.
        """
        if name in (LATENT_FACTORS, BIAS):
            raise ValueError(f"'{name}' is a reserved store name.")
        existing = self.auxiliary.get(name)
        if existing is not None:
            if tuple(existing.shape) != tuple(shape):
                raise CorruptCheckpointError(
                    f"Auxiliary store '{name}' has shape {tuple(existing.shape)}, expected {shape}"
                )
            return existing
        if std is None:
            store = torch.zeros(shape, dtype=torch.float64)
        else:
            store = torch.normal(
                0.0, std, size=shape, generator=self.generator(), dtype=torch.float64
            )
        self.auxiliary[name] = store
        return store

    def stores(self) -> dict[str, torch.Tensor]:
        """Every dense store keyed by name, latent factors and bias first."""
        if not self.is_initialized:
            return {}
        stores = {LATENT_FACTORS: self.latent_factors, BIAS: self.bias}
        stores.update(self.auxiliary)
        return stores

    def check_entity(self, entity_id: int) -> int:
        if not 0 <= entity_id < self.num_users + self.num_items:
            raise InvariantViolationError(
                f"Entity id {entity_id} outside [0, {self.num_users + self.num_items})"
            )
        return entity_id

    def predict(self, user_id: int, item_id: int) -> float:
        """``dot(factors[user], factors[item]) + bias[user] + bias[item]``."""
        if not self.is_initialized:
            raise InvalidStateError(f"Model '{self.id}' has no parameters yet.")
        self.check_entity(user_id)
        self.check_entity(item_id)
        factors = self.latent_factors
        dot = float(torch.dot(factors[user_id], factors[item_id]))
        return dot + float(self.bias[user_id]) + float(self.bias[item_id])

    def estimate_memory_bytes(self, num_users: int, num_items: int) -> int:
        """
        Conservative resident-memory estimate for this parameter set.

        The bias footprint keeps the whole-MiB arithmetic external
        orchestration has always used: truncate to MiB, then add one MiB.
        """
        size = num_users + num_items + SENTINEL_ROWS
        estimate = size * self.num_factors * BYTES_PER_VALUE
        estimate += ((size * BYTES_PER_VALUE) // MIB + 1) * MIB
        estimate += MEMORY_SLACK_BYTES
        for store in self.auxiliary.values():
            estimate += store.numel() * BYTES_PER_VALUE
        return estimate

    def get_estimated_memory_usage(self, description: Any) -> int:
        return self.estimate_memory_bytes(description.num_users, description.num_items)

    # ------------------------------------------------------------------ #
    # Checkpointing
    # ------------------------------------------------------------------ #

    @staticmethod
    def manifest_path(directory: Path, model_id: str) -> Path:
        return Path(directory) / f"{model_id}.manifest.yaml"

    @staticmethod
    def store_path(directory: Path, model_id: str, store: str) -> Path:
        return Path(directory) / f"{model_id}.{store}.mm"

    def checkpoint(self, directory: Path) -> Path:
        """Write every store plus a manifest; returns the manifest path."""
        if not self.is_initialized:
            raise InvalidStateError(f"Model '{self.id}' has nothing to checkpoint yet.")
        directory = Path(directory)
        stores = self.stores()
        manifest = {
            "id": self.id,
            "params": dict(self.params_map),
            "hyperparameters": self.hyperparameters.to_mapping(),
            "num_users": self.num_users,
            "num_items": self.num_items,
            "stores": {name: _matrix_shape(tensor) for name, tensor in stores.items()},
        }
        try:
            directory.mkdir(parents=True, exist_ok=True)
            for name, tensor in stores.items():
                write_dense_store(
                    self.store_path(directory, self.id, name),
                    tensor,
                    comment=f"{name} for model {self.id}",
                )
            path = self.manifest_path(directory, self.id)
            path.write_text(yaml.safe_dump(manifest, sort_keys=False), encoding="utf-8")
        except OSError as exc:
            raise IOFailure(f"Checkpoint of model '{self.id}' to {directory} failed: {exc}") from exc
        logger.info("[{}] checkpoint written to {}", self.id, path)
        return path

    @classmethod
    def restore(cls, directory: Path, model_id: str) -> "ModelParameters":
        """Reload a checkpoint; the result refuses any later ``initialize``."""
        path = cls.manifest_path(directory, model_id)
        try:
            manifest = yaml.safe_load(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise IOFailure(f"Cannot read checkpoint manifest {path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise CorruptCheckpointError(f"Manifest {path} is not valid YAML") from exc
        if not isinstance(manifest, Mapping) or "stores" not in manifest:
            raise CorruptCheckpointError(f"Manifest {path} is missing required fields.")

        params_map = {str(k): str(v) for k, v in (manifest.get("params") or {}).items()}
        try:
            hyperparameters = Hyperparameters(**(manifest.get("hyperparameters") or {}))
            hyperparameters.validate()
        except (TypeError, ConfigurationError) as exc:
            raise CorruptCheckpointError(f"Manifest {path} has invalid hyperparameters") from exc

        params = cls(model_id, params_map, hyperparameters=hyperparameters)
        params.num_users = int(manifest.get("num_users", 0))
        params.num_items = int(manifest.get("num_items", 0))

        loaded: dict[str, torch.Tensor] = {}
        for name, shape in dict(manifest["stores"]).items():
            store_file = cls.store_path(directory, model_id, name)
            try:
                matrix = read_dense_store(store_file)
            except OSError as exc:
                raise IOFailure(f"Cannot read checkpoint store {store_file}: {exc}") from exc
            if list(matrix.shape) != list(shape):
                raise CorruptCheckpointError(
                    f"{store_file} holds {list(matrix.shape)} but the manifest declares {list(shape)}"
                )
            loaded[name] = matrix

        if LATENT_FACTORS not in loaded or BIAS not in loaded:
            raise CorruptCheckpointError(f"Checkpoint of '{model_id}' lacks factor or bias store.")
        factors = loaded.pop(LATENT_FACTORS)
        bias = loaded.pop(BIAS).reshape(-1)
        if factors.shape[0] != params.num_rows or bias.shape[0] != params.num_rows:
            raise CorruptCheckpointError(
                f"Checkpoint of '{model_id}' has {factors.shape[0]} factor rows and "
                f"{bias.shape[0]} bias entries; expected {params.num_rows}"
            )
        if factors.shape[1] != hyperparameters.num_factors:
            raise CorruptCheckpointError(
                f"Checkpoint of '{model_id}' has {factors.shape[1]} factor columns; "
                f"expected {hyperparameters.num_factors}"
            )

        params.latent_factors = factors
        params.bias = bias
        params.auxiliary = loaded
        params._restored = True
        logger.info("[{}] restored parameters from {}", model_id, directory)
        return params


def _matrix_shape(tensor: torch.Tensor) -> list[int]:
    if tensor.dim() == 1:
        return [int(tensor.shape[0]), 1]
    return [int(tensor.shape[0]), int(tensor.shape[1])]


def write_dense_store(path: Path, tensor: torch.Tensor, *, comment: str | None = None) -> None:
    """Write a vector or matrix as text, one ``repr`` value per line."""
    rows, cols = _matrix_shape(tensor)
    with Path(path).open("w", encoding="utf-8") as handle:
        if comment:
            handle.write(f"{COMMENT_MARKER} {comment}\n")
        handle.write(f"{rows}{HEADER_DELIM}{cols}\n")
        for value in tensor.reshape(-1).tolist():
            handle.write(f"{value!r}\n")


def read_dense_store(path: Path) -> torch.Tensor:
    """Read a store written by ``write_dense_store`` into a (rows, cols) tensor."""
    path = Path(path)
    with path.open("r", encoding="utf-8") as handle:
        header = None
        for line in handle:
            if line.startswith(COMMENT_MARKER) or not line.strip():
                continue
            header = line
            break
        if header is None:
            raise CorruptCheckpointError(f"{path} has no dimension header.")
        try:
            rows, cols = (int(token) for token in header.strip().split(HEADER_DELIM))
        except ValueError as exc:
            raise CorruptCheckpointError(f"{path} has a malformed header {header.strip()!r}") from exc
        if rows < 0 or cols < 0:
            raise CorruptCheckpointError(f"{path} declares negative dimensions.")

        values: list[float] = []
        for line_no, line in enumerate(handle, start=2):
            text = line.strip()
            if not text or text.startswith(COMMENT_MARKER):
                continue
            try:
                values.append(float(text))
            except ValueError as exc:
                raise CorruptCheckpointError(f"{path}:{line_no}: unparsable value {text!r}") from exc

    if len(values) != rows * cols:
        raise CorruptCheckpointError(
            f"{path} declares {rows}x{cols} values but holds {len(values)}"
        )
    return torch.tensor(values, dtype=torch.float64).reshape(rows, cols)
