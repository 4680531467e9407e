"""Configuration loader for the Versioned Clause Comparer."""

from __future__ import annotations

import os
import threading
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigError
from .models_vcc import ChangeType

logger = structlog.get_logger(__name__)

_CONFIG_PATH = Path(__file__).resolve().parent / "config.yml"

# YAML sections whose keys are lifted to the top level of ComparisonConfig.
_SECTIONS = ("thresholds", "weights", "retrieval", "orchestrator", "pipeline")


def _config_path() -> Path:
    env_path = os.environ.get("VCC_CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return _CONFIG_PATH


@lru_cache(maxsize=4)
def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load the YAML configuration for the comparer.

    The function caches the parsed YAML so repeated calls are inexpensive.
    """

    path = path or _config_path()
    if not path.exists():
        raise ConfigError(f"Config file not found at {path}")
    with path.open("r", encoding="utf-8") as handle:
        data: Dict[str, Any] = yaml.safe_load(handle) or {}
    return data


def flatten_config(raw: Dict[str, Any]) -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for key, value in raw.items():
        if key in _SECTIONS and isinstance(value, dict):
            flat.update(value)
        else:
            flat[key] = value
    return flat


def _reject_version(changes: Dict[str, Any]) -> None:
    # versions are assigned by the registry, never supplied
    if "version" in changes:
        raise ConfigError("version is assigned automatically and cannot be set")


class ComparisonConfig(BaseModel):
    """Immutable, versioned snapshot of every tunable of a comparison run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: int = 1
    similarity_threshold: float = Field(0.78, ge=0.0, le=1.0)
    confidence_threshold: float = Field(0.6, ge=0.0, le=1.0)
    identical_cutoff: float = Field(0.995, ge=0.0, le=1.0)
    merge_split_threshold: float = Field(0.80, ge=0.0, le=1.0)
    embedding_weight: float = Field(0.7, ge=0.0, le=1.0)
    lexical_weight: float = Field(0.3, ge=0.0, le=1.0)
    jaccard_weight: float = Field(0.5, ge=0.0, le=1.0)
    top_k: int = Field(3, ge=1)
    boost_bonus: float = Field(0.15, ge=0.0, le=1.0)
    max_retries: int = Field(2, ge=0)
    result_cache_size: int = Field(1024, ge=1)
    oracle_timeout_s: float = Field(30.0, gt=0.0)
    fallback_confidence: float = Field(0.4, ge=0.0, le=1.0)
    rule_confidence: float = Field(0.5, ge=0.0, le=1.0)
    review_on_obligation_reversal: bool = True
    critical_change_types: List[ChangeType] = Field(
        default_factory=lambda: [ChangeType.MERGED, ChangeType.SPLIT]
    )
    max_workers: int = Field(4, ge=1)
    critical_keywords: List[str] = Field(
        default_factory=lambda: ["must", "shall", "required", "prohibited", "penalty", "fine"]
    )

    @model_validator(mode="after")
    def _weights_sum_to_one(self) -> "ComparisonConfig":
        if abs(self.embedding_weight + self.lexical_weight - 1.0) > 1e-6:
            raise ValueError("embedding_weight and lexical_weight must sum to 1")
        return self

    @classmethod
    def from_mapping(cls, raw: Dict[str, Any], version: int = 1) -> "ComparisonConfig":
        flat = flatten_config(raw)
        _reject_version(flat)
        try:
            return cls(version=version, **flat)
        except ValidationError as exc:
            raise ConfigError(str(exc)) from exc

    def settings(self) -> Dict[str, Any]:
        """Return the tunables without the version marker."""

        return self.model_dump(mode="json", exclude={"version"})


def default_config() -> ComparisonConfig:
    return ComparisonConfig.from_mapping(load_config())


class ConfigRegistry:
    """Holds the current configuration version and records every change.

    Runs take a snapshot via :meth:`current`; updates never touch a snapshot
    already handed out.
    """

    def __init__(self, config: Optional[ComparisonConfig] = None, path: Optional[Path] = None) -> None:
        self._lock = threading.Lock()
        self._path = path
        self._mtime: Optional[float] = None
        if config is None:
            path = path or _config_path()
            config = ComparisonConfig.from_mapping(self._read(path))
            self._path = path
            self._mtime = path.stat().st_mtime
        self._config = config
        self.history: List[Dict[str, Any]] = []

    @staticmethod
    def _read(path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise ConfigError(f"Config file not found at {path}")
        with path.open("r", encoding="utf-8") as handle:
            return yaml.safe_load(handle) or {}

    def current(self) -> ComparisonConfig:
        with self._lock:
            return self._config

    def update(self, **changes: Any) -> ComparisonConfig:
        """Apply changes and publish them as a new configuration version."""

        with self._lock:
            merged = {**self._config.settings(), **changes}
            return self._publish(merged)

    def reload(self) -> ComparisonConfig:
        """Re-read the YAML file if it changed since the last load."""

        if self._path is None:
            return self.current()
        mtime = self._path.stat().st_mtime
        with self._lock:
            if self._mtime is not None and mtime == self._mtime:
                return self._config
            merged = flatten_config(self._read(self._path))
            config = self._publish({**self._config.settings(), **merged})
            self._mtime = mtime
            return config

    def _publish(self, merged: Dict[str, Any]) -> ComparisonConfig:
        _reject_version(merged)
        before = self._config.settings()
        try:
            candidate = ComparisonConfig(version=self._config.version + 1, **merged)
        except ValidationError as exc:
            raise ConfigError(str(exc)) from exc
        after = candidate.settings()
        changed = sorted(key for key in after if after[key] != before.get(key))
        if not changed:
            return self._config
        for key in changed:
            logger.info(
                "config value changed",
                key=key,
                old=before.get(key),
                new=after[key],
                version=candidate.version,
            )
            self.history.append(
                {"version": candidate.version, "key": key, "old": before.get(key), "new": after[key]}
            )
        self._config = candidate
        return candidate
