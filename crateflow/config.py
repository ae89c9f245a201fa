# Copyright (c) 2025 Marcus Dillavou <line72@line72.net>
# Part of the Crateflow Project
# Released under the AGPLv3 or later

# Settings for the scoring engine.
#
# Everything has a default so an empty (or missing) YAML file is a
# valid configuration. Values are bounded, and loading fails loudly
# with ConfigError when something is out of range.

import logging
import os
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CRATEFLOW_CONFIG"


class ComponentWeights(BaseModel):
    bpm: float = Field(default=0.35, ge=0.0)
    key: float = Field(default=0.35, ge=0.0)
    waveform: float = Field(default=0.15, ge=0.0)
    rhythm: float = Field(default=0.15, ge=0.0)

    def normalized(self) -> dict:
        return normalize_weights(self.model_dump())


DEFAULT_WEIGHTS = ComponentWeights().model_dump()


def normalize_weights(weights: Optional[dict] = None) -> dict:
    """Merge weights over the defaults and scale them to sum to 1"""
    merged = {**DEFAULT_WEIGHTS, **(weights or {})}
    cleaned = {}
    for name in DEFAULT_WEIGHTS:
        try:
            cleaned[name] = max(0.0, float(merged[name]))
        except (TypeError, ValueError):
            cleaned[name] = 0.0

    total = sum(cleaned.values())
    if total <= 0:
        total = sum(DEFAULT_WEIGHTS.values())
        cleaned = dict(DEFAULT_WEIGHTS)

    return {name: value / total for name, value in cleaned.items()}


class ScoringSettings(BaseModel):
    algorithm_tag: str = "baseline-v4"
    signature_version: str = "v1"
    weights: ComponentWeights = Field(default_factory=ComponentWeights)

    @property
    def algorithm_version(self) -> str:
        return f"flow-{self.algorithm_tag}"


class WaveformSettings(BaseModel):
    sample_rate: int = Field(default=150, gt=0)
    bin_count: int = Field(default=96, ge=16, le=512)
    rhythm_segment_count: int = Field(default=64, ge=16, le=128)
    kick_segment_count: int = Field(default=16, ge=8, le=64)


class CorrelatorSettings(BaseModel):
    duration_window_seconds: float = Field(default=30.0, gt=0)
    duration_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    token_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    min_assignment_score: float = Field(default=0.55, ge=0.0, le=1.0)
    file_suffixes: List[str] = Field(default_factory=lambda: [".EXT"])

    @field_validator("file_suffixes")
    @classmethod
    def _suffixes_not_empty(cls, value):
        if not value:
            raise ValueError("at least one analysis file suffix is required")
        return value


class AnalysisSettings(BaseModel):
    max_pairs: int = Field(default=5000, ge=0)
    max_pairs_cap: int = Field(default=100000, ge=0)
    top_limit: int = Field(default=20, ge=0)
    progress_every_pairs: int = Field(default=5000, ge=0)


class ClusteringSettings(BaseModel):
    similarity_threshold: float = Field(default=0.82, ge=0.0, le=1.0)
    strict_mode: bool = False
    min_cluster_size: int = Field(default=3, ge=2)
    max_pairs: int = Field(default=15000, ge=0)
    max_clusters: int = Field(default=25, ge=1)
    optimize_flow: bool = True


class SearchSettings(BaseModel):
    limit: int = Field(default=20, ge=1)
    min_score: float = Field(default=0.6, ge=0.0, le=1.0)


class CacheSettings(BaseModel):
    db_path: str = "./db/similarity.db"


class Settings(BaseModel):
    scoring: ScoringSettings = Field(default_factory=ScoringSettings)
    waveform: WaveformSettings = Field(default_factory=WaveformSettings)
    correlator: CorrelatorSettings = Field(default_factory=CorrelatorSettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    clustering: ClusteringSettings = Field(default_factory=ClusteringSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Load settings from a YAML file.

    If config_path is None, the CRATEFLOW_CONFIG environment variable is
    used. A missing file falls back to the defaults.
    """
    if config_path is None:
        config_path = os.getenv(CONFIG_ENV_VAR)

    if not config_path:
        return Settings()

    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file not found: {path}. Using defaults.")
        return Settings()

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {path}: {e}") from e

    logger.info(f"Loaded config from {path}")
    return settings
