"""
Pipeline configuration
-----------------------
Settings come from three layers, later layers winning:

  1. Built-in defaults (the pydantic models below)
  2. A YAML file (config/config.yaml)
  3. Environment variables (a local .env file is honoured)

Chunk bounds are range-checked by the chunker itself so a bad bound is
reported as a pre-flight ConfigurationError of the chunking stage.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from transcript_digest.errors import ConfigurationError

DEFAULT_CONFIG_PATH = "config/config.yaml"


class ChunkingConfig(BaseModel):
    max_records: int = 50                    # Primary bound: records per chunk
    max_chars: int = 100_000                 # Secondary bound: cumulative content length
    strategy: Literal["greedy", "thread_aware"] = "greedy"
    soft_target_ratio: float = 0.75          # thread_aware: earliest point a weak boundary may split
    min_relationship_score: int = 75         # thread_aware: boundaries scoring below this are weak
    estimate_tokens: bool = False            # tiktoken estimate per chunk, for logs and the CLI


class AnalysisConfig(BaseModel):
    provider: Literal["openai", "anthropic"] = "openai"
    model: str = "gpt-4o"
    topic: str = "a software project"        # Fills the system prompt
    temperature: float = 0.0
    max_tokens: int = 2048
    request_timeout: float = 30.0            # Seconds, per external call
    max_retries: int = 2                     # Extra attempts for timeouts / rate limits
    concurrency: int = 3                     # Simultaneous in-flight chunk analyses
    fail_fast: bool = True

    @field_validator("temperature")
    @classmethod
    def _temperature_range(cls, v: float) -> float:
        if not 0.0 <= v <= 2.0:
            raise ValueError("temperature must be between 0 and 2")
        return v

    @field_validator("request_timeout")
    @classmethod
    def _timeout_range(cls, v: float) -> float:
        if not 1.0 <= v <= 300.0:
            raise ValueError("request_timeout must be between 1 and 300 seconds")
        return v

    @field_validator("max_retries")
    @classmethod
    def _retries_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries must be >= 0")
        return v


class RunConfig(BaseModel):
    timeout_seconds: Optional[float] = None  # Overall deadline; None disables it
    write_manifest: bool = True

    @field_validator("timeout_seconds")
    @classmethod
    def _timeout_positive(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("timeout_seconds must be > 0")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = "logs/digest.log"


class PipelineConfig(BaseModel):
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    run: RunConfig = Field(default_factory=RunConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# Environment variable -> (section, key)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "CHUNK_MAX_RECORDS": ("chunking", "max_records"),
    "CHUNK_MAX_CHARS": ("chunking", "max_chars"),
    "CHUNK_STRATEGY": ("chunking", "strategy"),
    "ANALYSIS_PROVIDER": ("analysis", "provider"),
    "MODEL_NAME": ("analysis", "model"),
    "ANALYSIS_TOPIC": ("analysis", "topic"),
    "TEMPERATURE": ("analysis", "temperature"),
    "REQUEST_TIMEOUT": ("analysis", "request_timeout"),
    "MAX_RETRIES": ("analysis", "max_retries"),
    "ANALYSIS_CONCURRENCY": ("analysis", "concurrency"),
    "RUN_TIMEOUT": ("run", "timeout_seconds"),
    "LOG_LEVEL": ("logging", "level"),
}


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ConfigurationError(str(path), f"cannot read config file ({exc})") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(str(path), f"invalid YAML ({exc})") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top level must be a mapping")
    # A section whose keys are all commented out parses as None
    return {section: body for section, body in data.items() if body is not None}


def _apply_env(data: dict[str, Any], environ: dict[str, str]) -> dict[str, Any]:
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is None or value.strip() == "":
            continue
        body = data.get(section) or {}
        if not isinstance(body, dict):
            raise ConfigurationError(section, "section must be a mapping")
        body[key] = value
        data[section] = body
        logger.debug(f"[Config] {section}.{key} overridden by ${var}")
    return data


def load_config(
    path: Optional[str | Path] = None,
    environ: Optional[dict[str, str]] = None,
) -> PipelineConfig:
    """
    Build a PipelineConfig from defaults, an optional YAML file and the environment.

    A missing file is only an error when the path was given explicitly.
    """
    if environ is None:
        load_dotenv()
        environ = dict(os.environ)

    data: dict[str, Any] = {}
    if path is not None:
        data = _read_yaml(Path(path))
    elif Path(DEFAULT_CONFIG_PATH).exists():
        data = _read_yaml(Path(DEFAULT_CONFIG_PATH))

    data = _apply_env(data, environ)

    try:
        return PipelineConfig.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        key = ".".join(str(p) for p in first["loc"])
        raise ConfigurationError(key, first["msg"]) from exc
