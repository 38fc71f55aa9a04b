from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import InvalidConfiguration


class AppConfig(BaseModel):
    data_dir: Path = Field(default=Path("data"))
    index_dir: Path = Field(default=Path("index"))
    database_name: str = Field(default="second_brain.db", min_length=1)
    embedding_model_name: str = Field(
        default="sentence-transformers/all-MiniLM-L6-v2"
    )
    openai_model: str = Field(default="gpt-4o-mini")
    log_level: str = Field(default="INFO")

    # Chunking, measured in characters.
    chunk_size: int = Field(default=1000, ge=50)
    chunk_overlap: int = Field(default=100, ge=0)

    # Queue
    queue_max_attempts: int = Field(default=3, ge=1)
    queue_stale_after_seconds: int = Field(default=1800, ge=1)
    worker_concurrency: int = Field(default=2, ge=1, le=32)

    # Watching
    watch_ignore_patterns: List[str] = Field(
        default_factory=lambda: ["*.tmp", "*.temp", ".DS_Store", "._*", "*.part"]
    )
    watch_debounce_seconds: float = Field(default=2.0, gt=0)

    # Retrieval
    top_k: int = Field(default=5, ge=1)
    vector_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    candidate_multiplier: int = Field(default=3, ge=1)
    max_context_chars: int = Field(default=6000, ge=1000)
    embed_batch_size: int = Field(default=32, ge=1)

    @model_validator(mode="after")
    def _overlap_below_chunk_size(self) -> "AppConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self

    @property
    def data_dir_resolved(self) -> Path:
        return self.data_dir.resolve()

    @property
    def index_dir_resolved(self) -> Path:
        return self.index_dir.resolve()

    @property
    def database_path(self) -> Path:
        return self.index_dir_resolved / self.database_name


def load_config(path: Optional[Path] = None) -> AppConfig:
    """
    Load configuration from a YAML file.

    If `path` is None, looks for `config.yaml` in the current working directory.
    Also loads environment variables from a `.env` file if present.

    Raises InvalidConfiguration when the file holds out-of-range values.
    """
    load_dotenv()

    if path is None:
        path = Path("config.yaml")

    if not path.exists():
        # Fall back to defaults if no config file is present.
        return AppConfig()

    with path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise InvalidConfiguration(f"Configuration in {path} must be a mapping")

    try:
        cfg = AppConfig(**raw)
    except ValidationError as e:
        raise InvalidConfiguration(f"Invalid configuration in {path}:\n{e}") from e

    # Ensure directories exist
    cfg.data_dir_resolved.mkdir(parents=True, exist_ok=True)
    cfg.index_dir_resolved.mkdir(parents=True, exist_ok=True)
    return cfg


__all__ = ["AppConfig", "load_config"]
