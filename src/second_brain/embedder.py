from __future__ import annotations

from typing import Sequence

import numpy as np
from sentence_transformers import SentenceTransformer

from .log import get_logger

logger = get_logger(__name__)


def _load_or_create_model(name: str) -> SentenceTransformer:
    logger.info("Loading embedding model: %s", name)
    return SentenceTransformer(name)


class SentenceEncoder:
    """Default encoder for ``embed_pending`` and query embedding."""

    def __init__(self, model_name: str, batch_size: int = 32) -> None:
        self.model_name = model_name
        self.batch_size = batch_size
        self.model = _load_or_create_model(model_name)

    def encode(self, texts: Sequence[str]) -> np.ndarray:
        embeddings = self.model.encode(
            list(texts),
            batch_size=self.batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
        )
        return embeddings.astype("float32")

    def encode_query(self, text: str) -> np.ndarray:
        return self.encode([text])[0]


__all__ = ["SentenceEncoder"]
