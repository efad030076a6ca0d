"""Local embedding provider backed by sentence-transformers.

The model runs in-process, so embeddings are free and never leave the
machine.  ``sentence_transformers`` is imported lazily on first use: it is a
heavy optional dependency and loading the model may download weights.  Any
failure while loading is reported as ``LocalProviderUnavailableError`` so the
caller can switch to the remote provider instead of crashing.
"""
import logging
from typing import Optional

import numpy as np

from .errors import LocalProviderUnavailableError
from .provider import EmbeddingProvider

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_DIM   = 384


class LocalEmbeddingProvider(EmbeddingProvider):
    """Embedding provider running a sentence-transformers model in-process.

    Args:
        model_name: Hugging Face model name or local path.
        dim:        Expected vector dimensionality.
    """

    max_batch_size = 32

    def __init__(self, model_name: str = DEFAULT_MODEL, dim: int = DEFAULT_DIM) -> None:
        self._model_name = model_name
        self._dim = dim
        self._model: Optional[object] = None

    @property
    def name(self) -> str:
        return "local"

    @property
    def model_id(self) -> str:
        return self._model_name

    @property
    def dim(self) -> int:
        return self._dim

    @property
    def is_ready(self) -> bool:
        return self._model is not None

    async def init(self) -> None:
        """Load the model once.

        Raises:
            LocalProviderUnavailableError: If the library is missing or the
                model cannot be loaded.
        """
        if self._model is not None:
            return

        logger.info("[embeddings/local] Loading model %s", self._model_name)
        try:
            from sentence_transformers import SentenceTransformer  # lazy import: heavy dependency

            self._model = SentenceTransformer(self._model_name)
        except Exception as exc:
            logger.error("[embeddings/local] Failed to load %s: %s", self._model_name, exc)
            raise LocalProviderUnavailableError(
                "Local embedding initialization failed. Install the 'local' extra "
                "(sentence-transformers) or configure the remote embedding provider "
                "(embedding.provider: remote) and retry.\n\n"
                f"Original error: {exc}"
            ) from exc

        logger.info("[embeddings/local] Model ready: %s dim=%d", self._model_name, self._dim)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        await self.init()

        logger.debug("[embeddings/local] encoding %d text(s)", len(texts))
        vectors = self._model.encode(
            list(texts),
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        result = np.asarray(vectors, dtype=np.float32).tolist()

        if len(result) != len(texts):
            raise ValueError(
                f"Provider returned {len(result)} vectors for {len(texts)} texts"
            )
        return result
