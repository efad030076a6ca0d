"""EmbeddingService — thin orchestration layer over EmbeddingProvider.

Validates batch-size constraints, memoizes single-text requests through the
``EmbeddingCache`` and delegates to the configured provider.  A module-level
singleton is initialised in ``repospector/main.py`` from config.
"""
import logging
from typing import Optional

from repospector.config import AppConfig

from .cache import EmbeddingCache
from .local import LocalEmbeddingProvider
from .provider import EmbeddingProvider
from .remote import RemoteEmbeddingProvider

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_service: Optional["EmbeddingService"] = None


def get_embedding_service() -> Optional["EmbeddingService"]:
    """Return the global EmbeddingService, or None if not yet initialised."""
    return _service


def set_embedding_service(service: Optional["EmbeddingService"]) -> None:
    """Set (or replace) the global EmbeddingService instance."""
    global _service
    _service = service


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class EmbeddingService:
    """Validates requests, consults the cache and delegates to a provider.

    Args:
        provider: Concrete embedding provider to use.
        cache:    Cache for single-text requests.  A default-sized cache is
                  created when omitted.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: Optional[EmbeddingCache] = None,
    ) -> None:
        self._provider = provider
        self._cache = cache if cache is not None else EmbeddingCache()

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider

    @property
    def provider_name(self) -> str:
        return self._provider.name

    @property
    def model_id(self) -> str:
        return self._provider.model_id

    @property
    def dim(self) -> int:
        return self._provider.dim

    @property
    def max_batch_size(self) -> int:
        return self._provider.max_batch_size

    @property
    def cache(self) -> EmbeddingCache:
        return self._cache

    async def ensure_ready(self) -> None:
        """Initialise the provider; initialisation errors propagate."""
        await self._provider.init()

    def switch_provider(self, provider: EmbeddingProvider) -> None:
        """Replace the active provider.

        The cache is cleared: vectors from two models are not comparable.
        """
        logger.info(
            "[EmbeddingService] switching provider %s/%s -> %s/%s",
            self._provider.name, self._provider.model_id,
            provider.name, provider.model_id,
        )
        self._provider = provider
        self._cache.clear()

    def provider_info(self) -> dict:
        return {
            "provider": self._provider.name,
            "model": self._provider.model_id,
            "dimension": self._provider.dim,
        }

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a validated batch of texts.

        Single-text requests are served from the cache when possible; a hit
        never reaches the provider.

        Args:
            texts: 1–``max_batch_size`` strings to embed.

        Returns:
            Ordered list of float vectors.

        Raises:
            ValueError:     If ``texts`` is empty or exceeds the provider cap.
            EmbeddingError: On provider-level errors.
        """
        if not texts:
            raise ValueError("texts must not be empty")
        if len(texts) > self._provider.max_batch_size:
            raise ValueError(
                f"Batch size {len(texts)} exceeds maximum of {self._provider.max_batch_size}"
            )

        single = len(texts) == 1
        if single:
            cached = self._cache.get(texts[0])
            if cached is not None:
                logger.debug("[EmbeddingService] cache hit")
                return [cached]

        logger.debug(
            "[EmbeddingService] embedding %d text(s) via provider=%s model=%s",
            len(texts),
            self._provider.name,
            self._provider.model_id,
        )
        vectors = await self._provider.embed(list(texts))

        if len(vectors) != len(texts):
            raise ValueError(
                f"Provider returned {len(vectors)} vectors for {len(texts)} texts"
            )

        if single and vectors[0]:
            self._cache.set(texts[0], vectors[0])
        return vectors


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_provider(config: AppConfig) -> EmbeddingProvider:
    """Construct the provider selected by ``embedding.provider``.

    Raises:
        EmbeddingConfigurationError: Remote provider without an API key.
    """
    emb = config.embedding
    if emb.provider == "remote":
        return RemoteEmbeddingProvider(
            api_key=config.embedding_api_key,
            model=emb.remote_model,
            base_url=emb.base_url,
            dim=emb.remote_dim,
            max_attempts=emb.max_attempts,
            backoff_base=emb.backoff_base_seconds,
            timeout=emb.request_timeout_seconds,
        )
    return LocalEmbeddingProvider(model_name=emb.local_model, dim=emb.local_dim)


def build_embedding_service(config: AppConfig) -> EmbeddingService:
    """Construct an EmbeddingService (provider + cache) from config."""
    cache = EmbeddingCache(
        capacity=config.rag.cache_max_size,
        ttl=config.rag.cache_ttl_seconds,
    )
    return EmbeddingService(build_provider(config), cache=cache)
