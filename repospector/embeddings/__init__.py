"""RepoSpector embedding pipeline.

Provides vector embeddings for code chunks and queries through one of two
interchangeable providers (local sentence-transformers model or a remote
OpenAI-compatible API), with a small TTL cache for single-text requests.
"""
from .cache import EmbeddingCache
from .errors import (
    EmbeddingAuthenticationError,
    EmbeddingConfigurationError,
    EmbeddingError,
    EmbeddingProviderError,
    LocalProviderUnavailableError,
)
from .local import LocalEmbeddingProvider
from .provider import EmbeddingProvider
from .remote import RemoteEmbeddingProvider
from .service import (
    EmbeddingService,
    build_embedding_service,
    build_provider,
    get_embedding_service,
    set_embedding_service,
)

__all__ = [
    "EmbeddingCache",
    "EmbeddingAuthenticationError",
    "EmbeddingConfigurationError",
    "EmbeddingError",
    "EmbeddingProviderError",
    "LocalProviderUnavailableError",
    "EmbeddingProvider",
    "LocalEmbeddingProvider",
    "RemoteEmbeddingProvider",
    "EmbeddingService",
    "build_embedding_service",
    "build_provider",
    "get_embedding_service",
    "set_embedding_service",
]
