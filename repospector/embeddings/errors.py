"""Exception hierarchy for the embedding layer.

Callers distinguish three situations: a configuration or credential problem
that retrying cannot fix, a transient provider failure that was retried until
the attempt ceiling, and a local model that could not be loaded (the caller
can switch to the remote provider and carry on).
"""
from typing import Optional


class EmbeddingError(Exception):
    """Base class for all embedding failures."""


class EmbeddingConfigurationError(EmbeddingError):
    """The provider is misconfigured (e.g. remote provider without API key)."""


class EmbeddingProviderError(EmbeddingError):
    """Transient provider failure (429, 5xx, unexpected status or payload)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class EmbeddingAuthenticationError(EmbeddingProviderError):
    """The provider rejected the credentials (401/403).  Never retried."""


class LocalProviderUnavailableError(EmbeddingError):
    """The local embedding model could not be initialised.

    Recoverable: the service keeps running and can be switched to the remote
    provider.
    """

    recoverable = True
