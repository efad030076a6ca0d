"""Abstract EmbeddingProvider interface.

Exactly two back-ends implement it: a local sentence-transformers model and a
remote OpenAI-compatible HTTP endpoint.  The service layer picks one at
construction time and never branches on the provider type afterwards.
"""
from abc import ABC, abstractmethod


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers.

    All methods run on the event loop; implementations must not hand work to
    background threads, because the shared embedding cache relies on
    cooperative scheduling for its consistency.
    """

    #: Largest number of texts accepted by a single ``embed()`` call.
    max_batch_size: int = 96

    @property
    @abstractmethod
    def name(self) -> str:
        """Short strategy name (``"local"`` or ``"remote"``)."""

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Provider-internal model identifier (used for logging and stats)."""

    @property
    @abstractmethod
    def dim(self) -> int:
        """Dimensionality of the embedding vectors produced by this model."""

    async def init(self) -> None:
        """Prepare the provider for use.  Idempotent; default is a no-op."""

    async def aclose(self) -> None:
        """Release held resources (connections, models).  Default is a no-op."""

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate embedding vectors for a batch of texts.

        Args:
            texts: Non-empty list of strings, at most ``max_batch_size``.

        Returns:
            One float vector per input text, in input order.

        Raises:
            EmbeddingError: On provider failure (network, auth, quota, …).
        """
