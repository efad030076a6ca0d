"""Pydantic schemas for the /embeddings endpoints.

Request size is checked twice.  The schema rejects anything above
``MAX_BATCH`` texts (the remote provider's cap) with 422 before the service
is reached; the service then applies the active provider's own
``max_batch_size`` and answers 400 when the batch is still too large.  With
the local sentence-transformers provider that cap is 32.
"""
from typing import Optional

from pydantic import BaseModel, Field

from .provider import EmbeddingProvider

MAX_BATCH = EmbeddingProvider.max_batch_size


class EmbedRequest(BaseModel):
    """Request body for POST /embeddings.

    Attributes:
        texts: 1 to ``MAX_BATCH`` strings, embedded in order.  Each text is
               sent to the model as is; long texts are truncated by the
               model, not here.
    """
    texts: list[str] = Field(
        ...,
        min_length=1,
        max_length=MAX_BATCH,
        description=(
            f"Texts to embed, at most {MAX_BATCH} per request "
            "and no more than the active provider accepts (32 for local)."
        ),
    )


class EmbedResponse(BaseModel):
    """Vectors for an ``EmbedRequest``.

    ``vectors[i]`` belongs to ``texts[i]`` and has ``dim`` floats.  A
    single-text request may be answered from the embedding cache.
    """
    vectors: list[list[float]]
    model: str
    dim: int


class EmbedConfigResponse(BaseModel):
    """Model the index expects; ``provider`` is ``local`` or ``remote``."""
    model: str
    dim: int
    provider: str


class EmbedErrorResponse(BaseModel):
    """JSON body of every non-2xx /embeddings answer except 422.

    ``recoverable`` is only set on the 503 raised when the local model cannot
    be loaded; the caller may switch to the remote provider and retry.
    """
    error: str
    recoverable: Optional[bool] = None
