"""FastAPI router for POST /embeddings.

Lets callers obtain embedding vectors from the configured provider without
talking to a model or cloud API directly.

Constraints
-----------
- Batch size: 1 to ``MAX_BATCH`` (96) texts per request (Pydantic schema),
  further capped by the active provider (32 for the local model).
- Returns 503 when no embedding service is configured or the local model
  cannot be loaded.
- Returns 401 when the remote provider rejects the credentials.
- Returns 400 for batches above the provider cap.
- Returns 500 with a JSON ``{"error": "..."}`` body on other provider failures.
"""
import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from .errors import EmbeddingAuthenticationError, LocalProviderUnavailableError
from .schemas import EmbedConfigResponse, EmbedErrorResponse, EmbedRequest, EmbedResponse
from .service import get_embedding_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/embeddings", tags=["embeddings"])


@router.get("/config", response_model=EmbedConfigResponse)
async def get_embedding_config() -> EmbedConfigResponse:
    """Return the active embedding model configuration.

    Falls back to the configured values when the service is not running so
    callers can still learn which model the index expects.
    """
    from repospector.config import get_config  # local import to avoid circular deps

    service = get_embedding_service()
    if service is not None:
        return EmbedConfigResponse(
            model=service.model_id,
            dim=service.dim,
            provider=service.provider_name,
        )

    emb = get_config().embedding
    if emb.provider == "remote":
        return EmbedConfigResponse(model=emb.remote_model, dim=emb.remote_dim, provider="remote")
    return EmbedConfigResponse(model=emb.local_model, dim=emb.local_dim, provider="local")


_ERROR_RESPONSES = {
    status: {"model": EmbedErrorResponse} for status in (400, 401, 500, 503)
}


@router.post("", response_model=EmbedResponse, responses=_ERROR_RESPONSES)
async def embed_texts(request: EmbedRequest) -> EmbedResponse | JSONResponse:
    """Generate embedding vectors for a batch of texts.

    Example::

        POST /embeddings
        { "texts": ["function greet(name) { ... }"] }

        200 OK
        { "vectors": [[0.12, -0.04, ...]], "model": "text-embedding-3-small", "dim": 1536 }
    """
    service = get_embedding_service()
    if service is None:
        logger.warning("[embeddings] No embedding service configured")
        return JSONResponse(
            {"error": "Embedding service not available"},
            status_code=503,
        )

    try:
        vectors = await service.embed(request.texts)
        logger.info(
            "[embeddings] embedded %d text(s) model=%s dim=%d",
            len(request.texts),
            service.model_id,
            service.dim,
        )
        return EmbedResponse(
            vectors=vectors,
            model=service.model_id,
            dim=service.dim,
        )
    except LocalProviderUnavailableError as exc:
        logger.warning("[embeddings] Local provider unavailable: %s", exc)
        return JSONResponse(
            {"error": str(exc), "recoverable": True},
            status_code=503,
        )
    except EmbeddingAuthenticationError as exc:
        logger.error("[embeddings] Provider rejected credentials: %s", exc)
        return JSONResponse({"error": str(exc)}, status_code=401)
    except ValueError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    except Exception as exc:
        logger.exception("[embeddings] Provider error: %s", exc)
        return JSONResponse(
            {"error": f"Embedding failed: {exc}"},
            status_code=500,
        )
