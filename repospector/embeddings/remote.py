"""Remote embedding provider for OpenAI-compatible ``/embeddings`` endpoints.

Request body
------------
::

    POST {base_url}/embeddings
    Authorization: Bearer <api key>

    { "model": "text-embedding-3-small", "input": ["text1", "text2"] }

Response body
-------------
::

    { "data": [ { "index": 0, "embedding": [...] }, ... ] }

Retry policy
------------
Up to ``max_attempts`` (3) attempts with exponential backoff starting at
``backoff_base`` (0.5s → 1s → …).  401/403 raise
``EmbeddingAuthenticationError`` immediately.  Every other failure (429, 5xx,
other statuses, network errors, malformed payloads) is retried; once the
attempts are exhausted the last error propagates unchanged.  The loop is a
``tenacity.AsyncRetrying``.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import (
    EmbeddingAuthenticationError,
    EmbeddingConfigurationError,
    EmbeddingProviderError,
)
from .provider import EmbeddingProvider

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL    = "text-embedding-3-small"
DEFAULT_DIM      = 1536

_AUTH_STATUSES = (401, 403)


class RemoteEmbeddingProvider(EmbeddingProvider):
    """Embedding provider calling a remote HTTP API.

    Args:
        api_key:      Bearer token.  Required; an empty key fails fast.
        model:        Model identifier sent in the request body.
        base_url:     API root; ``/embeddings`` is appended.
        dim:          Expected vector dimensionality.
        max_attempts: Total attempts per ``embed()`` call.
        backoff_base: Delay in seconds before the second attempt; doubles
                      after each further failure.
        timeout:      Per-request timeout in seconds.
        transport:    Optional ``httpx`` transport (tests use
                      ``httpx.MockTransport``).
        sleep:        Coroutine used to wait between attempts.
    """

    max_batch_size = 96

    def __init__(
        self,
        api_key: Optional[str],
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        dim: int = DEFAULT_DIM,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not api_key:
            raise EmbeddingConfigurationError(
                "An API key is required for the remote embedding provider"
            )
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._dim = dim
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._timeout = timeout
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    # -----------------------------------------------------------------------
    # EmbeddingProvider properties
    # -----------------------------------------------------------------------

    @property
    def name(self) -> str:
        return "remote"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dim(self) -> int:
        return self._dim

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        """Return a cached async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """Provider's ``error.message`` when present, else the status text."""
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
        return response.reason_phrase or f"HTTP {response.status_code}"

    async def _request(self, texts: list[str]) -> list[list[float]]:
        """Issue a single POST and parse the response."""
        client = self._get_client()
        response = await client.post(
            f"{self._base_url}/embeddings",
            json={"model": self._model, "input": texts},
        )

        if response.status_code in _AUTH_STATUSES:
            raise EmbeddingAuthenticationError(
                f"Embedding API authentication failed: {self._error_message(response)}",
                status_code=response.status_code,
            )
        if response.is_error:
            raise EmbeddingProviderError(
                f"Embedding API error ({response.status_code}): {self._error_message(response)}",
                status_code=response.status_code,
            )

        body = response.json()
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            raise EmbeddingProviderError("Unexpected embedding response: 'data' key missing")

        if not all(isinstance(item, dict) and "embedding" in item for item in data):
            raise EmbeddingProviderError("Unexpected embedding response: item without 'embedding'")
        if all("index" in item for item in data):
            data = sorted(data, key=lambda item: item["index"])
        vectors = [item["embedding"] for item in data]

        if len(vectors) != len(texts):
            raise EmbeddingProviderError(
                f"Provider returned {len(vectors)} vectors for {len(texts)} texts"
            )
        return vectors

    # -----------------------------------------------------------------------
    # EmbeddingProvider implementation
    # -----------------------------------------------------------------------

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts*, retrying transient failures.

        Raises:
            EmbeddingAuthenticationError: On 401/403, without retrying.
            EmbeddingProviderError:       Last transient failure after all
                                          attempts were used.
            httpx.HTTPError:              Last network failure after all
                                          attempts were used.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff_base),
            retry=(
                retry_if_exception_type(Exception)
                & retry_if_not_exception_type(EmbeddingAuthenticationError)
            ),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    logger.debug(
                        "[embeddings/remote] attempt %d/%d model=%s texts=%d",
                        attempt.retry_state.attempt_number, self._max_attempts,
                        self._model, len(texts),
                    )
                    return await self._request(texts)
        except EmbeddingAuthenticationError:
            raise
        except Exception as exc:
            logger.error(
                "[embeddings/remote] Giving up after %d attempts: %s",
                self._max_attempts, exc,
            )
            raise

    def _log_retry(self, retry_state: RetryCallState) -> None:
        logger.info(
            "[embeddings/remote] Embedding retry %d/%d in %.2fs: %s",
            retry_state.attempt_number, self._max_attempts,
            retry_state.next_action.sleep, retry_state.outcome.exception(),
        )
