"""
Embedding providers: the network (or model) boundary of the pipeline.

- HTTPEmbeddingProvider: OpenAI-compatible /embeddings endpoint over httpx,
  with retry and exponential backoff on transient errors
- LocalEmbeddingProvider: Sentence Transformers model loaded on first use

Providers raise on failure. EmbeddingGenerator is the component that turns
those failures into fallback vectors.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer
    from ..config import Settings

logger = logging.getLogger(__name__)


class EmbeddingProviderError(Exception):
    """Base exception for embedding provider errors."""
    pass


class EmbeddingRateLimitError(EmbeddingProviderError):
    """Raised when the provider rate limits us."""
    pass


class EmbeddingAuthError(EmbeddingProviderError):
    """Raised when the API key is missing or rejected."""
    pass


class HTTPEmbeddingProvider:
    """
    Async client for an OpenAI-compatible embeddings API.

    Features:
    - Automatic retry with exponential backoff (3 attempts)
    - Rate limiting (configurable requests per second)
    - Connection pooling via a shared httpx.AsyncClient

    Example:
        async with HTTPEmbeddingProvider(api_key="sk-...") as provider:
            vector = await provider.embed("Employers must pay overtime...")
    """

    DEFAULT_HEADERS = {
        "Accept": "application/json",
        "User-Agent": "crag-embeddings/1.0",
    }

    def __init__(
        self,
        api_url: str = "https://api.openai.com/v1",
        api_key: Optional[str] = None,
        model_name: str = "text-embedding-3-small",
        dimensions: int = 1536,
        requests_per_second: float = 5.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the provider.

        Args:
            api_url: Base URL of the embeddings API
            api_key: Bearer token
            model_name: Model requested from the API
            dimensions: Expected vector length
            requests_per_second: Client-side pacing
            timeout: Request timeout in seconds
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.model_name = model_name
        self.dimensions = dimensions
        self.requests_per_second = requests_per_second
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._last_request_time: float = 0
        self._rate_limit_lock = asyncio.Lock()

    async def __aenter__(self) -> "HTTPEmbeddingProvider":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = dict(self.DEFAULT_HEADERS)
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _rate_limit(self) -> None:
        """Enforce rate limiting between requests."""
        if self.requests_per_second <= 0:
            return
        async with self._rate_limit_lock:
            loop = asyncio.get_running_loop()
            min_interval = 1.0 / self.requests_per_second
            elapsed = loop.time() - self._last_request_time

            if elapsed < min_interval:
                await asyncio.sleep(min_interval - elapsed)

            self._last_request_time = loop.time()

    def _handle_response(self, response: httpx.Response) -> dict:
        """
        Check the response status and decode the JSON body.

        Raises:
            EmbeddingRateLimitError: If rate limited (429)
            EmbeddingAuthError: If the key is rejected (401/403)
            EmbeddingProviderError: For other HTTP errors
        """
        if response.status_code == 429:
            raise EmbeddingRateLimitError("Rate limited by embedding API")

        if response.status_code in (401, 403):
            raise EmbeddingAuthError(f"Embedding API rejected credentials ({response.status_code})")

        if response.status_code >= 400:
            raise EmbeddingProviderError(
                f"API error {response.status_code}: {response.text[:200]}"
            )

        return response.json()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.HTTPError, EmbeddingRateLimitError)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _request(self, payload: dict) -> dict:
        client = self._ensure_client()
        await self._rate_limit()

        logger.debug(f"Request: POST /embeddings ({self.model_name})")
        response = await client.post("/embeddings", json=payload)
        return self._handle_response(response)

    async def embed(self, text: str) -> list[float]:
        """
        Embed a single text.

        Args:
            text: Text to embed

        Returns:
            Embedding vector as a list of floats

        Raises:
            EmbeddingAuthError: If no API key is configured or it is rejected
            EmbeddingProviderError: On malformed responses or persistent failures
        """
        if not self.api_key:
            raise EmbeddingAuthError("No embedding API key configured")

        data = await self._request({"model": self.model_name, "input": text})

        try:
            vector = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as e:
            raise EmbeddingProviderError(f"Malformed embedding response: {e}") from e

        return [float(x) for x in vector]


class LocalEmbeddingProvider:
    """
    In-process Sentence Transformers provider.

    The model is loaded lazily on first use, which defers the load time until
    embeddings are actually needed. Encoding runs in a worker thread so the
    event loop is not blocked.
    """

    def __init__(
        self,
        model_name: str = "all-MiniLM-L6-v2",
        dimensions: int = 384,
        device: Optional[str] = None,
    ):
        self.model_name = model_name
        self.dimensions = dimensions
        self.device = device
        self._model: Optional["SentenceTransformer"] = None

    @property
    def model(self) -> "SentenceTransformer":
        """Lazy load the model on first use."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading embedding model: {self.model_name}")
            self._model = SentenceTransformer(self.model_name, device=self.device)
            logger.info(f"Model loaded on device: {self._model.device}")
        return self._model

    async def embed(self, text: str) -> list[float]:
        embedding = await asyncio.to_thread(
            self.model.encode, text, normalize_embeddings=True
        )
        return [float(x) for x in embedding]


def build_provider(settings: "Settings"):
    """
    Create the provider named by settings.embedding_provider.

    Returns:
        A provider, or None for "none" (generator will only produce fallbacks)
    """
    kind = settings.embedding_provider
    if kind == "http":
        return HTTPEmbeddingProvider(
            api_url=settings.embedding_api_url,
            api_key=settings.embedding_api_key,
            model_name=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            requests_per_second=settings.embedding_requests_per_second,
            timeout=settings.embedding_timeout,
        )
    if kind == "local":
        return LocalEmbeddingProvider(
            model_name=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
        )
    if kind == "none":
        return None
    raise ValueError(f"Unknown embedding provider: {kind}")
