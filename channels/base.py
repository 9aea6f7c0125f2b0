"""
Provider gateways — Shared HTTP infrastructure for the voice-call and
messaging providers.

Provides:
- ProviderError: structured error hierarchy (permanent / transient / config)
- classify_http_status: HTTP status → error class
- MessageDeduplicator: TTL seen-set for inbound provider deliveries
- ProviderHTTPClient: lazily created httpx.AsyncClient with error mapping
"""
from __future__ import annotations

import time
import structlog
from typing import Any, Optional

import httpx

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ProviderError(Exception):
    """Base exception for all provider operations."""

    def __init__(self, message: str, provider: str = "", retryable: bool = False, status: int = None):
        self.provider = provider
        self.retryable = retryable
        self.status = status
        super().__init__(message)


class PermanentProviderError(ProviderError):
    """Non-retryable: invalid destination, rejected payload, bad credentials."""

    def __init__(self, message: str, provider: str = "", status: int = None):
        super().__init__(message, provider, retryable=False, status=status)


class TransientProviderError(ProviderError):
    """Retryable: rate limit, 5xx, network failure."""

    def __init__(self, message: str, provider: str = "", status: int = None):
        super().__init__(message, provider, retryable=True, status=status)


class ProviderConfigError(PermanentProviderError):
    """Gateway cannot be used: credentials, assistant or public URL missing."""


def classify_http_status(status: int, message: str, provider: str = "") -> ProviderError:
    if status == 429 or status >= 500:
        return TransientProviderError(message, provider, status)
    return PermanentProviderError(message, provider, status)


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:300] or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        message = body.get("message") or body.get("error") or body
        if isinstance(message, list):
            message = "; ".join(str(m) for m in message)
        return str(message)[:300]
    return str(body)[:300]


# ══════════════════════════════════════════════════════════════
#  MESSAGE DEDUPLICATION
# ══════════════════════════════════════════════════════════════

class MessageDeduplicator:
    """TTL-based seen-set for provider redeliveries (e.g. WhatsApp MessageSid)."""

    def __init__(self, ttl_seconds: float = 600.0, max_size: int = 5000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._seen: dict[str, float] = {}

    def is_duplicate(self, key: str) -> bool:
        if not key:
            return False
        self._prune()
        if key in self._seen:
            return True
        self._seen[key] = time.monotonic()
        return False

    def _prune(self):
        cutoff = time.monotonic() - self.ttl
        expired = [k for k, t in self._seen.items() if t < cutoff]
        for k in expired:
            del self._seen[k]
        # oldest first once over capacity
        overflow = len(self._seen) - self.max_size
        if overflow > 0:
            for k in sorted(self._seen, key=self._seen.get)[:overflow]:
                del self._seen[k]


# ══════════════════════════════════════════════════════════════
#  HTTP CLIENT BASE
# ══════════════════════════════════════════════════════════════

class ProviderHTTPClient:
    """
    Lazily-created httpx.AsyncClient plus uniform error mapping.

    Every non-2xx response becomes a PermanentProviderError or a
    TransientProviderError; transport failures are transient.
    """

    provider = "http"

    def __init__(self, base_url: str, timeout_s: float = 30.0, transport: httpx.AsyncBaseTransport = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _client_kwargs(self) -> dict[str, Any]:
        return {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_s, connect=10.0),
                transport=self._transport,
                **self._client_kwargs(),
            )
        return self._client

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        url = f"{self.base_url}{path}"
        try:
            resp = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            logger.warning(f"{self.provider}_transport_error", path=path, error=str(e))
            raise TransientProviderError(f"{self.provider} unreachable: {e}", self.provider) from e

        if resp.status_code >= 400:
            message = _error_message(resp)
            logger.error(
                f"{self.provider}_api_error",
                status=resp.status_code,
                body=resp.text[:500],
                path=path,
            )
            raise classify_http_status(resp.status_code, message, self.provider)

        if not resp.content:
            return {}
        return resp.json()

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
