"""
Daraja OAuth access tokens.

Initiation depends only on the `AccessTokenProvider` capability, so tests and
alternative credential sources can stand in for the real OAuth exchange.
"""
import asyncio
import base64
import time
from typing import Optional, Protocol

import httpx
import redis.asyncio as aioredis
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from merchant_payments.config import Settings, get_settings
from merchant_payments.integrations.errors import DarajaError, DarajaErrorType
from merchant_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TOKEN_CACHE_KEY = "daraja:access_token"
OAUTH_PATH = "/oauth/v1/generate"


class AccessTokenProvider(Protocol):
    """Anything that can hand out a bearer token for the gateway."""

    async def get_access_token(self) -> str:
        ...


class DarajaTokenProvider:
    """
    Client-credentials token provider with caching.

    Tokens are kept in memory and, when Redis is configured, shared across
    workers. Both caches expire `token_expiry_margin_seconds` before the
    gateway's own expiry. Concurrent callers share a single refresh.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        settings: Optional[Settings] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        self.settings = settings or get_settings()
        self.http_client = http_client
        self.redis_client = redis_client
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    def _cached(self) -> Optional[str]:
        if self._token and time.monotonic() < self._expires_at:
            return self._token
        return None

    def _store(self, token: str, ttl: int) -> None:
        self._token = token
        self._expires_at = time.monotonic() + ttl

    def invalidate(self) -> None:
        """Drop the in-memory token, e.g. after the gateway rejects it."""
        self._token = None
        self._expires_at = 0.0

    async def get_access_token(self) -> str:
        """
        Return a valid access token, fetching one if needed.

        Raises:
            DarajaError: UNREACHABLE if a token cannot be obtained
        """
        token = self._cached()
        if token:
            metrics.record_access_token("memory")
            return token

        async with self._lock:
            token = self._cached()
            if token:
                metrics.record_access_token("memory")
                return token

            token = await self._read_shared_cache()
            if token:
                metrics.record_access_token("redis")
                return token

            try:
                token, expires_in = await self._fetch_token()
            except httpx.TransportError as e:
                logger.error("access_token_unreachable", error=str(e))
                raise DarajaError(
                    f"Failed to reach Daraja OAuth endpoint: {e}",
                    DarajaErrorType.UNREACHABLE,
                    original_error=e,
                )

            ttl = max(int(expires_in) - self.settings.token_expiry_margin_seconds, 1)
            self._store(token, ttl)
            await self._write_shared_cache(token, ttl)
            metrics.record_access_token("gateway")
            logger.info("access_token_refreshed", expires_in=expires_in, cache_ttl=ttl)
            return token

    async def _read_shared_cache(self) -> Optional[str]:
        if self.redis_client is None:
            return None
        try:
            token = await self.redis_client.get(TOKEN_CACHE_KEY)
            if not token:
                return None
            ttl = await self.redis_client.ttl(TOKEN_CACHE_KEY)
            if isinstance(token, bytes):
                token = token.decode()
            self._store(token, max(int(ttl), 1))
            return token
        except Exception as e:
            # Shared cache is an optimisation; fall through to the gateway
            logger.warning("access_token_cache_read_failed", error=str(e))
            return None

    async def _write_shared_cache(self, token: str, ttl: int) -> None:
        if self.redis_client is None:
            return
        try:
            await self.redis_client.setex(TOKEN_CACHE_KEY, ttl, token)
        except Exception as e:
            logger.warning("access_token_cache_write_failed", error=str(e))

    def _basic_auth(self) -> str:
        raw = f"{self.settings.mpesa_consumer_key}:{self.settings.mpesa_consumer_secret}"
        return base64.b64encode(raw.encode()).decode()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        reraise=True,
    )
    async def _fetch_token(self) -> tuple[str, int]:
        """
        Exchange consumer credentials for a token.

        Transport errors are retried; any HTTP answer is final.

        Returns:
            tuple[str, int]: Token and its lifetime in seconds
        """
        start = time.perf_counter()
        response = await self.http_client.get(
            f"{self.settings.mpesa_base_url}{OAUTH_PATH}",
            params={"grant_type": "client_credentials"},
            headers={"Authorization": f"Basic {self._basic_auth()}"},
            timeout=self.settings.gateway_timeout_seconds,
        )
        metrics.record_daraja_call(
            "oauth", str(response.status_code), time.perf_counter() - start
        )

        if response.status_code != 200:
            logger.error(
                "access_token_request_failed",
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise DarajaError(
                f"Access token request failed with HTTP {response.status_code}",
                DarajaErrorType.UNREACHABLE,
                status_code=response.status_code,
            )

        try:
            body = response.json()
            token = body["access_token"]
            expires_in = int(body.get("expires_in", 3599))
        except (ValueError, KeyError, TypeError) as e:
            raise DarajaError(
                "Malformed access token response",
                DarajaErrorType.UNREACHABLE,
                status_code=response.status_code,
                original_error=e,
            )
        return token, expires_in
