"""Wiring of gateway clients and core services for the API process."""
from dataclasses import dataclass
from typing import Optional

import httpx
import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from merchant_payments.config import Settings
from merchant_payments.core.payment_initiator import PaymentInitiator
from merchant_payments.core.reconciliation import CallbackReconciler
from merchant_payments.integrations.daraja_client import DarajaClient
from merchant_payments.integrations.token_provider import AccessTokenProvider, DarajaTokenProvider
from merchant_payments.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    """Long-lived objects shared by all requests."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    http_client: httpx.AsyncClient
    token_provider: AccessTokenProvider
    daraja_client: DarajaClient
    initiator: PaymentInitiator
    reconciler: CallbackReconciler
    health_check: HealthCheck
    redis_client: Optional[aioredis.Redis] = None

    async def aclose(self) -> None:
        await self.http_client.aclose()
        if self.redis_client is not None:
            await self.redis_client.aclose()
        logger.info("services_closed")


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: Optional[httpx.AsyncClient] = None,
    token_provider: Optional[AccessTokenProvider] = None,
    redis_client: Optional[aioredis.Redis] = None,
) -> ServiceContainer:
    """
    Build the service graph.

    Any collaborator can be passed in; tests inject a mock-transport HTTP
    client or a fake token provider this way.
    """
    http_client = http_client or httpx.AsyncClient(
        timeout=httpx.Timeout(settings.gateway_timeout_seconds)
    )
    if redis_client is None and settings.redis_url:
        redis_client = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
    if token_provider is None:
        token_provider = DarajaTokenProvider(
            http_client=http_client,
            settings=settings,
            redis_client=redis_client,
        )

    daraja_client = DarajaClient(
        token_provider=token_provider,
        http_client=http_client,
        settings=settings,
    )

    services = ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        http_client=http_client,
        token_provider=token_provider,
        daraja_client=daraja_client,
        initiator=PaymentInitiator(daraja_client),
        reconciler=CallbackReconciler(
            session_factory, legacy_lookup=settings.legacy_correlation_lookup
        ),
        health_check=HealthCheck(
            session_factory=session_factory,
            get_access_token=token_provider.get_access_token,
        ),
        redis_client=redis_client,
    )
    logger.info(
        "services_built",
        redis_cache=redis_client is not None,
        legacy_correlation_lookup=settings.legacy_correlation_lookup,
    )
    return services
