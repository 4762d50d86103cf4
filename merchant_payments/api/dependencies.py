"""FastAPI dependencies: services, merchant identity and admin access."""
import hashlib
import secrets
from typing import Optional

import structlog
from fastapi import Depends, Request, Security
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_payments.api.services import ServiceContainer
from merchant_payments.config import get_settings
from merchant_payments.core.exceptions import AuthenticationError, ForbiddenError
from merchant_payments.database.connection import get_db
from merchant_payments.database.models import Merchant
from merchant_payments.database.repository import MerchantRepository

logger = structlog.get_logger(__name__)

ADMIN_KEY_HEADER = "X-Admin-Key"
API_KEY_PREFIX = "mpk_"
MERCHANT_KEY_HEADER = get_settings().api_key_header

# auto_error is off so a missing key renders as {kind, message} like every
# other authentication failure
merchant_api_key = APIKeyHeader(
    name=MERCHANT_KEY_HEADER,
    scheme_name="MerchantApiKey",
    description="API key issued at merchant registration",
    auto_error=False,
)
admin_api_key = APIKeyHeader(
    name=ADMIN_KEY_HEADER,
    scheme_name="AdminApiKey",
    description="Operator key from ADMIN_API_KEY",
    auto_error=False,
)


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode()).hexdigest()


def generate_api_key() -> str:
    return f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


async def get_current_merchant(
    api_key: Optional[str] = Security(merchant_api_key),
    db: AsyncSession = Depends(get_db),
) -> Merchant:
    """
    Resolve the calling merchant from its API key.

    Raises:
        AuthenticationError: Missing or unknown key
    """
    if not api_key:
        raise AuthenticationError(f"Missing {MERCHANT_KEY_HEADER} header")

    merchant = await MerchantRepository(db).get_by_api_key_hash(hash_api_key(api_key))
    if merchant is None:
        logger.warning("merchant_authentication_failed")
        raise AuthenticationError("Invalid API key")

    structlog.contextvars.bind_contextvars(merchant_id=merchant.id)
    return merchant


async def require_admin(
    request: Request,
    provided: Optional[str] = Security(admin_api_key),
    services: ServiceContainer = Depends(get_services),
) -> None:
    """
    Guard for administrative endpoints.

    Raises:
        ForbiddenError: Admin API disabled (no key configured)
        AuthenticationError: Missing or wrong admin key
    """
    configured = services.settings.admin_api_key
    if not configured:
        raise ForbiddenError("Admin API is disabled")

    if not provided or not secrets.compare_digest(provided, configured):
        logger.warning("admin_authentication_failed", path=request.url.path)
        raise AuthenticationError("Invalid admin key")
