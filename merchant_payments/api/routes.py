"""
API routes for payment requests, callbacks and merchant reporting.
"""
import json
import uuid
from datetime import date
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_payments.core.analytics import compute_analytics, qr_insights, resolve_period
from merchant_payments.core.exceptions import GatewayUnreachableError, InvalidInputError
from merchant_payments.core.qr_links import build_qr_payment_link
from merchant_payments.core.reconciliation import ACKNOWLEDGEMENT
from merchant_payments.core.transactions import (
    TransactionService,
    serialize_status,
    serialize_transaction,
)
from merchant_payments.database.connection import get_db
from merchant_payments.database.models import Merchant
from merchant_payments.database.repository import MerchantRepository
from merchant_payments.integrations.errors import DarajaError

from .dependencies import (
    generate_api_key,
    get_current_merchant,
    get_services,
    hash_api_key,
    require_admin,
)
from .schemas import (
    BackfillResponse,
    CallbackAcknowledgement,
    CustomerPaymentRequest,
    GenerateQRRequest,
    HealthCheckResponse,
    InitiationResponse,
    MerchantRegistrationRequest,
    MerchantRegistrationResponse,
    MerchantResponse,
    PaymentRequest,
    QRLinkResponse,
    StatusUpdateRequest,
    StkPushRequest,
    TokenCheckResponse,
    TransactionListResponse,
    TransactionResponse,
    TransactionStatusResponse,
)
from .services import ServiceContainer

logger = structlog.get_logger(__name__)

# Create routers
daraja_router = APIRouter(prefix="/daraja", tags=["daraja"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
transaction_router = APIRouter(prefix="/transactions", tags=["transactions"])
merchant_router = APIRouter(prefix="/merchants", tags=["merchants"])
admin_router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])
monitoring_router = APIRouter(tags=["monitoring"])


def _merchant_view(merchant: Merchant) -> Dict[str, Any]:
    return {
        "id": merchant.id,
        "name": merchant.name,
        "email": merchant.email,
        "phone": merchant.phone,
        "shortcode": merchant.shortcode,
        "account_type": merchant.account_type,
        "status": merchant.status,
    }


@daraja_router.post(
    "/stk-push",
    response_model=InitiationResponse,
    summary="Request a payment",
    description="Send an STK push prompt to a payer on behalf of the calling merchant",
)
async def stk_push(
    request: StkPushRequest,
    merchant: Merchant = Depends(get_current_merchant),
    services: ServiceContainer = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Initiate a merchant payment request."""
    result = await services.initiator.initiate(
        db,
        payer_phone=request.phone_number,
        amount=request.amount,
        merchant_id=merchant.id,
    )
    return result.to_dict()


@daraja_router.post(
    "/customer-payment",
    response_model=InitiationResponse,
    summary="Pay from a scanned QR code",
    description="Public endpoint; unknown merchants are recorded as guest transactions",
)
async def customer_payment(
    request: CustomerPaymentRequest,
    services: ServiceContainer = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Initiate a customer payment from a QR payload."""
    result = await services.initiator.initiate_customer_payment(
        db,
        payer_phone=request.phone_number,
        amount=request.amount,
        qr_data=request.qr_data,
    )
    return result.to_dict()


@daraja_router.post(
    "/stk-callback",
    response_model=CallbackAcknowledgement,
    summary="STK push callback",
    description="Gateway webhook; always acknowledged with ResultCode 0",
)
async def stk_callback(
    request: Request,
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """
    Receive an STK push result.

    The body is parsed by hand so that invalid JSON is acknowledged like
    any other malformed callback instead of failing request validation.
    """
    body = await request.body()
    try:
        payload: Any = json.loads(body) if body else None
    except ValueError:
        logger.warning("callback_body_not_json", size=len(body))
        payload = None

    try:
        return await services.reconciler.handle(payload)
    except Exception as e:
        logger.exception("callback_handler_failed", error=str(e))
        return dict(ACKNOWLEDGEMENT)


@daraja_router.post(
    "/generate-qr",
    response_model=QRLinkResponse,
    summary="Generate a QR payment link",
)
async def generate_qr(
    request: GenerateQRRequest,
    merchant: Merchant = Depends(get_current_merchant),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Build the payment URL a merchant's QR code encodes."""
    link = build_qr_payment_link(
        merchant,
        frontend_url=services.settings.frontend_url,
        shortcode=services.settings.mpesa_shortcode,
        description=request.description,
        reference=request.reference,
        business_name=request.business_name,
        dynamic_amount=request.dynamic_amount,
    )
    logger.info("qr_link_generated", merchant_id=merchant.id, dynamic_amount=request.dynamic_amount)
    return link


@daraja_router.get(
    "/test-token",
    response_model=TokenCheckResponse,
    summary="Check gateway connectivity",
    dependencies=[Depends(require_admin)],
)
async def test_token(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Acquire an access token and report a redacted preview."""
    try:
        token = await services.token_provider.get_access_token()
    except DarajaError as e:
        raise GatewayUnreachableError("Daraja API connection failed", cause=e.message)
    return {
        "success": True,
        "message": "Daraja API connection successful",
        "token_preview": f"{token[:10]}...",
        "base_url": services.settings.mpesa_base_url,
        "environment": services.settings.mpesa_environment,
    }


@payment_router.post(
    "",
    response_model=InitiationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a payment for a merchant",
    dependencies=[Depends(require_admin)],
)
async def create_payment(
    request: PaymentRequest,
    services: ServiceContainer = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Initiate a payment request with an explicit merchant id."""
    result = await services.initiator.initiate(
        db,
        payer_phone=request.phone_number,
        amount=request.amount,
        merchant_id=request.merchant_id,
    )
    return result.to_dict()


@payment_router.get(
    "/status/{correlation_id}",
    response_model=TransactionStatusResponse,
    summary="Poll payment status",
    description="Look up a transaction by its gateway correlation id",
)
async def payment_status(
    correlation_id: str,
    services: ServiceContainer = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Get the current status for a CheckoutRequestID."""
    service = TransactionService(db, legacy_lookup=services.settings.legacy_correlation_lookup)
    transaction = await service.find_by_correlation_id(correlation_id)
    return serialize_status(transaction)


@transaction_router.get(
    "",
    response_model=TransactionListResponse,
    summary="List transactions",
)
async def list_transactions(
    period: str = Query("all", description="today, week, month, year, all or custom"),
    status_filter: Optional[str] = Query(None, alias="status"),
    source: Optional[str] = Query(None, description="merchant_dashboard or qr_scanner"),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    include_guest: bool = Query(True),
    limit: int = Query(100, ge=1, le=1000),
    merchant: Merchant = Depends(get_current_merchant),
    services: ServiceContainer = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """List the calling merchant's transactions, newest first."""
    tz = ZoneInfo(services.settings.mpesa_timezone)
    start, end = resolve_period(period, tz, start_date, end_date)
    transactions = await TransactionService(db).list_for_merchant(
        merchant.id,
        start=start,
        end=end,
        status=status_filter,
        source=source,
        include_guest=include_guest,
        limit=limit,
    )
    return {
        "transactions": [serialize_transaction(t) for t in transactions],
        "total": len(transactions),
        "filters": {
            "period": period,
            "status": status_filter,
            "source": source,
            "include_guest": include_guest,
        },
    }


@transaction_router.get(
    "/analytics",
    summary="Transaction analytics",
    description="Totals, daily summaries and a next-day revenue forecast",
)
async def transaction_analytics(
    period: str = Query("week", description="today, week, month, year, all or custom"),
    status_filter: Optional[str] = Query(None, alias="status"),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    merchant: Merchant = Depends(get_current_merchant),
    services: ServiceContainer = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Analytics over the calling merchant's transactions."""
    tz = ZoneInfo(services.settings.mpesa_timezone)
    start, end = resolve_period(period, tz, start_date, end_date)
    transactions = await TransactionService(db).list_for_merchant(
        merchant.id, start=start, end=end, status=status_filter
    )
    analytics = compute_analytics(transactions, period, tz, start=start, end=end)
    logger.info(
        "analytics_computed",
        period=period,
        total=analytics["summary"]["totalTransactions"],
    )
    return {"status": "success", "analytics": analytics}


@transaction_router.get(
    "/qr-insights",
    summary="QR payment insights",
    description="QR adoption, QR versus dashboard success rates and recommendations",
)
async def transaction_qr_insights(
    period: str = Query("week", description="today, week, month, year, all or custom"),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    merchant: Merchant = Depends(get_current_merchant),
    services: ServiceContainer = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    tz = ZoneInfo(services.settings.mpesa_timezone)
    start, end = resolve_period(period, tz, start_date, end_date)
    transactions = await TransactionService(db).list_for_merchant(
        merchant.id, start=start, end=end
    )
    return {"status": "success", "insights": qr_insights(transactions, period)}


@transaction_router.get(
    "/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get a transaction",
)
async def get_transaction(
    transaction_id: str,
    merchant: Merchant = Depends(get_current_merchant),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    transaction = await TransactionService(db).get_for_merchant(transaction_id, merchant.id)
    return serialize_transaction(transaction)


@transaction_router.patch(
    "/{transaction_id}/status",
    response_model=TransactionResponse,
    summary="Manually override a transaction status",
)
async def update_transaction_status(
    transaction_id: str,
    request: StatusUpdateRequest,
    merchant: Merchant = Depends(get_current_merchant),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Merchant status change: settle a pending payment or flag one as `error`."""
    transaction = await TransactionService(db).override_status(
        transaction_id, merchant.id, request.status, request.reason
    )
    return serialize_transaction(transaction)


@merchant_router.post(
    "",
    response_model=MerchantRegistrationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a merchant",
    dependencies=[Depends(require_admin)],
)
async def register_merchant(
    request: MerchantRegistrationRequest,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Create a merchant profile and issue its API key."""
    api_key = generate_api_key()
    repository = MerchantRepository(db)
    merchant_id = request.id or uuid.uuid4().hex

    if await repository.get(merchant_id) is not None:
        raise InvalidInputError(f"Merchant {merchant_id} already exists")

    try:
        merchant = await repository.create(
            id=merchant_id,
            name=request.name,
            email=request.email,
            phone=request.phone,
            shortcode=request.shortcode,
            account_type=request.account_type,
            status="active",
            api_key_hash=hash_api_key(api_key),
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise InvalidInputError(f"Merchant {merchant_id} already exists")

    logger.info("merchant_registered", merchant_id=merchant.id, account_type=merchant.account_type)
    return {**_merchant_view(merchant), "api_key": api_key}


@merchant_router.get(
    "/me",
    response_model=MerchantResponse,
    summary="Current merchant profile",
)
async def current_merchant(merchant: Merchant = Depends(get_current_merchant)) -> Dict[str, Any]:
    return _merchant_view(merchant)


@admin_router.post(
    "/backfill-correlation-ids",
    response_model=BackfillResponse,
    summary="Backfill canonical correlation ids",
    description="Copy CheckoutRequestID from stored gateway responses into the indexed column",
)
async def backfill_correlation_ids(db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    updated = await TransactionService(db).backfill_correlation_ids()
    return {"updated": updated}


@admin_router.patch(
    "/transactions/{transaction_id}/status",
    response_model=TransactionResponse,
    summary="Override any transaction status",
    description="Unrestricted status change, including reopening a transaction as pending",
)
async def admin_update_transaction_status(
    transaction_id: str,
    request: StatusUpdateRequest,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    transaction = await TransactionService(db).override_status(
        transaction_id, None, request.status, request.reason
    )
    return serialize_transaction(transaction)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check database and gateway reachability",
)
async def health(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await services.health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    return await services.health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(services: ServiceContainer = Depends(get_services)) -> Any:
    result = await services.health_check.readiness()
    if result["status"] != "ready":
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
