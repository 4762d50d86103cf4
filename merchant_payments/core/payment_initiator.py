"""
STK push payment initiation.

Orchestrates the initiation flow:
1. Validate amount and payer phone
2. Resolve the merchant (or a guest merchant on the QR path)
3. Send the STK push through the Daraja client
4. Create the pending transaction only once the gateway accepted
5. Record the creation event and commit
"""
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_payments.core.exceptions import (
    GatewayRejectedError,
    GatewayUnreachableError,
    InvalidInputError,
    MerchantNotFoundError,
    PaymentError,
    PersistenceError,
)
from merchant_payments.core.status import TransactionStatus
from merchant_payments.core.validation import (
    build_account_reference,
    build_description,
    gateway_amount,
    normalize_phone,
    validate_amount,
)
from merchant_payments.database.models import Merchant, Transaction
from merchant_payments.database.repository import MerchantRepository, TransactionRepository
from merchant_payments.integrations.daraja_client import DarajaClient
from merchant_payments.integrations.errors import DarajaError
from merchant_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MERCHANT_INITIATED = "merchant_initiated"
CUSTOMER_INITIATED = "customer_initiated"
SOURCE_DASHBOARD = "merchant_dashboard"
SOURCE_QR_SCANNER = "qr_scanner"

# QR payloads built without a registered merchant carry these id prefixes
GUEST_ID_PREFIXES = ("qr-", "manual-")


@dataclass
class InitiationResult:
    """Outcome of an accepted STK push."""

    transaction_id: uuid.UUID
    correlation_id: str
    merchant_request_id: Optional[str]
    customer_message: Optional[str]
    is_guest: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": str(self.transaction_id),
            "correlation_id": self.correlation_id,
            "merchant_request_id": self.merchant_request_id,
            "customer_message": self.customer_message,
            "status": TransactionStatus.PENDING.value,
            "is_guest": self.is_guest,
        }


class PaymentInitiator:
    """
    Payment initiation orchestrator.

    Never creates a transaction unless the gateway accepted the push, and
    never retries the push itself.
    """

    def __init__(self, daraja_client: DarajaClient):
        self.daraja_client = daraja_client
        logger.info("payment_initiator_initialized")

    async def initiate(
        self,
        db: AsyncSession,
        payer_phone: Any,
        amount: Any,
        merchant_id: str,
    ) -> InitiationResult:
        """
        Initiate a merchant payment request.

        Args:
            db: Database session
            payer_phone: Payer phone in any common Kenyan format
            amount: Positive amount in shillings
            merchant_id: Registered merchant id

        Returns:
            InitiationResult: Created transaction and correlation id

        Raises:
            InvalidInputError: Amount or phone failed validation
            MerchantNotFoundError: Unknown merchant
            GatewayRejectedError: Gateway declined the push
            GatewayUnreachableError: Gateway could not be reached
            PersistenceError: Gateway accepted but the record could not be saved
        """
        start = time.perf_counter()
        try:
            parsed_amount = validate_amount(amount)
            phone = normalize_phone(payer_phone)

            if not merchant_id:
                raise InvalidInputError("Merchant id is required")
            merchant = await MerchantRepository(db).get(merchant_id)
            if merchant is None:
                raise MerchantNotFoundError(merchant_id)

            result = await self._push_and_record(
                db,
                phone=phone,
                amount=parsed_amount,
                merchant=merchant,
                guest_id=None,
                guest_info=None,
                display_name=merchant.name,
                payment_type=MERCHANT_INITIATED,
                source=SOURCE_DASHBOARD,
            )
        except PaymentError as e:
            self._record_outcome(e, MERCHANT_INITIATED, start)
            raise

        metrics.record_initiation(
            "accepted", MERCHANT_INITIATED, float(parsed_amount), time.perf_counter() - start
        )
        return result

    async def initiate_customer_payment(
        self,
        db: AsyncSession,
        payer_phone: Any,
        amount: Any,
        qr_data: Dict[str, Any],
    ) -> InitiationResult:
        """
        Initiate a payment from a scanned QR payload.

        Unlike the merchant path, an unknown merchant id does not fail: the
        transaction is stored as a guest transaction carrying the QR
        merchant id and business name.
        """
        start = time.perf_counter()
        try:
            parsed_amount = validate_amount(amount)
            phone = normalize_phone(payer_phone)

            qr_merchant_id = str(qr_data.get("merchantId") or "").strip()
            business_name = str(qr_data.get("businessName") or "").strip()

            merchant: Optional[Merchant] = None
            if qr_merchant_id and not qr_merchant_id.startswith(GUEST_ID_PREFIXES):
                merchant = await MerchantRepository(db).get(qr_merchant_id)

            guest_info = None
            if merchant is None:
                guest_info = {
                    "original_merchant_id": qr_merchant_id or None,
                    "business_name": business_name or None,
                    "business_shortcode": qr_data.get("businessShortCode"),
                }
                logger.info(
                    "customer_payment_guest_merchant",
                    qr_merchant_id=qr_merchant_id,
                    business_name=business_name,
                )

            result = await self._push_and_record(
                db,
                phone=phone,
                amount=parsed_amount,
                merchant=merchant,
                guest_id=(qr_merchant_id or None) if merchant is None else None,
                guest_info=guest_info,
                display_name=merchant.name if merchant else business_name,
                payment_type=CUSTOMER_INITIATED,
                source=SOURCE_QR_SCANNER,
            )
        except PaymentError as e:
            self._record_outcome(e, CUSTOMER_INITIATED, start)
            raise

        metrics.record_initiation(
            "accepted", CUSTOMER_INITIATED, float(parsed_amount), time.perf_counter() - start
        )
        return result

    @staticmethod
    def _record_outcome(error: PaymentError, payment_type: str, start: float) -> None:
        outcome = {
            "InvalidInput": "invalid_input",
            "MerchantNotFound": "merchant_not_found",
            "GatewayRejected": "rejected",
            "GatewayUnreachable": "unreachable",
        }.get(error.kind, "error")
        metrics.record_initiation(outcome, payment_type, 0.0, time.perf_counter() - start)

    async def _push_and_record(
        self,
        db: AsyncSession,
        phone: str,
        amount: Decimal,
        merchant: Optional[Merchant],
        guest_id: Optional[str],
        guest_info: Optional[Dict[str, Any]],
        display_name: str,
        payment_type: str,
        source: str,
    ) -> InitiationResult:
        timestamp = self.daraja_client.timestamp()
        account_reference = build_account_reference(display_name, timestamp)
        description = build_description(display_name, timestamp)

        log = logger.bind(
            merchant_id=merchant.id if merchant else None,
            guest_merchant_id=guest_id,
            payment_type=payment_type,
        )
        log.info(
            "payment_initiation_started",
            amount=str(amount),
            account_reference=account_reference,
        )

        try:
            response = await self.daraja_client.stk_push(
                amount=gateway_amount(amount),
                phone_number=phone,
                account_reference=account_reference,
                description=description,
                timestamp=timestamp,
            )
        except DarajaError as e:
            log.warning(
                "payment_initiation_gateway_failed",
                error_type=e.error_type.value,
                status_code=e.status_code,
                error=e.message,
            )
            if e.is_rejection:
                raise GatewayRejectedError(e.message, status_code=e.status_code)
            raise GatewayUnreachableError(
                "Payment gateway is unavailable, please try again", cause=e.message
            )

        checkout_request_id = response.get("CheckoutRequestID")
        if not checkout_request_id:
            log.error("stk_push_missing_checkout_request_id", response=response)
            raise GatewayRejectedError("Gateway accepted the request without a CheckoutRequestID")

        transaction = Transaction(
            id=uuid.uuid4(),
            merchant_id=merchant.id if merchant else None,
            guest_merchant_id=guest_id,
            guest_merchant_info=guest_info,
            checkout_request_id=checkout_request_id,
            merchant_request_id=response.get("MerchantRequestID"),
            amount=amount,
            phone_number=phone,
            status=TransactionStatus.PENDING.value,
            account_reference=account_reference,
            description=description,
            payment_type=payment_type,
            source=source,
            gateway_response=response,
        )

        repository = TransactionRepository(db)
        try:
            await repository.add(transaction)
            await repository.record_event(
                transaction.id,
                "transaction.created",
                {
                    "amount": str(amount),
                    "checkout_request_id": checkout_request_id,
                    "payment_type": payment_type,
                    "status": TransactionStatus.PENDING.value,
                },
            )
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            # The payer has been prompted; the callback will land as an orphan
            log.critical(
                "transaction_persist_failed_after_gateway_accept",
                checkout_request_id=checkout_request_id,
                error=str(e),
            )
            raise PersistenceError("Payment was requested but could not be recorded")

        log.info(
            "payment_initiation_accepted",
            transaction_id=str(transaction.id),
            checkout_request_id=checkout_request_id,
        )

        return InitiationResult(
            transaction_id=transaction.id,
            correlation_id=checkout_request_id,
            merchant_request_id=response.get("MerchantRequestID"),
            customer_message=response.get("CustomerMessage"),
            is_guest=merchant is None,
        )
