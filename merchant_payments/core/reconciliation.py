"""
Callback reconciliation for STK push results.

Applies gateway callbacks to pending transactions exactly once:
- Malformed envelopes are acknowledged and dropped
- Unknown correlation ids are captured as orphan callbacks
- The terminal transition is a conditional update guarded by
  `status = 'pending'`, so redeliveries and concurrent duplicates are no-ops
- A later callback contradicting a stored terminal status is logged as a
  conflict and never overwrites it
"""
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from merchant_payments.core.status import TransactionStatus
from merchant_payments.database.repository import (
    OrphanCallbackRepository,
    TransactionRepository,
)
from merchant_payments.integrations.callbacks import (
    MalformedCallbackError,
    StkCallback,
    parse_stk_callback,
)
from merchant_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ACKNOWLEDGEMENT = {"ResultCode": 0, "ResultDesc": "Callback received successfully"}


class ReconciliationOutcome(str, Enum):
    """What a single callback delivery did."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"
    ORPHANED = "orphaned"
    MALFORMED = "malformed"
    ERROR = "error"


class CallbackReconciler:
    """
    Reconciles gateway callbacks against stored transactions.

    Owns its sessions so that no failure, including a failed commit, can
    change the acknowledgement sent back to the gateway.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        legacy_lookup: bool = True,
    ):
        self.session_factory = session_factory
        self.legacy_lookup = legacy_lookup

    async def handle(self, payload: Any) -> Dict[str, Any]:
        """
        Process a callback body and return the acknowledgement.

        Always returns `{"ResultCode": 0, ...}`; every failure is logged
        and counted instead of raised.
        """
        await self.reconcile(payload)
        return dict(ACKNOWLEDGEMENT)

    async def reconcile(self, payload: Any) -> ReconciliationOutcome:
        start = time.perf_counter()
        try:
            outcome = await self._reconcile(payload)
        except Exception as e:
            logger.exception("callback_processing_failed", error=str(e))
            outcome = ReconciliationOutcome.ERROR
        metrics.record_callback(outcome.value, time.perf_counter() - start)
        return outcome

    async def _reconcile(self, payload: Any) -> ReconciliationOutcome:
        try:
            callback = parse_stk_callback(payload)
        except MalformedCallbackError as e:
            logger.warning(
                "callback_malformed",
                reason=str(e),
                checkout_request_id=e.checkout_request_id,
            )
            return ReconciliationOutcome.MALFORMED

        log = logger.bind(
            checkout_request_id=callback.checkout_request_id,
            result_code=callback.result_code,
        )
        log.info("callback_received", status=callback.status.value)

        async with self.session_factory() as session:
            repository = TransactionRepository(session, legacy_lookup=self.legacy_lookup)
            transaction = await repository.find_by_correlation_id(callback.checkout_request_id)
            if transaction is None:
                # Release the read before the orphan write gets its own session
                await session.rollback()
            else:
                transaction_id = transaction.id
                outcome = await self._apply(session, repository, transaction_id, callback, log)
                await session.commit()
                return outcome

        await self._record_orphan(callback, payload, log)
        return ReconciliationOutcome.ORPHANED

    async def _apply(
        self,
        session: AsyncSession,
        repository: TransactionRepository,
        transaction_id: Any,
        callback: StkCallback,
        log: Any,
    ) -> ReconciliationOutcome:
        new_status = callback.status
        now = datetime.now(timezone.utc)

        values: Dict[str, Any] = {
            "status": new_status.value,
            "result_code": callback.result_code,
            "result_desc": callback.result_desc,
            "raw_gateway_result": callback.raw,
            "callback_received_at": now,
            "updated_at": now,
        }
        if callback.amount is not None:
            values["amount"] = callback.amount
        if callback.phone_number:
            values["phone_number"] = callback.phone_number
        if callback.transaction_date:
            values["transaction_date"] = callback.transaction_date
        if new_status == TransactionStatus.SUCCESS and callback.receipt_number:
            values["receipt_number"] = callback.receipt_number

        if await repository.transition_from_pending(transaction_id, values):
            await repository.record_event(
                transaction_id,
                "transaction.reconciled",
                {
                    "from_status": TransactionStatus.PENDING.value,
                    "to_status": new_status.value,
                    "result_code": callback.result_code,
                    "receipt_number": values.get("receipt_number"),
                },
            )
            log.info(
                "transaction_reconciled",
                transaction_id=str(transaction_id),
                status=new_status.value,
                receipt_number=values.get("receipt_number"),
            )
            return ReconciliationOutcome.APPLIED

        stored_status = await repository.current_status(transaction_id)
        await repository.touch(transaction_id)

        if stored_status == new_status.value:
            await repository.record_event(
                transaction_id,
                "callback.redelivered",
                {"status": stored_status, "result_code": callback.result_code},
            )
            log.info(
                "callback_redelivered",
                transaction_id=str(transaction_id),
                status=stored_status,
            )
            return ReconciliationOutcome.DUPLICATE

        await repository.record_event(
            transaction_id,
            "callback.conflict",
            {
                "stored_status": stored_status,
                "callback_status": new_status.value,
                "result_code": callback.result_code,
                "result_desc": callback.result_desc,
            },
        )
        log.warning(
            "callback_conflicts_with_stored_status",
            transaction_id=str(transaction_id),
            stored_status=stored_status,
            callback_status=new_status.value,
        )
        return ReconciliationOutcome.CONFLICT

    async def _record_orphan(
        self, callback: StkCallback, payload: Dict[str, Any], log: Any
    ) -> Optional[str]:
        log.warning("callback_orphaned")
        try:
            async with self.session_factory() as session:
                orphan = await OrphanCallbackRepository(session).add(
                    checkout_request_id=callback.checkout_request_id,
                    payload=payload,
                )
                await session.commit()
                return str(orphan.id)
        except Exception as e:
            # Gateway still gets its acknowledgement
            log.error("orphan_callback_persist_failed", error=str(e))
            return None
