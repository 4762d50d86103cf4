"""
Race condition tests for concurrent callback delivery.

The gateway retries callbacks it considers unacknowledged, so the same
result can arrive several times at once. Exactly one delivery may win.
"""
import asyncio
from typing import Any

import pytest

from merchant_payments.core.reconciliation import CallbackReconciler, ReconciliationOutcome
from merchant_payments.database.repository import TransactionRepository


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_duplicate_callbacks_apply_once(
        self, reconciler: CallbackReconciler, make_transaction: Any,
        load_transaction: Any, session_factory: Any, stk_callback: Any,
    ) -> None:
        """
        Ten simultaneous deliveries of the same callback.

        Should transition the transaction exactly once.
        """
        transaction_id = await make_transaction(checkout_request_id="ws_race")
        callback = stk_callback("ws_race", receipt="RACE123")

        outcomes = await asyncio.gather(*(reconciler.reconcile(callback) for _ in range(10)))

        assert outcomes.count(ReconciliationOutcome.APPLIED) == 1
        assert outcomes.count(ReconciliationOutcome.DUPLICATE) == 9

        transaction = await load_transaction(transaction_id)
        assert transaction.status == "success"
        assert transaction.receipt_number == "RACE123"

        async with session_factory() as session:
            events = await TransactionRepository(session).events_for(transaction_id)
        event_types = [e.event_type for e in events]
        assert event_types.count("transaction.reconciled") == 1
        assert event_types.count("callback.redelivered") == 9

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_contradicting_callbacks(
        self, reconciler: CallbackReconciler, make_transaction: Any,
        load_transaction: Any, stk_callback: Any,
    ) -> None:
        """
        A success and a cancellation racing for the same transaction.

        Whichever lands first wins; the other is recorded as a conflict.
        """
        transaction_id = await make_transaction(checkout_request_id="ws_race")

        success, cancelled = await asyncio.gather(
            reconciler.reconcile(stk_callback("ws_race", result_code=0, receipt="R1")),
            reconciler.reconcile(stk_callback("ws_race", result_code=1032, receipt=None)),
        )

        assert sorted([success, cancelled], key=lambda o: o.value) == [
            ReconciliationOutcome.APPLIED,
            ReconciliationOutcome.CONFLICT,
        ]
        transaction = await load_transaction(transaction_id)
        expected = "success" if success == ReconciliationOutcome.APPLIED else "cancelled"
        assert transaction.status == expected
        if expected == "cancelled":
            assert transaction.receipt_number is None

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_callbacks_for_different_transactions(
        self, reconciler: CallbackReconciler, make_transaction: Any,
        load_transaction: Any, stk_callback: Any,
    ) -> None:
        """Independent transactions all reconcile."""
        ids = {}
        for i in range(5):
            ids[f"ws_{i}"] = await make_transaction(checkout_request_id=f"ws_{i}")

        outcomes = await asyncio.gather(
            *(reconciler.reconcile(stk_callback(cid, receipt=f"R{cid}")) for cid in ids)
        )

        assert outcomes == [ReconciliationOutcome.APPLIED] * 5
        for cid, transaction_id in ids.items():
            transaction = await load_transaction(transaction_id)
            assert transaction.status == "success"
            assert transaction.receipt_number == f"R{cid}"

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_orphans_each_recorded(
        self, reconciler: CallbackReconciler, stk_callback: Any, session_factory: Any
    ) -> None:
        """Unknown ids never create transactions, each delivery is kept for inspection."""
        from merchant_payments.database.repository import OrphanCallbackRepository

        outcomes = await asyncio.gather(
            *(reconciler.reconcile(stk_callback("ghost")) for _ in range(3))
        )

        assert outcomes == [ReconciliationOutcome.ORPHANED] * 3
        async with session_factory() as session:
            assert await OrphanCallbackRepository(session).count_for("ghost") == 3
