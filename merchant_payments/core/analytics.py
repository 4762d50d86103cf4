"""
Merchant transaction analytics.

Summaries are computed over the transactions of a reporting period:
1. Period resolution (today, week, month, year, all, custom)
2. Totals, revenue and success rate
3. Per-day summaries in the gateway's local timezone
4. QR versus dashboard payment comparison
5. Next-day revenue forecast from a least-squares line through the daily
   revenue series (zero-filled, at most one year of points)
"""
from collections import OrderedDict
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

import numpy as np

from merchant_payments.core.exceptions import InvalidInputError
from merchant_payments.core.status import TransactionStatus
from merchant_payments.core.transactions import as_utc, serialize_transaction
from merchant_payments.database.models import Transaction

PERIOD_DAYS = {"week": 7, "month": 30, "year": 365}
PERIODS = ("today", "week", "month", "year", "all", "custom")
FORECAST_MAX_POINTS = 365
QR_SOURCE = "qr_scanner"
# QR share below which merchants are nudged to display their code
QR_PROMOTION_THRESHOLD = 0.2
FAILED_STATUSES = (
    TransactionStatus.FAILED.value,
    TransactionStatus.CANCELLED.value,
    TransactionStatus.ERROR.value,
)


def resolve_period(
    period: str,
    tz: ZoneInfo,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    now: Optional[datetime] = None,
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """
    Turn a period name into a UTC `(start, end)` window.

    `None` on either side means unbounded. Day boundaries follow `tz`.

    Raises:
        InvalidInputError: Unknown period, or custom without both dates
    """
    now = now or datetime.now(timezone.utc)
    local_now = now.astimezone(tz)

    if period == "all":
        return None, None
    if period == "today":
        start = datetime.combine(local_now.date(), time.min, tzinfo=tz)
        return start.astimezone(timezone.utc), (start + timedelta(days=1)).astimezone(timezone.utc)
    if period in PERIOD_DAYS:
        return now - timedelta(days=PERIOD_DAYS[period]), None
    if period == "custom":
        if start_date is None or end_date is None:
            raise InvalidInputError("Custom period requires start_date and end_date")
        if end_date < start_date:
            raise InvalidInputError("end_date must not be before start_date")
        start = datetime.combine(start_date, time.min, tzinfo=tz)
        end = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=tz)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)
    raise InvalidInputError(f"Invalid period. Must be one of: {list(PERIODS)}")


def _local_day(value: datetime, tz: ZoneInfo) -> date:
    return as_utc(value).astimezone(tz).date()


def _amount(transaction: Transaction) -> float:
    return float(transaction.amount or 0)


def _is_qr(transaction: Transaction) -> bool:
    return transaction.source == QR_SOURCE


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def _successful(transactions: Iterable[Transaction]) -> List[Transaction]:
    return [t for t in transactions if t.status == TransactionStatus.SUCCESS.value]


def daily_summaries(transactions: Iterable[Transaction], tz: ZoneInfo) -> List[Dict[str, Any]]:
    """Per-day counts and revenue, newest day first."""
    days: Dict[date, Dict[str, Any]] = {}
    for transaction in transactions:
        day = _local_day(transaction.created_at, tz)
        summary = days.setdefault(
            day,
            {
                "date": day.isoformat(),
                "totalTransactions": 0,
                "successful": 0,
                "pending": 0,
                "failed": 0,
                "totalRevenue": 0.0,
                "qrTransactions": 0,
                "qrRevenue": 0.0,
            },
        )
        summary["totalTransactions"] += 1
        if _is_qr(transaction):
            summary["qrTransactions"] += 1
        if transaction.status == TransactionStatus.SUCCESS.value:
            summary["successful"] += 1
            summary["totalRevenue"] += _amount(transaction)
            if _is_qr(transaction):
                summary["qrRevenue"] += _amount(transaction)
        elif transaction.status == TransactionStatus.PENDING.value:
            summary["pending"] += 1
        elif transaction.status in FAILED_STATUSES:
            summary["failed"] += 1

    return [days[day] for day in sorted(days, reverse=True)]


def daily_revenue_series(
    transactions: Iterable[Transaction], tz: ZoneInfo, until: date
) -> np.ndarray:
    """
    Successful revenue per day, zero-filled up to `until`.

    Starts at the first day with a successful payment and keeps at most
    the last `FORECAST_MAX_POINTS` days.
    """
    revenue: "OrderedDict[date, float]" = OrderedDict()
    for transaction in transactions:
        if transaction.status != TransactionStatus.SUCCESS.value:
            continue
        day = _local_day(transaction.created_at, tz)
        revenue[day] = revenue.get(day, 0.0) + _amount(transaction)

    if not revenue:
        return np.zeros(0)

    first = max(min(revenue), until - timedelta(days=FORECAST_MAX_POINTS - 1))
    last = max(until, max(revenue))
    length = (last - first).days + 1
    series = np.zeros(length)
    for day, value in revenue.items():
        offset = (day - first).days
        if 0 <= offset < length:
            series[offset] = value
    return series[-FORECAST_MAX_POINTS:]


def forecast_next_day(series: np.ndarray) -> Dict[str, Any]:
    """
    Least-squares linear forecast for the day after the series ends.

    With fewer than two points the last observed value (or 0) is used.
    Forecasts never go below zero.
    """
    points = int(series.size)
    if points == 0:
        return {"nextDayRevenue": 0.0, "trend": "flat", "slope": 0.0, "dataPoints": 0}
    if points == 1:
        return {
            "nextDayRevenue": round(float(series[0]), 2),
            "trend": "flat",
            "slope": 0.0,
            "dataPoints": 1,
        }

    x = np.arange(points, dtype=float)
    slope, intercept = np.polyfit(x, series, 1)
    predicted = max(float(slope * points + intercept), 0.0)

    if abs(slope) < 1e-9:
        trend = "flat"
    else:
        trend = "up" if slope > 0 else "down"

    return {
        "nextDayRevenue": round(predicted, 2),
        "trend": trend,
        "slope": round(float(slope), 4),
        "dataPoints": points,
    }


def qr_analytics(transactions: List[Transaction]) -> Dict[str, Any]:
    """QR-scanner payments against dashboard-initiated ones."""
    qr = [t for t in transactions if _is_qr(t)]
    non_qr = [t for t in transactions if not _is_qr(t)]
    qr_successful = _successful(qr)
    non_qr_successful = _successful(non_qr)
    qr_revenue = sum(_amount(t) for t in qr_successful)

    return {
        "totalQRTransactions": len(qr),
        "nonQrTransactions": len(non_qr),
        "qrRevenue": round(qr_revenue, 2),
        "nonQrRevenue": round(sum(_amount(t) for t in non_qr_successful), 2),
        "qrAdoptionRate": _rate(len(qr), len(transactions)),
        "qrSuccessRate": _rate(len(qr_successful), len(qr)),
        "nonQrSuccessRate": _rate(len(non_qr_successful), len(non_qr)),
        "averageQRTransaction": round(qr_revenue / len(qr_successful), 2) if qr_successful else 0.0,
        "qrPaymentMethods": {
            "customerScanned": len(qr),
            "guestMerchant": sum(1 for t in qr if t.is_guest),
        },
    }


def qr_insights(transactions: List[Transaction], period: str) -> Dict[str, Any]:
    """
    QR adoption report with recommendations.

    A merchant with no QR payments is told to create a code; one whose QR
    share is under `QR_PROMOTION_THRESHOLD` is told to display it more.
    """
    stats = qr_analytics(transactions)
    qr_count = stats["totalQRTransactions"]
    qr_attempted = sum(_amount(t) for t in transactions if _is_qr(t))

    recommendations: List[Dict[str, str]] = []
    if qr_count == 0:
        recommendations.append(
            {
                "type": "adoption",
                "message": "Create a QR code for your business to enable quick customer payments",
                "priority": "high",
            }
        )
    elif qr_count < len(transactions) * QR_PROMOTION_THRESHOLD:
        recommendations.append(
            {
                "type": "promotion",
                "message": "QR adoption is low. Display your QR code prominently at checkout",
                "priority": "medium",
            }
        )

    return {
        "period": period,
        "totalTransactions": len(transactions),
        "qrTransactions": {
            "count": qr_count,
            "percentage": stats["qrAdoptionRate"],
            "revenue": stats["qrRevenue"],
            "averageAmount": round(qr_attempted / qr_count, 2) if qr_count else 0.0,
            "successRate": stats["qrSuccessRate"],
        },
        "comparison": {
            "nonQrTransactions": stats["nonQrTransactions"],
            "qrVsNonQrSuccessRate": {
                "qr": stats["qrSuccessRate"],
                "nonQr": stats["nonQrSuccessRate"],
            },
        },
        "recommendations": recommendations,
    }


def compute_analytics(
    transactions: List[Transaction],
    period: str,
    tz: ZoneInfo,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    now: Optional[datetime] = None,
    recent_limit: int = 50,
) -> Dict[str, Any]:
    """
    Build the analytics report for a merchant's transactions.

    Keys are camelCase to match what the merchant dashboard consumes.
    """
    now = now or datetime.now(timezone.utc)

    total = len(transactions)
    successful = _successful(transactions)
    pending = [t for t in transactions if t.status == TransactionStatus.PENDING.value]
    failed = [t for t in transactions if t.status in FAILED_STATUSES]

    total_revenue = sum(_amount(t) for t in successful)
    average = total_revenue / len(successful) if successful else 0.0
    success_rate = _rate(len(successful), total)

    series = daily_revenue_series(transactions, tz, until=now.astimezone(tz).date())

    return {
        "period": period,
        "dateRange": {
            "start": start.isoformat() if start else None,
            "end": (end or now).isoformat(),
        },
        "summary": {
            "totalTransactions": total,
            "successfulTransactions": len(successful),
            "pendingTransactions": len(pending),
            "failedTransactions": len(failed),
            "totalRevenue": round(total_revenue, 2),
            "averageTransaction": round(average, 2),
            "successRate": success_rate,
            "transactionBreakdown": {
                "realMerchantTransactions": sum(1 for t in transactions if not t.is_guest),
                "guestTransactions": sum(1 for t in transactions if t.is_guest),
                "customerInitiated": sum(
                    1 for t in transactions if t.payment_type == "customer_initiated"
                ),
                "merchantInitiated": sum(
                    1 for t in transactions if t.payment_type == "merchant_initiated"
                ),
            },
        },
        "qrAnalytics": qr_analytics(transactions),
        "dailySummaries": daily_summaries(transactions, tz),
        "insights": {"prediction": forecast_next_day(series)},
        "transactions": [serialize_transaction(t) for t in transactions[:recent_limit]],
    }
