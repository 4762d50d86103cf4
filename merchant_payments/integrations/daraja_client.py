"""
Safaricom Daraja API client with circuit breaking and error classification.

Implements:
- Lipa na M-Pesa Online (STK push) requests
- Password/timestamp generation in the gateway's timezone
- Circuit breaker over transport failures
- Classification into rejections and unreachable gateway
"""
import base64
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional
from zoneinfo import ZoneInfo

import httpx
import structlog

from merchant_payments.config import Settings, get_settings
from merchant_payments.integrations.errors import DarajaError, DarajaErrorType
from merchant_payments.integrations.token_provider import AccessTokenProvider
from merchant_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
SUCCESS_RESPONSE_CODE = "0"


class CircuitBreaker:
    """
    Circuit breaker for Daraja API calls.

    Only transport-level failures (timeouts, connection errors, 5xx, token
    failures) count against the gateway. A rejection means the gateway is
    up and answering.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Await `func` with circuit breaker protection.

        Raises:
            DarajaError: CIRCUIT_OPEN if the circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                metrics.record_daraja_error(DarajaErrorType.CIRCUIT_OPEN.value)
                raise DarajaError(
                    "Circuit breaker is open",
                    DarajaErrorType.CIRCUIT_OPEN,
                )

        try:
            result = await func(*args, **kwargs)
        except DarajaError as e:
            if e.is_rejection:
                self.on_success()
            else:
                self.on_failure()
            raise
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class DarajaClient:
    """
    Wrapper for the Daraja STK push API.

    The push itself is never retried: a retried push could prompt the payer
    twice. Token acquisition has its own retry policy.
    """

    def __init__(
        self,
        token_provider: AccessTokenProvider,
        http_client: httpx.AsyncClient,
        settings: Optional[Settings] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.token_provider = token_provider
        self.http_client = http_client
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.timezone = ZoneInfo(self.settings.mpesa_timezone)

        logger.info(
            "daraja_client_initialized",
            base_url=self.settings.mpesa_base_url,
            environment=self.settings.mpesa_environment,
        )

    def timestamp(self, now: Optional[datetime] = None) -> str:
        """Current time as YYYYMMDDHHMMSS in the gateway's timezone."""
        moment = now.astimezone(self.timezone) if now else datetime.now(self.timezone)
        return moment.strftime("%Y%m%d%H%M%S")

    def password(self, timestamp: str) -> str:
        """base64(shortcode + passkey + timestamp)."""
        raw = f"{self.settings.mpesa_shortcode}{self.settings.mpesa_passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    def build_stk_payload(
        self,
        amount: int,
        phone_number: str,
        account_reference: str,
        description: str,
        timestamp: str,
    ) -> Dict[str, Any]:
        shortcode = self.settings.mpesa_shortcode
        return {
            "BusinessShortCode": shortcode,
            "Password": self.password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.settings.mpesa_transaction_type,
            "Amount": amount,
            "PartyA": phone_number,
            "PartyB": shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": self.settings.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }

    async def stk_push(
        self,
        amount: int,
        phone_number: str,
        account_reference: str,
        description: str,
        timestamp: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Send an STK push prompt to the payer's phone.

        Args:
            amount: Whole shillings
            phone_number: Normalized 254XXXXXXXXX number
            account_reference: Reference shown to the payer (12 chars max)
            description: Transaction description (13 chars max)
            timestamp: Gateway timestamp; generated when omitted

        Returns:
            Dict[str, Any]: Gateway response with ResponseCode "0"

        Raises:
            DarajaError: REJECTED, UNREACHABLE or CIRCUIT_OPEN
        """
        timestamp = timestamp or self.timestamp()
        payload = self.build_stk_payload(
            amount, phone_number, account_reference, description, timestamp
        )

        logger.info(
            "stk_push_requested",
            amount=amount,
            account_reference=account_reference,
            timestamp=timestamp,
        )

        return await self.circuit_breaker.call(self._send_stk_push, payload)

    async def _send_stk_push(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        token = await self.token_provider.get_access_token()

        start = time.perf_counter()
        try:
            response = await self.http_client.post(
                f"{self.settings.mpesa_base_url}{STK_PUSH_PATH}",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.settings.gateway_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            metrics.record_daraja_call("stk_push", "timeout", time.perf_counter() - start)
            metrics.record_daraja_error(DarajaErrorType.UNREACHABLE.value)
            logger.error("stk_push_timeout", error=str(e))
            raise DarajaError(
                "Timed out waiting for the payment gateway",
                DarajaErrorType.UNREACHABLE,
                original_error=e,
            )
        except httpx.TransportError as e:
            metrics.record_daraja_call("stk_push", "connection_error", time.perf_counter() - start)
            metrics.record_daraja_error(DarajaErrorType.UNREACHABLE.value)
            logger.error("stk_push_connection_error", error=str(e))
            raise DarajaError(
                f"Could not reach the payment gateway: {e}",
                DarajaErrorType.UNREACHABLE,
                original_error=e,
            )

        metrics.record_daraja_call(
            "stk_push", str(response.status_code), time.perf_counter() - start
        )
        body = self._parse_body(response)
        return self._classify_response(response.status_code, body)

    @staticmethod
    def _parse_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {"raw": response.text[:1000]}
        return body if isinstance(body, dict) else {"raw": body}

    def _classify_response(self, status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Sort a gateway answer into success, rejection or outage.

        Raises:
            DarajaError: For anything but HTTP 200 with ResponseCode "0"
        """
        if status_code >= 500:
            metrics.record_daraja_error(DarajaErrorType.UNREACHABLE.value)
            logger.error("stk_push_gateway_error", status_code=status_code, body=body)
            raise DarajaError(
                f"Payment gateway error (HTTP {status_code})",
                DarajaErrorType.UNREACHABLE,
                status_code=status_code,
                response_body=body,
            )

        message = (
            body.get("errorMessage")
            or body.get("ResponseDescription")
            or body.get("CustomerMessage")
            or "Payment request was rejected by the gateway"
        )

        if status_code >= 400:
            if status_code == 401 and hasattr(self.token_provider, "invalidate"):
                self.token_provider.invalidate()
            metrics.record_daraja_error(DarajaErrorType.REJECTED.value)
            logger.warning(
                "stk_push_rejected",
                status_code=status_code,
                error_code=body.get("errorCode"),
                message=message,
            )
            raise DarajaError(
                message,
                DarajaErrorType.REJECTED,
                status_code=status_code,
                response_body=body,
            )

        if str(body.get("ResponseCode")) != SUCCESS_RESPONSE_CODE:
            metrics.record_daraja_error(DarajaErrorType.REJECTED.value)
            logger.warning(
                "stk_push_declined",
                response_code=body.get("ResponseCode"),
                message=message,
            )
            raise DarajaError(
                message,
                DarajaErrorType.REJECTED,
                status_code=status_code,
                response_body=body,
            )

        logger.info(
            "stk_push_accepted",
            checkout_request_id=body.get("CheckoutRequestID"),
            merchant_request_id=body.get("MerchantRequestID"),
        )
        return body
