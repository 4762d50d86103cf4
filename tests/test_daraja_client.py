"""
Unit tests for the Daraja client, circuit breaker and access token provider.
"""
import base64
from datetime import datetime, timezone
from typing import Any, List
from unittest.mock import AsyncMock

import httpx
import pytest

from merchant_payments.integrations.daraja_client import CircuitBreaker, DarajaClient
from merchant_payments.integrations.errors import DarajaError, DarajaErrorType
from merchant_payments.integrations.token_provider import (
    TOKEN_CACHE_KEY,
    DarajaTokenProvider,
)


def _push(client: DarajaClient) -> Any:
    return client.stk_push(
        amount=50,
        phone_number="254712345678",
        account_reference="MAMAMB143015",
        description="Mama Mbo 3015",
        timestamp="20261019143015",
    )


class TestDarajaClient:
    """STK push requests and error classification."""

    @pytest.mark.unit
    def test_password_is_base64_of_shortcode_passkey_timestamp(
        self, daraja_client: DarajaClient
    ) -> None:
        password = daraja_client.password("20261019143015")
        assert base64.b64decode(password).decode() == "174379test-passkey20261019143015"

    @pytest.mark.unit
    def test_timestamp_uses_gateway_timezone(self, daraja_client: DarajaClient) -> None:
        moment = datetime(2026, 10, 19, 21, 30, 15, tzinfo=timezone.utc)
        # Nairobi is UTC+3 all year
        assert daraja_client.timestamp(moment) == "20261020003015"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_accepted_push_returns_body(
        self, daraja_client: DarajaClient, gateway: Any
    ) -> None:
        gateway.accept("ws_CO_191020261430")

        body = await _push(daraja_client)

        assert body["CheckoutRequestID"] == "ws_CO_191020261430"
        payload = gateway.payload()
        assert payload["Timestamp"] == "20261019143015"
        assert payload["TransactionType"] == "CustomerPayBillOnline"
        assert payload["BusinessShortCode"] == "174379"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_client_error_is_rejection(
        self, daraja_client: DarajaClient, gateway: Any
    ) -> None:
        gateway.respond(400, {"errorCode": "400.002.02", "errorMessage": "Invalid Amount"})

        with pytest.raises(DarajaError) as exc_info:
            await _push(daraja_client)

        assert exc_info.value.error_type == DarajaErrorType.REJECTED
        assert exc_info.value.message == "Invalid Amount"
        assert exc_info.value.status_code == 400

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unauthorized_invalidates_token(
        self, daraja_client: DarajaClient, gateway: Any, token_provider: Any
    ) -> None:
        gateway.respond(401, {"errorMessage": "Invalid Access Token"})

        with pytest.raises(DarajaError):
            await _push(daraja_client)

        assert token_provider.invalidations == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_server_error_is_unreachable(
        self, daraja_client: DarajaClient, gateway: Any
    ) -> None:
        gateway.respond(500, {"errorMessage": "Internal Server Error"})

        with pytest.raises(DarajaError) as exc_info:
            await _push(daraja_client)

        assert exc_info.value.error_type == DarajaErrorType.UNREACHABLE

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [httpx.ConnectTimeout("timed out"), httpx.ConnectError("refused")],
    )
    async def test_transport_errors_are_unreachable(
        self, daraja_client: DarajaClient, gateway: Any, error: Exception
    ) -> None:
        gateway.fail(error)

        with pytest.raises(DarajaError) as exc_info:
            await _push(daraja_client)

        assert exc_info.value.error_type == DarajaErrorType.UNREACHABLE
        assert exc_info.value.original_error is error

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_push_is_never_retried(self, daraja_client: DarajaClient, gateway: Any) -> None:
        gateway.fail(httpx.ReadTimeout("read timed out"))

        with pytest.raises(DarajaError):
            await _push(daraja_client)

        assert len(gateway.push_requests) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_json_body_is_handled(
        self, daraja_client: DarajaClient, gateway: Any
    ) -> None:
        gateway.queue.append(httpx.Response(502, text="<html>Bad Gateway</html>"))

        with pytest.raises(DarajaError) as exc_info:
            await _push(daraja_client)

        assert exc_info.value.error_type == DarajaErrorType.UNREACHABLE
        assert exc_info.value.response_body == {"raw": "<html>Bad Gateway</html>"}


class TestCircuitBreaker:
    """Circuit breaker state transitions."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_opens_after_consecutive_failures(
        self, token_provider: Any, http_client: Any, settings: Any, gateway: Any
    ) -> None:
        breaker = CircuitBreaker(failure_threshold=2, timeout=60)
        client = DarajaClient(token_provider, http_client, settings, circuit_breaker=breaker)
        gateway.respond(503)
        gateway.respond(503)

        for _ in range(2):
            with pytest.raises(DarajaError):
                await _push(client)
        assert breaker.state == "open"

        with pytest.raises(DarajaError) as exc_info:
            await _push(client)
        assert exc_info.value.error_type == DarajaErrorType.CIRCUIT_OPEN
        assert len(gateway.push_requests) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejections_do_not_open_circuit(
        self, token_provider: Any, http_client: Any, settings: Any, gateway: Any
    ) -> None:
        breaker = CircuitBreaker(failure_threshold=2)
        client = DarajaClient(token_provider, http_client, settings, circuit_breaker=breaker)
        for _ in range(3):
            gateway.respond(400, {"errorMessage": "Invalid PhoneNumber"})

        for _ in range(3):
            with pytest.raises(DarajaError):
                await _push(client)

        assert breaker.state == "closed"
        assert breaker.failure_count == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_half_open_closes_after_successes(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=0, success_threshold=2)
        failing = AsyncMock(side_effect=DarajaError("down", DarajaErrorType.UNREACHABLE))
        healthy = AsyncMock(return_value={"ResponseCode": "0"})

        with pytest.raises(DarajaError):
            await breaker.call(failing)
        assert breaker.state == "open"

        # timeout=0 lets the next call probe immediately
        breaker.last_failure_time -= 1
        await breaker.call(healthy)
        assert breaker.state == "half_open"
        await breaker.call(healthy)
        assert breaker.state == "closed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=0)
        failing = AsyncMock(side_effect=DarajaError("down", DarajaErrorType.UNREACHABLE))

        with pytest.raises(DarajaError):
            await breaker.call(failing)
        breaker.last_failure_time -= 1
        with pytest.raises(DarajaError):
            await breaker.call(failing)

        assert breaker.state == "open"


def _token_transport(responses: List[Any], seen: List[httpx.Request]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        item = responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return httpx.MockTransport(handler)


class TestTokenProvider:
    """OAuth token acquisition and caching."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_token_is_cached(self, settings: Any) -> None:
        seen: List[httpx.Request] = []
        responses = [httpx.Response(200, json={"access_token": "tok-1", "expires_in": "3599"})]
        async with httpx.AsyncClient(transport=_token_transport(responses, seen)) as client:
            provider = DarajaTokenProvider(http_client=client, settings=settings)

            assert await provider.get_access_token() == "tok-1"
            assert await provider.get_access_token() == "tok-1"

        assert len(seen) == 1
        request = seen[0]
        assert request.url.path == "/oauth/v1/generate"
        assert request.url.params["grant_type"] == "client_credentials"
        expected = base64.b64encode(b"test-consumer-key:test-consumer-secret").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalidate_forces_refresh(self, settings: Any) -> None:
        seen: List[httpx.Request] = []
        responses = [
            httpx.Response(200, json={"access_token": "tok-1", "expires_in": 3599}),
            httpx.Response(200, json={"access_token": "tok-2", "expires_in": 3599}),
        ]
        async with httpx.AsyncClient(transport=_token_transport(responses, seen)) as client:
            provider = DarajaTokenProvider(http_client=client, settings=settings)
            assert await provider.get_access_token() == "tok-1"
            provider.invalidate()
            assert await provider.get_access_token() == "tok-2"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self, settings: Any) -> None:
        seen: List[httpx.Request] = []
        responses = [
            httpx.ConnectError("refused"),
            httpx.Response(200, json={"access_token": "tok-retry", "expires_in": 3599}),
        ]
        async with httpx.AsyncClient(transport=_token_transport(responses, seen)) as client:
            provider = DarajaTokenProvider(http_client=client, settings=settings)
            assert await provider.get_access_token() == "tok-retry"

        assert len(seen) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_persistent_transport_failure_is_unreachable(self, settings: Any) -> None:
        seen: List[httpx.Request] = []
        responses: List[Any] = [httpx.ConnectError("refused") for _ in range(3)]
        async with httpx.AsyncClient(transport=_token_transport(responses, seen)) as client:
            provider = DarajaTokenProvider(http_client=client, settings=settings)
            with pytest.raises(DarajaError) as exc_info:
                await provider.get_access_token()

        assert exc_info.value.error_type == DarajaErrorType.UNREACHABLE
        assert len(seen) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(400, json={"errorMessage": "Invalid credentials"}),
            httpx.Response(200, json={"unexpected": "shape"}),
            httpx.Response(200, text="not json"),
        ],
    )
    async def test_bad_token_answers_are_not_retried(
        self, settings: Any, response: httpx.Response
    ) -> None:
        seen: List[httpx.Request] = []
        async with httpx.AsyncClient(transport=_token_transport([response], seen)) as client:
            provider = DarajaTokenProvider(http_client=client, settings=settings)
            with pytest.raises(DarajaError) as exc_info:
                await provider.get_access_token()

        assert exc_info.value.error_type == DarajaErrorType.UNREACHABLE
        assert len(seen) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_shared_cache_is_used(self, settings: Any) -> None:
        redis_client = AsyncMock()
        redis_client.get.return_value = "tok-shared"
        redis_client.ttl.return_value = 1200
        seen: List[httpx.Request] = []
        async with httpx.AsyncClient(transport=_token_transport([], seen)) as client:
            provider = DarajaTokenProvider(
                http_client=client, settings=settings, redis_client=redis_client
            )
            assert await provider.get_access_token() == "tok-shared"

        redis_client.get.assert_awaited_once_with(TOKEN_CACHE_KEY)
        assert seen == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fresh_token_written_to_shared_cache(self, settings: Any) -> None:
        redis_client = AsyncMock()
        redis_client.get.return_value = None
        seen: List[httpx.Request] = []
        responses = [httpx.Response(200, json={"access_token": "tok-new", "expires_in": 3599})]
        async with httpx.AsyncClient(transport=_token_transport(responses, seen)) as client:
            provider = DarajaTokenProvider(
                http_client=client, settings=settings, redis_client=redis_client
            )
            assert await provider.get_access_token() == "tok-new"

        redis_client.setex.assert_awaited_once_with(
            TOKEN_CACHE_KEY, 3599 - settings.token_expiry_margin_seconds, "tok-new"
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_outage_falls_back_to_gateway(self, settings: Any) -> None:
        redis_client = AsyncMock()
        redis_client.get.side_effect = ConnectionError("redis down")
        redis_client.setex.side_effect = ConnectionError("redis down")
        seen: List[httpx.Request] = []
        responses = [httpx.Response(200, json={"access_token": "tok-1", "expires_in": 3599})]
        async with httpx.AsyncClient(transport=_token_transport(responses, seen)) as client:
            provider = DarajaTokenProvider(
                http_client=client, settings=settings, redis_client=redis_client
            )
            assert await provider.get_access_token() == "tok-1"
