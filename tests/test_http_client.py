from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from asyncinfer.api import ClientError, ErrorCategory
from asyncinfer.http_client import HTTPInferenceClient, parse_retry_after

URL = "http://localhost:30800/v1/completions"


def client_for(handler):
    return HTTPInferenceClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
async def test_success_returns_body_and_forwards_request():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["body"] = request.content
        seen["objective"] = request.headers["x-gateway-inference-objective"]
        return httpx.Response(200, content=b'{"ok":true}')

    body = await client_for(handler).send_request(
        URL, {"x-gateway-inference-objective": "obj"}, b'{"prompt":"hi"}'
    )
    assert body == b'{"ok":true}'
    assert seen == {"method": "POST", "body": b'{"prompt":"hi"}', "objective": "obj"}


@pytest.mark.asyncio
async def test_rate_limit_with_retry_after():
    def handler(request):
        return httpx.Response(429, headers={"Retry-After": "25"})

    with pytest.raises(ClientError) as info:
        await client_for(handler).send_request(URL, {}, b"{}")
    err = info.value
    assert err.category is ErrorCategory.RATE_LIMIT
    assert err.retry_after == 25.0
    assert err.message == "rate limited: status code 429"
    assert err.category.sheddable()


@pytest.mark.asyncio
async def test_rate_limit_without_header_has_zero_retry_after():
    with pytest.raises(ClientError) as info:
        await client_for(lambda r: httpx.Response(429)).send_request(URL, {}, b"{}")
    assert info.value.retry_after == 0.0


@pytest.mark.asyncio
async def test_client_error_is_fatal():
    with pytest.raises(ClientError) as info:
        await client_for(lambda r: httpx.Response(400, text="bad")).send_request(URL, {}, b"{}")
    assert str(info.value) == "INVALID_REQ: client error: status code 400"
    assert info.value.category.fatal()


@pytest.mark.asyncio
async def test_server_error_is_retryable():
    with pytest.raises(ClientError) as info:
        await client_for(lambda r: httpx.Response(503)).send_request(URL, {}, b"{}")
    assert info.value.category is ErrorCategory.SERVER
    assert not info.value.category.fatal()


@pytest.mark.asyncio
async def test_transport_error_is_unknown():
    def handler(request):
        raise httpx.ConnectError("network unreachable")

    with pytest.raises(ClientError) as info:
        await client_for(handler).send_request(URL, {}, b"{}")
    assert info.value.category is ErrorCategory.UNKNOWN
    assert isinstance(info.value.raw_error, httpx.ConnectError)
    assert "failed to send request" in str(info.value)


def _http_date(delta_seconds):
    return format_datetime(
        datetime.now(timezone.utc) + timedelta(seconds=delta_seconds), usegmt=True
    )


def test_parse_retry_after_integer_seconds():
    assert parse_retry_after("120") == 120.0


def test_parse_retry_after_zero_seconds():
    assert parse_retry_after("0") == 0.0


def test_parse_retry_after_future_date_is_positive():
    value = parse_retry_after(_http_date(10))
    assert value is not None and value > 0


def test_parse_retry_after_past_date_is_zero():
    assert parse_retry_after(_http_date(-10)) == 0.0


@pytest.mark.parametrize(
    "value", ["Sunday, 06-Nov-94 08:49:37 GMT", "Sun Nov  6 08:49:37 1994"]
)
def test_parse_retry_after_other_date_formats(value):
    assert parse_retry_after(value) == 0.0


@pytest.mark.parametrize("value", ["-5", "abc", ""])
def test_parse_retry_after_invalid(value):
    assert parse_retry_after(value) is None