import json

import httpx
import pytest

from atxp.errors import ATXPError
from atxp.shared.mcp_json import (
    JSONRPCError,
    JSONRPCResponse,
    find_payment_request,
    parse_mcp_messages,
    parse_payment_request_from_string,
)

PAYMENT_URL = "https://auth.atxp.ai/payment-request/pr_123"


def payment_error(url: str = PAYMENT_URL, request_id: int = 1) -> dict:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {
            "code": -30402,
            "message": f"Payment via ATXP is required. Please pay at: {url}",
            "data": {"paymentRequestId": url.rsplit("/", 1)[1], "paymentRequestUrl": url},
        },
    }


def sse_body(*messages: dict) -> str:
    return "".join(f"event: message\ndata: {json.dumps(message)}\n\n" for message in messages)


def test_parse_payment_request_from_string():
    request = parse_payment_request_from_string(f"Please pay at: {PAYMENT_URL} and retry")
    assert request is not None
    assert request.url == PAYMENT_URL
    assert request.id == "pr_123"
    assert parse_payment_request_from_string("no link here") is None
    assert parse_payment_request_from_string(None) is None


@pytest.mark.anyio
async def test_json_error_payment_request():
    request = await find_payment_request(httpx.Response(200, json=payment_error()))
    assert request is not None
    assert (request.url, request.id) == (PAYMENT_URL, "pr_123")


@pytest.mark.anyio
async def test_payment_url_falls_back_to_error_message():
    message = payment_error()
    del message["error"]["data"]
    request = await find_payment_request(httpx.Response(200, json=message))
    assert request is not None
    assert request.id == "pr_123"


@pytest.mark.anyio
async def test_sse_payment_request():
    response = httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        content=sse_body({"jsonrpc": "2.0", "method": "notifications/progress", "params": {}}, payment_error()),
    )
    messages = await parse_mcp_messages(response)

    assert len(messages) == 2
    assert isinstance(messages[1], JSONRPCError)
    request = await find_payment_request(response)
    assert request is not None
    assert request.id == "pr_123"


@pytest.mark.anyio
async def test_sse_body_without_content_type_is_detected():
    response = httpx.Response(
        200, headers={"content-type": "application/octet-stream"}, content=sse_body(payment_error())
    )
    request = await find_payment_request(response)
    assert request is not None
    assert request.url == PAYMENT_URL


@pytest.mark.anyio
async def test_tool_result_with_payment_text():
    text = f"Payment via ATXP is required. Please pay at: {PAYMENT_URL} (code -30402)"
    response = httpx.Response(
        200,
        json={"jsonrpc": "2.0", "id": 7, "result": {"isError": True, "content": [{"type": "text", "text": text}]}},
    )
    request = await find_payment_request(response)
    assert request is not None
    assert request.id == "pr_123"


@pytest.mark.anyio
async def test_tool_result_without_error_flag_is_ignored():
    text = f"Payment via ATXP is required. {PAYMENT_URL} -30402"
    response = httpx.Response(
        200, json={"jsonrpc": "2.0", "id": 7, "result": {"content": [{"type": "text", "text": text}]}}
    )
    assert await find_payment_request(response) is None


@pytest.mark.anyio
async def test_url_elicitation_payment_request():
    message = {
        "jsonrpc": "2.0",
        "id": 3,
        "error": {
            "code": -32604,
            "message": "Elicitation required",
            "data": {
                "elicitations": [
                    {"mode": "form", "url": "https://auth.atxp.ai/payment-request/ignored"},
                    {"mode": "url", "url": PAYMENT_URL},
                ]
            },
        },
    }
    request = await find_payment_request(httpx.Response(200, json=message))
    assert request is not None
    assert request.id == "pr_123"


@pytest.mark.anyio
async def test_multiple_payment_requests_are_an_error():
    batch = [payment_error(), payment_error("https://auth.atxp.ai/payment-request/pr_456", 2)]
    with pytest.raises(ATXPError, match="Multiple payment requirements"):
        await find_payment_request(httpx.Response(200, json=batch))


@pytest.mark.anyio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, content=b""),
        httpx.Response(200, text="<html>not json</html>"),
        httpx.Response(200, json={"hello": "world"}),
        httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"tools": []}}),
    ],
)
async def test_bodies_without_payment_requests(response):
    assert await find_payment_request(response) is None


@pytest.mark.anyio
async def test_batch_messages_are_all_parsed():
    batch = [{"jsonrpc": "2.0", "id": 1, "result": {}}, {"jsonrpc": "2.0", "id": 2, "result": {"ok": True}}]
    messages = await parse_mcp_messages(httpx.Response(200, json=batch))
    assert [type(message) for message in messages] == [JSONRPCResponse, JSONRPCResponse]
