"""
Inspection of MCP (JSON-RPC) response bodies for ATXP payment requests.

A payment requirement reaches the client inside an otherwise successful
response, in one of three shapes:

* a JSON-RPC error with code ``-30402`` whose data or message carries the
  payment-request URL;
* a URL-mode elicitation error (code ``-32604``) pointing at a payment request;
* a tool result with ``isError`` set whose text carries the ATXP preamble and code.

Bodies may be plain JSON (single message or batch) or ``text/event-stream``.

MCP 响应体中 ATXP 支付请求的检测。
消息模型来自 ``mcp.types``，本模块只负责在其中查找支付请求。
"""

import json
import logging
import re
from typing import Any

import httpx
from httpx_sse import EventSource
from mcp.types import (
    ErrorData,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
)
from pydantic import BaseModel, ValidationError

from atxp.errors import PAYMENT_REQUIRED_ERROR_CODE, PAYMENT_REQUIRED_PREAMBLE, ATXPError

__all__ = [
    "ErrorData",
    "JSONRPCError",
    "JSONRPCNotification",
    "JSONRPCRequest",
    "JSONRPCResponse",
    "MCPMessage",
    "PaymentRequestRef",
    "find_payment_request",
    "parse_mcp_messages",
    "parse_payment_request_from_string",
    "parse_payment_requests",
]

logger = logging.getLogger(__name__)  # 获取当前模块的日志记录器

ELICITATION_REQUIRED_ERROR_CODE = -32604
SSE_CONTENT_TYPE = "text/event-stream"

_PAYMENT_REQUEST_URL = re.compile(r"(http[^ ]+)/payment-request/([^ ]+)")

# JSONRPCMessage 是 RootModel，这里使用其中解包后的具体消息类型
MCPMessage = JSONRPCRequest | JSONRPCNotification | JSONRPCResponse | JSONRPCError


class PaymentRequestRef(BaseModel):
    """Where a pending payment obligation lives."""

    url: str
    id: str


def parse_payment_request_from_string(text: str | None) -> PaymentRequestRef | None:
    if not text:
        return None
    match = _PAYMENT_REQUEST_URL.search(text)
    if match is None:
        return None
    return PaymentRequestRef(url=match.group(0), id=match.group(2))


def parse_payment_requests(message: MCPMessage) -> list[PaymentRequestRef]:
    """从单条 JSON-RPC 消息中提取所有支付请求。"""
    requests: list[PaymentRequestRef] = []

    if isinstance(message, JSONRPCError):
        error = message.error
        data = error.data if isinstance(error.data, dict) else {}
        # -30402：优先使用 data 中的 paymentRequestUrl，否则回退到错误消息文本
        if error.code == PAYMENT_REQUIRED_ERROR_CODE:
            request = parse_payment_request_from_string(data.get("paymentRequestUrl"))
            request = request or parse_payment_request_from_string(error.message)
            if request:
                requests.append(request)
        # -32604：只有 URL 模式的 elicitation 指向支付请求
        if error.code == ELICITATION_REQUIRED_ERROR_CODE:
            for elicitation in data.get("elicitations") or []:
                if isinstance(elicitation, dict) and elicitation.get("mode") == "url":
                    request = parse_payment_request_from_string(elicitation.get("url"))
                    if request:
                        requests.append(request)

    # 工具调用结果：必须带 isError 标记，且文本同时包含 ATXP 前缀与错误码
    elif isinstance(message, JSONRPCResponse) and message.result.get("isError"):
        for content in message.result.get("content") or []:
            if not isinstance(content, dict) or content.get("type") != "text":
                continue
            text = content.get("text") or ""
            if PAYMENT_REQUIRED_PREAMBLE in text and str(PAYMENT_REQUIRED_ERROR_CODE) in text:
                request = parse_payment_request_from_string(text)
                if request:
                    requests.append(request)

    return requests


def is_sse_body(response: httpx.Response) -> bool:
    if SSE_CONTENT_TYPE in response.headers.get("content-type", ""):
        return True
    head = response.text.lstrip()[:16]
    return head.startswith(("event:", "data:", "id:"))


def _validate_messages(payload: Any) -> list[MCPMessage]:
    items = payload if isinstance(payload, list) else [payload]
    messages: list[MCPMessage] = []
    for item in items:
        try:
            messages.append(JSONRPCMessage.model_validate(item).root)
        except ValidationError as e:
            logger.debug(f"Skipping invalid JSON-RPC message: {e}")
    return messages


async def parse_mcp_messages(response: httpx.Response) -> list[MCPMessage]:
    """All JSON-RPC messages in a response body. Bodies that are not MCP yield an empty list."""
    if not response.content:
        return []

    if is_sse_body(response):
        # EventSource 要求 text/event-stream 内容类型，否则先重新包装响应
        if SSE_CONTENT_TYPE not in response.headers.get("content-type", ""):
            response = httpx.Response(200, headers={"content-type": SSE_CONTENT_TYPE}, content=response.content)
        messages: list[MCPMessage] = []
        async for sse in EventSource(response).aiter_sse():
            if not sse.data:
                continue
            try:
                messages.extend(_validate_messages(json.loads(sse.data)))
            except ValueError:
                logger.debug(f"Skipping non-JSON SSE event: {sse.data[:100]}")
        return messages

    try:
        payload = response.json()
    except ValueError:
        return []
    return _validate_messages(payload)


async def find_payment_request(response: httpx.Response) -> PaymentRequestRef | None:
    """The single payment request in a response, if any. More than one is an error."""
    messages = await parse_mcp_messages(response)
    requests = [request for message in messages for request in parse_payment_requests(message)]
    if len(requests) > 1:
        urls = ", ".join(request.url for request in requests)
        raise ATXPError(
            f"Multiple payment requirements found in MCP response; only one is supported. {urls}"
        )
    return requests[0] if requests else None
