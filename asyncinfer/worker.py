"""Workers that send requests to the inference gateway and route the outcome."""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from typing import Any

from asyncinfer import metrics
from asyncinfer.api import (
    ClientError,
    ErrorCategory,
    InferenceClient,
    InferenceError,
    InternalRouting,
    RequestMessage,
    ResultMessage,
)
from asyncinfer.logsetup import DEBUG, DEFAULT, level_for_verbosity
from asyncinfer.pipeline import Characteristics, EmbellishedRequest, RetryMessage

BASE_DELAY_SECONDS = 2
MAX_DELAY_SECONDS = 60
DEFAULT_REQUEST_TIMEOUT = 300.0

logger = logging.getLogger("asyncinfer.worker")


def _encode_json(value: Any) -> str:
    """Compact JSON with sorted keys and HTML-safe escaping."""
    text = json.dumps(
        value, separators=(",", ":"), sort_keys=True, ensure_ascii=False, allow_nan=False
    )
    return (
        text.replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


async def worker(
    characteristics: Characteristics,
    client: InferenceClient,
    request_queue: asyncio.Queue,
    retry_queue: asyncio.Queue,
    result_queue: asyncio.Queue,
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
) -> None:
    """Process requests until the stream ends (``None``) or the task is cancelled.

    Successful and fatally failed requests go to ``result_queue``; retryable
    failures go to ``retry_queue`` with a backoff.
    """
    try:
        while True:
            msg = await request_queue.get()
            if msg is None:
                # Leave the end marker for the other workers sharing the queue.
                await request_queue.put(None)
                return
            if not isinstance(msg, EmbellishedRequest) or msg.request.request is None:
                continue
            if msg.request.routing.retry_count == 0:
                metrics.ASYNC_REQUESTS.inc()
            payload = await validate_and_marshal(result_queue, msg)
            if payload is None:
                continue
            await _send_inference_request(client, msg, payload, retry_queue, result_queue,
                                          request_timeout)
    except asyncio.CancelledError:
        logger.log(level_for_verbosity(DEFAULT), "Worker finishing.")
        raise


async def _send_inference_request(
    client: InferenceClient,
    msg: EmbellishedRequest,
    payload: bytes,
    retry_queue: asyncio.Queue,
    result_queue: asyncio.Queue,
    request_timeout: float,
) -> None:
    req = msg.request.request
    routing = msg.request.routing
    now = time.time()
    deadline = now + request_timeout
    if req.deadline > 0:
        deadline = min(deadline, float(req.deadline))

    logger.log(level_for_verbosity(DEBUG), "Sending inference request url=%s", msg.request_url)
    try:
        body = await asyncio.wait_for(
            client.send_request(msg.request_url, msg.headers, payload),
            timeout=max(0.0, deadline - now),
        )
    except asyncio.TimeoutError as exc:
        err: Exception = ClientError(
            ErrorCategory.UNKNOWN, "failed to send request",
            raw_error=TimeoutError("deadline exceeded"),
        )
        err.__cause__ = exc
    except Exception as exc:  # noqa: BLE001 - any client failure becomes a result
        err = exc
    else:
        metrics.SUCCESSFUL_REQUESTS.inc()
        await result_queue.put(
            ResultMessage(
                id=req.id,
                payload=body.decode("utf-8", errors="replace"),
                routing=routing,
                metadata=req.metadata,
            )
        )
        return

    if not isinstance(err, InferenceError) or err.category.fatal():
        metrics.FAILED_REQUESTS.inc()
        await result_queue.put(
            create_error_result_message(
                req, routing, f"Failed to send request to inference: {err}"
            )
        )
        return

    if err.category.sheddable():
        metrics.SHEDDED_REQUESTS.inc()
    retry_after = err.retry_after if isinstance(err, ClientError) else 0.0
    await retry_message(msg, retry_queue, result_queue, retry_after)


async def validate_and_marshal(
    result_queue: asyncio.Queue, msg: EmbellishedRequest
) -> bytes | None:
    """Check the deadline and encode the payload.

    On failure an error result is put on ``result_queue`` and None is returned.
    """
    req = msg.request.request
    if req is None:
        return None
    routing = msg.request.routing
    if req.deadline <= 0:
        metrics.FAILED_REQUESTS.inc()
        await result_queue.put(
            create_error_result_message(
                req, routing, "Failed: deadline is missing or invalid (Unix seconds)."
            )
        )
        return None

    if req.deadline < int(time.time()):
        metrics.EXCEEDED_DEADLINE_REQUESTS.inc()
        await result_queue.put(create_deadline_exceeded_result_message(req, routing))
        return None

    try:
        return _encode_json(req.payload).encode("utf-8")
    except (TypeError, ValueError) as exc:
        metrics.FAILED_REQUESTS.inc()
        await result_queue.put(
            create_error_result_message(
                req, routing, f"Failed to marshal message's payload: {exc}"
            )
        )
        return None


async def retry_message(
    msg: EmbellishedRequest,
    retry_queue: asyncio.Queue,
    result_queue: asyncio.Queue,
    retry_after: float = 0.0,
) -> None:
    """Re-queue ``msg`` with backoff, or report it as past its deadline.

    ``retry_after`` is a server-requested delay in seconds; it wins over the
    computed backoff when larger, but never pushes a retry past the deadline.
    """
    req = msg.request.request
    if req is None:
        return
    routing = msg.request.routing
    seconds_to_deadline = req.deadline - int(time.time())
    if seconds_to_deadline <= 0:
        metrics.EXCEEDED_DEADLINE_REQUESTS.inc()
        await result_queue.put(create_deadline_exceeded_result_message(req, routing))
        return

    duration = exp_backoff_duration(routing.retry_count + 1, seconds_to_deadline)
    if retry_after > duration:
        duration = retry_after

    if duration >= seconds_to_deadline:
        metrics.EXCEEDED_DEADLINE_REQUESTS.inc()
        await result_queue.put(create_deadline_exceeded_result_message(req, routing))
        return

    routing.retry_count += 1
    metrics.RETRIES.inc()
    await retry_queue.put(RetryMessage(message=msg, backoff_duration_seconds=duration))


def create_error_result_message(
    req: RequestMessage, routing: InternalRouting, err_msg: str
) -> ResultMessage:
    """A result whose payload is ``{"error": err_msg}``."""
    try:
        payload = _encode_json({"error": err_msg})
    except (TypeError, ValueError):
        payload = '{"error": "internal error"}'
    return ResultMessage(id=req.id, payload=payload, routing=routing, metadata=req.metadata)


def create_deadline_exceeded_result_message(
    req: RequestMessage, routing: InternalRouting
) -> ResultMessage:
    """The error result for a request past its deadline."""
    return create_error_result_message(req, routing, "deadline exceeded")


def exp_backoff_duration(retry_count: int, seconds_to_deadline: int) -> float:
    """Exponential backoff with equal jitter, capped by the deadline and 60 s."""
    if seconds_to_deadline <= 0:
        return 0.0
    cap = min(float(MAX_DELAY_SECONDS), float(seconds_to_deadline))
    temp = min(cap, BASE_DELAY_SECONDS * 2.0 ** retry_count)
    if temp <= 0:
        return 0.0
    half = temp / 2
    return half + random.random() * half