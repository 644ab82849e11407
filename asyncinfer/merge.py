"""Merging of several request channels into one stream for the workers."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Sequence

from asyncinfer.api import InternalRequest
from asyncinfer.pipeline import EmbellishedRequest, RequestChannel, RequestMergePolicy

OBJECTIVE_HEADER = "x-gateway-inference-objective"


class RandomRobinPolicy(RequestMergePolicy):
    """Forwards requests from whichever channels are ready, in random order.

    Each request is decorated with the HTTP headers and URL of the channel
    it arrived on; a request's own ``endpoint`` replaces the channel's path.
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng if rng is not None else random.Random()
        self._tasks: set[asyncio.Task] = set()

    def merge_request_channels(self, channels: Sequence[RequestChannel]) -> asyncio.Queue:
        """Start forwarding and return the merged queue.

        The queue holds at most one item per input channel and ends with
        ``None`` once every input channel has been closed. Must be called
        from a running event loop unless ``channels`` is empty.
        """
        sources = list(channels)
        merged: asyncio.Queue = asyncio.Queue(maxsize=len(sources))
        if not sources:
            merged.put_nowait(None)
            return merged
        task = asyncio.get_running_loop().create_task(self._forward(sources, merged))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return merged

    async def _forward(self, channels: list[RequestChannel], merged: asyncio.Queue) -> None:
        pending: dict[asyncio.Future, RequestChannel] = {
            asyncio.ensure_future(channel.queue.get()): channel for channel in channels
        }
        try:
            while pending:
                done, _ = await asyncio.wait(list(pending), return_when=asyncio.FIRST_COMPLETED)
                ready = list(done)
                self._rng.shuffle(ready)
                for getter in ready:
                    channel = pending.pop(getter)
                    item = getter.result()
                    if item is None:
                        continue
                    pending[asyncio.ensure_future(channel.queue.get())] = channel
                    if isinstance(item, InternalRequest) and item.request is not None:
                        await merged.put(_embellish(channel, item))
            await merged.put(None)
        finally:
            for getter in pending:
                getter.cancel()


def _embellish(channel: RequestChannel, request: InternalRequest) -> EmbellishedRequest:
    assert request.request is not None
    path = request.request.endpoint or channel.request_path_url
    return EmbellishedRequest(
        request=request,
        headers={
            "Content-Type": "application/json",
            OBJECTIVE_HEADER: channel.inference_objective,
        },
        request_url=channel.igw_base_url + path,
    )


def new_random_robin_policy() -> RequestMergePolicy:
    """A fresh random-robin merge policy."""
    return RandomRobinPolicy()