import pytest

from asyncinfer.api import InternalRequest, InternalRouting, RequestMessage
from asyncinfer.pipeline import (
    Characteristics,
    DispatchGate,
    DispatchGateFunc,
    EmbellishedRequest,
    Flow,
    GateFactory,
    RequestChannel,
    RequestMergePolicy,
    RetryMessage,
    const_open_gate,
)


def test_const_open_gate_is_fully_open():
    assert const_open_gate().budget() == 1.0


def test_dispatch_gate_func_calls_function():
    gate = DispatchGateFunc(lambda: 0.25)
    assert gate.budget() == 0.25


def test_dispatch_gate_func_reflects_changing_state():
    state = {"value": 0.0}
    gate = DispatchGateFunc(lambda: state["value"])
    assert gate.budget() == 0.0
    state["value"] = 0.75
    assert gate.budget() == 0.75


def test_abstract_contracts_cannot_be_instantiated():
    for abstract in (DispatchGate, GateFactory, RequestMergePolicy, Flow):
        with pytest.raises(TypeError):
            abstract()


def test_characteristics_defaults():
    c = Characteristics()
    assert c.has_external_backoff is False
    assert c.supports_message_latency is False


def test_request_channel_default_gate_open():
    assert RequestChannel().gate.budget() == 1.0


def test_request_channel_close_ends_stream_after_items():
    channel = RequestChannel(igw_base_url="http://a")
    ir = InternalRequest(InternalRouting(), RequestMessage(id="x"))
    channel.queue.put_nowait(ir)
    channel.close()
    assert channel.closed is True
    assert channel.queue.get_nowait() is ir
    assert channel.queue.get_nowait() is None


def test_request_channel_double_close_raises():
    channel = RequestChannel()
    channel.close()
    with pytest.raises(RuntimeError):
        channel.close()


def test_request_channels_have_separate_queues():
    first, second = RequestChannel(), RequestChannel()
    first.close()
    assert first.queue.qsize() == 1
    assert second.queue.empty()


def test_retry_message_carries_request():
    emb = EmbellishedRequest(
        InternalRequest(InternalRouting(retry_count=1), RequestMessage(id="r")),
        headers={"Content-Type": "application/json"},
        request_url="http://gw/v1/completions",
    )
    retry = RetryMessage(emb, 3.5)
    assert retry.message.request.request.id == "r"
    assert retry.message.request_url == "http://gw/v1/completions"
    assert retry.backoff_duration_seconds == 3.5


@pytest.mark.asyncio
async def test_concrete_flow_subclass():
    class StaticFlow(Flow):
        def __init__(self, channel, characteristics):
            self.channels = [channel]
            self._characteristics = characteristics
            self.started = False

        def characteristics(self):
            return self._characteristics

        async def start(self):
            self.started = True

        def request_channels(self):
            return self.channels

    channel = RequestChannel(inference_objective="obj")
    flow = StaticFlow(channel, Characteristics(has_external_backoff=True))
    await flow.start()
    assert flow.started is True
    assert flow.characteristics().has_external_backoff is True
    assert flow.characteristics().supports_message_latency is False
    exposed = flow.request_channels()[0]
    assert exposed.inference_objective == "obj"
    assert exposed.gate.budget() == 1.0
    exposed.close()
    assert exposed.queue.get_nowait() is None