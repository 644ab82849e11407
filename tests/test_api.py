import json

import pytest

from asyncinfer.api import (
    ClientError,
    ErrorCategory,
    InferenceError,
    InternalRequest,
    InternalRouting,
    PubSubRequest,
    RedisRequest,
    RequestDecodeError,
    RequestMessage,
    ResultMessage,
)


def assert_routing(got, want):
    assert got.retry_count == want.retry_count
    assert got.request_queue_name == want.request_queue_name
    assert got.result_queue_name == want.result_queue_name
    assert got.transport_correlation_id == want.transport_correlation_id


def test_round_trip_plain_request_message():
    ir = InternalRequest(
        InternalRouting(retry_count=2, request_queue_name="rq", result_queue_name="resq"),
        RequestMessage(
            id="plain-1", created=1000, deadline=2000,
            payload={"model": "m1"}, metadata={"k": "v"},
        ),
    )
    got = InternalRequest.from_json(ir.to_json())
    assert_routing(got.routing, ir.routing)
    rm = got.request
    assert type(rm) is RequestMessage
    assert (rm.id, rm.created, rm.deadline) == ("plain-1", 1000, 2000)
    assert rm.payload["model"] == "m1"
    assert rm.metadata["k"] == "v"


def test_round_trip_redis_request():
    ir = InternalRequest(
        InternalRouting(retry_count=1, request_queue_name="rq", result_queue_name="resq",
                        transport_correlation_id="tc"),
        RedisRequest(id="redis-1", created=100, deadline=200, payload={"p": 1},
                     request_queue_name="per-msg-rq", result_queue_name="per-msg-resq"),
    )
    got = InternalRequest.from_json(ir.to_json())
    assert_routing(got.routing, ir.routing)
    rr = got.request
    assert type(rr) is RedisRequest
    assert rr.id == "redis-1"
    assert rr.request_queue_name == "per-msg-rq"
    assert rr.result_queue_name == "per-msg-resq"


def test_round_trip_pubsub_request():
    ir = InternalRequest(
        InternalRouting(transport_correlation_id="corr-123"),
        PubSubRequest(id="ps-1", created=10, deadline=20, pubsub_id="pub-abc"),
    )
    got = InternalRequest.from_json(ir.to_json())
    assert_routing(got.routing, ir.routing)
    ps = got.request
    assert type(ps) is PubSubRequest
    assert ps.id == "ps-1"
    assert ps.pubsub_id == "pub-abc"


def test_unmarshal_missing_request_kind():
    with pytest.raises(RequestDecodeError):
        InternalRequest.from_json('{"internal":{},"data":{"id":"x"}}')


def test_unmarshal_null():
    assert InternalRequest.from_json("null") is None


def test_unmarshal_empty():
    with pytest.raises(RequestDecodeError):
        InternalRequest.from_json("")


def test_marshal_missing_public_request():
    with pytest.raises(ValueError):
        InternalRequest().to_json()


def test_unmarshal_unknown_request_kind():
    with pytest.raises(RequestDecodeError, match="alien"):
        InternalRequest.from_json('{"internal":{},"request_kind":"alien","data":{"id":"x"}}')


def test_unmarshal_empty_data():
    with pytest.raises(RequestDecodeError, match="data is empty"):
        InternalRequest.from_json('{"internal":{},"request_kind":"plain"}')


def test_round_trip_public_request_fields():
    ir = InternalRequest(
        InternalRouting(),
        RequestMessage(id="iface-test", created=1, deadline=2,
                       payload={"k": "v"}, metadata={"m": "d"}),
    )
    r = InternalRequest.from_json(ir.to_json()).request
    assert r.id == "iface-test"
    assert r.created == 1
    assert r.deadline == 2
    assert r.payload["k"] == "v"
    assert r.metadata["m"] == "d"


def test_round_trip_endpoint_field():
    ir = InternalRequest(
        InternalRouting(request_queue_name="rq"),
        RequestMessage(id="ep-test", created=1, deadline=2,
                       payload={"model": "m"}, endpoint="/v1/custom"),
    )
    rm = InternalRequest.from_json(ir.to_json()).request
    assert type(rm) is RequestMessage
    assert rm.endpoint == "/v1/custom"


def test_endpoint_omitted_when_empty():
    ir = InternalRequest(InternalRouting(), RequestMessage(id="no-ep", created=1, deadline=2))
    data = json.loads(ir.to_json())["data"]
    assert "endpoint" not in data
    assert "metadata" not in data


def test_envelope_layout():
    ir = InternalRequest(InternalRouting(), RedisRequest(id="x", deadline=5))
    wire = json.loads(ir.to_json())
    assert list(wire) == ["internal", "request_kind", "data"]
    assert wire["request_kind"] == "redis"
    assert wire["internal"] == {}


def test_bytes_input_accepted():
    ir = InternalRequest(InternalRouting(retry_count=3), RequestMessage(id="b"))
    got = InternalRequest.from_json(ir.to_json().encode())
    assert got.routing.retry_count == 3
    assert got.request.id == "b"


def test_wrong_field_type_rejected():
    with pytest.raises(RequestDecodeError):
        InternalRequest.from_json('{"internal":{},"request_kind":"plain","data":{"id":5}}')


def test_unsupported_request_type():
    class Custom(RequestMessage):
        pass

    with pytest.raises(TypeError):
        InternalRequest(InternalRouting(), Custom(id="c")).to_json()


@pytest.mark.parametrize(
    "category, fatal, sheddable",
    [
        (ErrorCategory.RATE_LIMIT, False, True),
        (ErrorCategory.SERVER, False, False),
        (ErrorCategory.INVALID_REQUEST, True, False),
        (ErrorCategory.AUTH, True, False),
        (ErrorCategory.PARSE, True, False),
        (ErrorCategory.UNKNOWN, True, False),
    ],
)
def test_error_category_behaviour(category, fatal, sheddable):
    assert category.fatal() is fatal
    assert category.sheddable() is sheddable


def test_client_error_message():
    err = ClientError(ErrorCategory.INVALID_REQUEST, "client error: status code 400")
    assert str(err) == "INVALID_REQ: client error: status code 400"
    assert isinstance(err, InferenceError)
    assert err.category is ErrorCategory.INVALID_REQUEST


def test_client_error_with_cause():
    cause = OSError("network unreachable")
    err = ClientError(ErrorCategory.UNKNOWN, "failed to send request", raw_error=cause)
    assert str(err) == "UNKNOWN: failed to send request (caused by: network unreachable)"
    assert err.__cause__ is cause


def test_result_message_wire_form():
    msg = ResultMessage(id="r1", payload="body",
                        routing=InternalRouting(retry_count=1), metadata={"a": "b"})
    assert msg.to_dict() == {"id": "r1", "payload": "body"}