# asyncinfer

`asyncinfer` is a library for processing inference requests asynchronously.
It takes requests from asyncio queues and sends them to an inference gateway
over HTTP. It retries failed requests with jittered exponential backoff and
never retries past a request's deadline. Dispatch gates can throttle how much
work is taken in. A gate can be driven by Prometheus metrics.

## Installation

```
pip install asyncinfer
```

## Modules

- `asyncinfer.api` holds the request and result types:
  - `RequestMessage`, `RedisRequest` and `PubSubRequest` are the requests a
    caller sees. `created` and `deadline` are Unix seconds. A request's
    `endpoint` replaces the request path of its channel.
  - `InternalRequest` wraps a request together with its `InternalRouting`:
    the retry count, the queue names and the transport correlation id.
    `to_json()` writes a tagged JSON envelope. `InternalRequest.from_json()`
    reads one back and restores the concrete request type. The JSON literal
    `null` gives `None`. A malformed envelope raises `RequestDecodeError`.
  - `ResultMessage` is what a worker produces. `to_dict()` gives its wire
    form, which holds `id` and `payload`.
  - `ClientError` is an `InferenceError` with an `ErrorCategory` and an
    optional `retry_after`. `ErrorCategory.fatal()` is true for every category
    except rate limiting and server errors. `sheddable()` is true only for
    rate limiting.
  - `InferenceClient` is the abstract client, with a single method:
    `async send_request(url, headers, payload)`.
- `asyncinfer.pipeline` holds the contracts between the parts:
  - `RequestChannel` is an unbounded queue plus its gateway base URL, its
    inference objective, its request path and its gate. `close()` puts the
    end-of-stream marker `None` on the queue.
  - `EmbellishedRequest` and `RetryMessage` are the messages that move
    between the parts.
  - `Characteristics`, `DispatchGate`, `DispatchGateFunc`, `GateFactory`,
    `RequestMergePolicy` and `Flow` are the remaining contracts.
  - `const_open_gate()` returns a gate that is always fully open.
- `asyncinfer.merge`: `new_random_robin_policy()` returns a
  `RandomRobinPolicy`. Its `merge_request_channels(channels)` returns one
  queue of `EmbellishedRequest`:
  - Each request carries the URL `igw_base_url + path`.
  - Each request carries the headers `Content-Type: application/json` and
    `x-gateway-inference-objective`.
  - The queue ends with `None` once every input channel is closed.
- `asyncinfer.http_client`:
  - `HTTPInferenceClient` POSTs payloads through an `httpx.AsyncClient`.
  - A 429 response raises a rate-limit `ClientError`, which honours
    `Retry-After`.
  - Other 4xx responses raise an invalid-request error.
  - 5xx responses raise a server error.
  - Transport failures raise an unknown, fatal error.
  - `parse_retry_after(value)` accepts seconds or an HTTP date.
- `asyncinfer.worker`: `worker(characteristics, client, request_queue,
  retry_queue, result_queue, request_timeout)` processes embellished requests
  until it reads `None` or is cancelled:
  - Successes and fatal failures go to `result_queue`. An error result has
    the payload `{"error": ...}`.
  - Retryable failures go to `retry_queue` with a backoff in seconds.
  - Each call to the inference client is limited by `request_timeout` and by
    the request's deadline, whichever comes first.
  - `exp_backoff_duration()`, `retry_message()`, `validate_and_marshal()` and
    the `create_*_result_message()` helpers are also public.
- `asyncinfer.metric_sources` provides the metric sources:
  - `PromQLMetricSource` runs an instant query against a Prometheus HTTP API.
  - `CachedMetricSource` reuses a result, or an error, for a TTL.
  - `CascadeMetricSource` returns the first source that answers with data.
  - `build_promql()`, `saturation_promql_source()`,
    `promql_source_from_labels()`, `flow_control_queue_size_promql()` and
    `vllm_saturation_promql()` build the queries.
  - Failures raise `MetricSourceError`.
- `asyncinfer.gates` turns a metric into a budget:
  - `BinaryMetricDispatchGate` is open while the metric is zero and stays
    open when the metric is unavailable.
  - `MetricDispatchGate` returns `D - threshold` clamped to [0, 1]. It falls
    back to a fixed value when the source fails.
  - `saturation_dispatch_gate()` and `budget_dispatch_gate()` build
    `MetricDispatchGate`s.
- `asyncinfer.gate_factory`: `GateFactory` builds gates from a type name and
  string parameters.
- `asyncinfer.metrics` holds the process-wide `Counter`s and the message
  latency `Histogram`. It also provides `get_async_processor_collectors()`,
  `register()` (only the first call has any effect) and
  `registered_collectors()`.
- `asyncinfer.logsetup`: `init_logging(verbosity, development)` configures
  the `asyncinfer` logger. Development mode writes readable lines; otherwise
  each record is one JSON object. A higher verbosity shows more detail.

## Example

```python
import asyncio

import httpx

from asyncinfer.api import InternalRequest, InternalRouting, RequestMessage
from asyncinfer.http_client import HTTPInferenceClient
from asyncinfer.merge import new_random_robin_policy
from asyncinfer.pipeline import Characteristics, RequestChannel
from asyncinfer.worker import worker


async def main():
    channel = RequestChannel(
        igw_base_url="http://localhost:8000",
        inference_objective="default",
        request_path_url="/v1/completions",
    )
    merged = new_random_robin_policy().merge_request_channels([channel])
    retries, results = asyncio.Queue(), asyncio.Queue()

    async with httpx.AsyncClient() as http:
        client = HTTPInferenceClient(http)
        task = asyncio.create_task(
            worker(Characteristics(), client, merged, retries, results, 300.0)
        )
        request = RequestMessage(
            id="req-1", created=0, deadline=4_000_000_000,
            payload={"model": "m", "prompt": "hi"},
        )
        await channel.queue.put(InternalRequest(InternalRouting(), request))
        print(await results.get())
        channel.close()
        await task


asyncio.run(main())
```

## Gates

```python
from asyncinfer.gate_factory import GateFactory

factory = GateFactory("http://localhost:9090")
gate = factory.create_gate("prometheus-budget", {"pool": "my-pool", "baseline": "0.05"})
budget = gate.budget()  # a value in [0.0, 1.0]
```

### Gate types

- `constant`: always fully open.
- `prometheus-saturation`: takes `pool` (required), `threshold` (default 0.8)
  and `fallback` (default 0.0).
- `prometheus-budget`: reads the EPP queue size and falls back to vLLM
  running requests. It takes `pool` (required), `max_concurrency` (default
  100), `baseline` (default 0.05, must be in [0, 1)) and `fallback` (default
  0.0).
- `redis`: needs `address`. It takes an optional `budget_key`, which defaults
  to `dispatch-gate-budget`. This type works only if the factory was given
  `redis_connect` (address to client) and `redis_gate` (client and key to
  gate). The factory keeps one client per address.

Any other type, including the empty string, gives an always-open gate.
Invalid settings raise `GateConfigError`. Prometheus sources are cached for
`cache_ttl` seconds (default 5). A TTL of 0 turns caching off.

## What this package does not do

- It contains no message-queue flows. Nothing here reads requests from Redis
  or Pub/Sub, and nothing publishes results there. Callers supply those
  through the `Flow` contract and the queues.
- It has no Redis-backed gate of its own. The `redis` gate type uses the
  callables given to `GateFactory`.
- There is no command-line program.
- Nothing serves the metrics over HTTP. The counters and the histogram are
  plain in-process objects.
- There are no TLS settings beyond what you configure on the `httpx` client
  you pass in.

## Running the tests

```
pip install -e ".[test]"
pytest
```