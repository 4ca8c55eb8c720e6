# mq-bridge

`mq_bridge` moves messages from an input endpoint to an output endpoint.
A route reads batches from a consumer, hands them to a publisher and
commits them once they have been delivered. Both sides can be wrapped in
middlewares for retries, dead-letter queues, deduplication, metrics and
fault injection. Everything is built on `asyncio`.

## Concepts

- **`CanonicalMessage`** (`mq_bridge.outcomes`) – a payload of bytes, a
  numeric `message_id` (a time-ordered 128-bit id is generated when none
  is given) and a `metadata` dict.
- **`MessageConsumer`** (`mq_bridge.traits`) – a source.
  `receive_batch(max_messages)` returns a `ReceivedBatch` with the
  messages and an async commit callable; `receive()` returns a single
  `Received`.
- **`MessagePublisher`** (`mq_bridge.traits`) – a sink.
  `send_batch(messages)` returns a `SentBatch`: `SentBatch.ack()` when
  everything went through, otherwise `responses` and the `failed`
  messages. `send(message)` returns a `Sent`, whose `response` is set if
  one was produced.
- **Errors** (`mq_bridge.errors`) – publishers raise `RetryableError` for
  transient failures and `NonRetryableError` for failures specific to a
  message; both derive from `ProcessingError`. Consumers raise
  `ConsumerConnectionError` when a reconnect is needed and `EndOfStream`
  when the source is exhausted.

`send_batch_helper(publisher, messages, callback)` builds a batch send
out of single sends: a retryable error aborts the batch, non-retryable
errors mark single messages as failed. `into_commit_func` and
`into_batch_commit_func` adapt commit callables between the single and
batch forms.

## Configuration

`mq_bridge.models` reads a configuration that maps route names to
routes. Each route has an `input`, an `output` and an optional
`concurrency` (default 1). The key of an endpoint selects its kind:
`kafka`, `nats`, `file`, `static`, `memory`, `amqp`, `mongodb`, `mqtt`,
`http` or `fanout`.

```yaml
kafka_to_nats:
  concurrency: 10
  input:
    middlewares:
      - deduplication:
          sled_path: "/tmp/mq-bridge/dedup_db"
          ttl_seconds: 3600
      - metrics: {}
      - retry:
          max_attempts: 5
          initial_interval_ms: 200
      - dlq:
          endpoint:
            nats:
              subject: "dlq-subject"
              url: "nats://localhost:4222"
    kafka:
      topic: "input-topic"
      brokers: "localhost:9092"
      group_id: "my-consumer-group"
  output:
    middlewares:
      - metrics: {}
    nats:
      subject: "output-subject"
      url: "nats://localhost:4222"
```

```python
from mq_bridge.models import parse_config_yaml

with open("routes.yaml", encoding="utf-8") as fh:
    config = parse_config_yaml(fh.read())

route = config["kafka_to_nats"]
print(route.concurrency, len(route.input.middlewares))
```

`parse_config` takes an already decoded mapping; `parse_route`,
`parse_endpoint` and `parse_middlewares` parse the smaller pieces.
Missing or unknown fields, wrong types and out-of-range values (for
example a `random_panic` probability outside 0.0–1.0) raise
`ConfigError`. `Route.to_dict()` and `Endpoint.to_dict()` turn a
configuration back into plain mappings.

`config_from_env(environ=None, prefix="MQB", separator="__")` builds the
same configuration from environment variables. A variable such as
`MQB__KAFKA_TO_NATS__INPUT__KAFKA__TOPIC=input-topic` sets
`kafka_to_nats.input.kafka.topic`; names are matched case-insensitively
and lower-cased, and values that look like booleans or numbers are
converted. Middlewares are given by index, for example
`MQB__KAFKA_TO_NATS__INPUT__MIDDLEWARES__0__DLQ__ENDPOINT__NATS__URL=...`.

Endpoints can be built in code too:

```python
from mq_bridge.models import Endpoint, RetryMiddleware

endpoint = Endpoint.new_memory("orders", 100).add_middleware(
    RetryMiddleware(max_attempts=5)
)
```

## Middlewares

| Config key      | Classes                                       | Effect |
|-----------------|-----------------------------------------------|--------|
| `retry`         | `RetryPublisher`                              | Retries failed sends with exponential backoff (`max_attempts`, `initial_interval_ms`, `max_interval_ms`, `multiplier`). Batch sends resend only the failed messages. |
| `dlq`           | `DlqPublisher`                                | Sends messages the inner publisher rejects to another publisher, retrying with backoff; if that keeps failing a `RetryableError` naming both failures is raised. |
| `metrics`       | `MetricsConsumer`, `MetricsPublisher`         | Counts messages (`queue_messages_processed_total`) and records average durations (`queue_message_processing_duration_seconds`) in a `MetricsRegistry`, by default the in-process `mq_bridge.metrics.REGISTRY`. |
| `deduplication` | `DeduplicationConsumer`                       | Skips and commits messages whose id was already seen. Ids are kept in an SQLite file `dedup.sqlite3` inside the `sled_path` directory; entries older than `ttl_seconds` are removed now and then, or on `cleanup_expired()`. |
| `random_panic`  | `RandomPanicConsumer`, `RandomPanicPublisher` | Raises `RandomPanic` with the given probability, for fault testing. |

`mq_bridge.middleware` builds the chains from an `Endpoint`:

- `apply_middlewares_to_consumer(consumer, endpoint, route_name)` applies
  the list in reverse, so the first middleware listed is the outermost
  layer. `retry` and `dlq` are skipped on this side.
- `apply_middlewares_to_publisher(publisher, endpoint, route_name,
  publisher_factory=None)` wraps in the order listed, each middleware
  around the result of the previous one. `deduplication` is skipped. A
  `dlq` middleware needs `publisher_factory(route_name, endpoint)`, plain
  or async, to build the publisher it sends to.

## Running a route

`mq_bridge.route.RouteRunner(name, route, consumer_factory,
publisher_factory, reconnect_delay=5.0)` drives a route. The factories
are called with the route name and the endpoint and may be plain or
async.

- `start()` runs the route as a background task, reconnecting after a
  failure once `reconnect_delay` seconds have passed, and stops when the
  input reaches its end.
- `stop()` signals a graceful shutdown and waits for it; workers finish
  the batches already handed to them.
- `run_until_err(shutdown=None)` runs one connection cycle. It returns
  `True` when stopped by the `shutdown` event, `False` at the end of the
  input, and raises on errors.

With `concurrency` 1 batches of up to 128 messages are published one
after another; with a higher value a pool of workers publishes them in
parallel. A batch in which any message fails stops the cycle with an
error.

```python
import asyncio

from mq_bridge.models import parse_config_yaml
from mq_bridge.route import RouteRunner
from mq_bridge.static_endpoint import StaticEndpointPublisher, StaticRequestConsumer

config = parse_config_yaml("""
hello:
  input:
    static: "ping"
  output:
    static: "pong"
""")


async def main() -> None:
    runner = RouteRunner(
        "hello",
        config["hello"],
        lambda name, endpoint: StaticRequestConsumer(endpoint.endpoint_type.content),
        lambda name, endpoint: StaticEndpointPublisher(endpoint.endpoint_type.content),
    )
    runner.start()
    await asyncio.sleep(0.1)
    await runner.stop()


asyncio.run(main())
```

## Handlers and static endpoints

`EventHandlerPublisher(inner, handler)` passes every message to an
`EventHandler` or an async callable and acknowledges it once the handler
returns; the inner publisher is never called. `Route.with_handler(handler)`
attaches a `CommandHandler` to a route's output endpoint.

`StaticRequestConsumer(content)` yields a message with the given content
on every receive. `StaticEndpointPublisher(content)` answers every
message with the content encoded as a JSON string.

## What the package does not do

The package describes Kafka, NATS, AMQP, MongoDB, MQTT, HTTP, file,
memory and fanout endpoints in its configuration, but it holds no
consumers or publishers that connect to them; the only endpoints it
implements are the static ones. To run a route against a broker you
supply consumer and publisher factories of your own. There is no
command-line program and no metrics exporter: metrics stay in the
in-process registry.