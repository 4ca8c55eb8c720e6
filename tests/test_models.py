import pytest

from mq_bridge.models import (
    AmqpEndpoint,
    ConfigError,
    DeadLetterQueueMiddleware,
    DeduplicationMiddleware,
    Endpoint,
    FanoutEndpoint,
    FileEndpoint,
    HttpEndpoint,
    KafkaEndpoint,
    MemoryConfig,
    MetricsMiddleware,
    MqttEndpoint,
    NatsEndpoint,
    RandomPanicMiddleware,
    RetryMiddleware,
    Route,
    StaticEndpoint,
    TlsConfig,
    config_from_env,
    parse_config,
    parse_config_yaml,
    parse_endpoint,
    parse_middlewares,
    parse_route,
)
from mq_bridge.outcomes import Handled
from mq_bridge.traits import CommandHandler

TEST_YAML = """
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
      - random_panic:
          probability: 0.1
      - dlq:
          endpoint:
            nats:
              subject: "dlq-subject"
              url: "nats://localhost:4222"
    kafka:
      topic: "input-topic"
      brokers: "localhost:9092"
      group_id: "my-consumer-group"
      tls:
        required: true
        ca_file: "/path_to_ca"
        cert_file: "/path_to_cert"
        key_file: "/path_to_key"
        cert_password: "password"
        accept_invalid_certs: true
  output:
    middlewares:
      - metrics: {}
    nats:
      subject: "output-subject"
      url: "nats://localhost:4222"
"""


def _assert_config_values(config):
    assert len(config) == 1
    route = config["kafka_to_nats"]
    assert route.concurrency == 10

    middlewares = route.input.middlewares
    assert len(middlewares) == 5
    dedup, metrics, retry, panic, dlq = middlewares
    assert dedup == DeduplicationMiddleware("/tmp/mq-bridge/dedup_db", 3600)
    assert metrics == MetricsMiddleware()
    assert retry.max_attempts == 5
    assert retry.initial_interval_ms == 200
    assert abs(panic.probability - 0.1) < 1e-12
    assert isinstance(panic, RandomPanicMiddleware)
    assert isinstance(dlq, DeadLetterQueueMiddleware)
    assert dlq.endpoint.middlewares == []
    assert dlq.endpoint.endpoint_type.subject == "dlq-subject"
    assert dlq.endpoint.endpoint_type.url == "nats://localhost:4222"

    kafka = route.input.endpoint_type
    assert isinstance(kafka, KafkaEndpoint)
    assert kafka.topic == "input-topic"
    assert kafka.brokers == "localhost:9092"
    assert kafka.group_id == "my-consumer-group"
    assert kafka.tls.required is True
    assert kafka.tls.ca_file == "/path_to_ca"
    assert kafka.tls.accept_invalid_certs is True

    output = route.output
    assert output.middlewares == [MetricsMiddleware()]
    nats = output.endpoint_type
    assert isinstance(nats, NatsEndpoint)
    assert nats.subject == "output-subject"
    assert nats.url == "nats://localhost:4222"


def test_deserialize_from_yaml():
    _assert_config_values(parse_config_yaml(TEST_YAML))


def test_deserialize_from_env():
    environ = {
        "MQB__KAFKA_TO_NATS__CONCURRENCY": "10",
        "MQB__KAFKA_TO_NATS__INPUT__KAFKA__TOPIC": "input-topic",
        "MQB__KAFKA_TO_NATS__INPUT__KAFKA__BROKERS": "localhost:9092",
        "MQB__KAFKA_TO_NATS__INPUT__KAFKA__GROUP_ID": "my-consumer-group",
        "MQB__KAFKA_TO_NATS__INPUT__KAFKA__TLS__REQUIRED": "true",
        "MQB__KAFKA_TO_NATS__INPUT__KAFKA__TLS__CA_FILE": "/path_to_ca",
        "MQB__KAFKA_TO_NATS__INPUT__KAFKA__TLS__ACCEPT_INVALID_CERTS": "true",
        "MQB__KAFKA_TO_NATS__OUTPUT__NATS__SUBJECT": "output-subject",
        "MQB__KAFKA_TO_NATS__OUTPUT__NATS__URL": "nats://localhost:4222",
        "MQB__KAFKA_TO_NATS__INPUT__MIDDLEWARES__0__DLQ__ENDPOINT__NATS__SUBJECT": "dlq-subject",
        "MQB__KAFKA_TO_NATS__INPUT__MIDDLEWARES__0__DLQ__ENDPOINT__NATS__URL": "nats://localhost:4222",
        "HOME": "/home/someone",
    }
    config = config_from_env(environ)
    route = config["kafka_to_nats"]
    assert route.concurrency == 10
    kafka = route.input.endpoint_type
    assert isinstance(kafka, KafkaEndpoint)
    assert kafka.topic == "input-topic"
    assert kafka.tls.required is True
    assert len(route.input.middlewares) == 1
    assert isinstance(route.input.middlewares[0], DeadLetterQueueMiddleware)
    assert route.input.middlewares[0].endpoint.endpoint_type.subject == "dlq-subject"
    assert list(config) == ["kafka_to_nats"]


def test_env_with_custom_prefix_and_separator():
    environ = {
        "app_r_input_static": "hello",
        "APP_R_OUTPUT_MEMORY_TOPIC": "out",
        "APP_R_OUTPUT_MEMORY_CAPACITY": "5",
    }
    config = config_from_env(environ, prefix="APP", separator="_")
    route = config["r"]
    assert route.input.endpoint_type == StaticEndpoint("hello")
    assert route.output.endpoint_type == MemoryConfig(topic="out", capacity=5)


def test_deserialize_fanout_yaml():
    yaml_text = """
fanout_route:
  input:
    memory:
      topic: "input"
  output:
    fanout:
      - memory:
          topic: "out1"
      - memory:
          topic: "out2"
"""
    route = parse_config_yaml(yaml_text)["fanout_route"]
    fanout = route.output.endpoint_type
    assert isinstance(fanout, FanoutEndpoint)
    assert len(fanout.endpoints) == 2
    assert fanout.endpoints[0].endpoint_type == MemoryConfig(topic="out1")
    assert fanout.endpoints[1].endpoint_type == MemoryConfig(topic="out2")


def test_static_config_yaml():
    yaml_text = """
test_route:
  input:
    static: "static_input_value"
  output:
    static: "static_output_value"
"""
    route = parse_config_yaml(yaml_text)["test_route"]
    assert route.input.endpoint_type == StaticEndpoint("static_input_value")
    assert route.output.endpoint_type == StaticEndpoint("static_output_value")


def test_defaults():
    route = parse_route(
        {
            "input": {"mqtt": {"url": "mqtt://localhost:1883"}},
            "output": {
                "middlewares": [{"retry": {}}, {"dlq": {"endpoint": {"file": "/tmp/dlq"}}}],
                "amqp": {"url": "amqp://localhost"},
            },
        }
    )
    assert route.concurrency == 1
    mqtt = route.input.endpoint_type
    assert mqtt.clean_session is True
    assert mqtt.tls == TlsConfig()
    retry, dlq = route.output.middlewares
    assert retry == RetryMiddleware(3, 100, 5000, 2.0)
    assert (dlq.dlq_retry_attempts, dlq.dlq_initial_interval_ms) == (3, 100)
    assert (dlq.dlq_max_interval_ms, dlq.dlq_multiplier) == (5000, 2.0)
    assert dlq.endpoint.endpoint_type == FileEndpoint("/tmp/dlq")
    assert route.output.endpoint_type == AmqpEndpoint(url="amqp://localhost")


def test_middlewares_from_map_are_sorted_by_index():
    result = parse_middlewares(
        {"1": {"metrics": {}}, "0": {"retry": {"max_attempts": 7}}, "name": {"metrics": {}}}
    )
    assert result == [RetryMiddleware(max_attempts=7), MetricsMiddleware()]


def test_middlewares_must_be_list_or_map():
    with pytest.raises(ConfigError, match="Expected an array or object"):
        parse_middlewares("metrics")


@pytest.mark.parametrize(
    "data",
    [
        {"input": {"static": "a"}, "output": {"static": "b"}, "extra": 1},
        {"input": {"static": "a"}},
        {"input": {"static": "a", "file": "x"}, "output": {"static": "b"}},
        {"input": {"unknown": {}}, "output": {"static": "b"}},
        {"input": {"nats": {"url": "nats://localhost", "bogus": 1}}, "output": {"static": "b"}},
        {"input": {"kafka": {"brokers": "b", "tls": {"ca_file": "x"}}}, "output": {"static": "b"}},
        {"input": {"amqp": {"url": "u", "prefetch_count": 70000}}, "output": {"static": "b"}},
        {"input": {"static": "a"}, "output": {"static": "b"}, "concurrency": -1},
        {"input": {"static": "a", "middlewares": [{"random_panic": {"probability": 1.5}}]},
         "output": {"static": "b"}},
        {"input": {"static": "a", "middlewares": [{"nope": {}}]}, "output": {"static": "b"}},
    ],
)
def test_invalid_routes_raise(data):
    with pytest.raises(ConfigError):
        parse_route(data)


def test_parse_config_requires_mapping():
    with pytest.raises(ConfigError):
        parse_config([1, 2])


def test_invalid_yaml_raises():
    with pytest.raises(ConfigError):
        parse_config_yaml("a: [unclosed")


def test_empty_yaml_has_no_routes():
    assert parse_config_yaml("") == {}


def test_producer_options_are_pairs():
    endpoint = parse_endpoint(
        {"kafka": {"brokers": "b", "producer_options": [["acks", "all"], ["linger.ms", "5"]]}}
    )
    assert endpoint.endpoint_type.producer_options == [("acks", "all"), ("linger.ms", "5")]


def test_tls_checks():
    assert TlsConfig(required=True, cert_file="c", key_file="k").is_mtls_client_configured()
    assert not TlsConfig(required=False, cert_file="c", key_file="k").is_mtls_client_configured()
    assert not TlsConfig(required=True, cert_file="c").is_tls_server_configured()
    assert TlsConfig(required=True, cert_file="c", key_file="k").is_tls_server_configured()


def test_new_memory_and_add_middleware():
    endpoint = Endpoint.new_memory("topic-a", 4).add_middleware(MetricsMiddleware())
    assert endpoint.endpoint_type == MemoryConfig(topic="topic-a", capacity=4)
    assert endpoint.middlewares == [MetricsMiddleware()]
    assert endpoint.handler is None


class _EchoHandler(CommandHandler):
    async def handle(self, msg):
        return Handled(msg)


def test_with_handler_sets_output_handler():
    handler = _EchoHandler()
    route = Route(Endpoint.new_memory("in", 1), Endpoint.new_memory("out", 1))
    result = route.with_handler(handler)
    assert result.output.handler is handler
    assert result.input.handler is None


def test_endpoint_to_dict_for_string_types():
    assert Endpoint(StaticEndpoint("x")).to_dict() == {"middlewares": [], "static": "x"}
    assert Endpoint(FileEndpoint("/f"), [MetricsMiddleware()]).to_dict() == {
        "middlewares": [{"metrics": {}}],
        "file": "/f",
    }


def test_route_round_trip():
    route = parse_config_yaml(TEST_YAML)["kafka_to_nats"]
    assert parse_route(route.to_dict()) == route


def test_http_and_fanout_round_trip():
    route = Route(
        input=Endpoint(MqttEndpoint(url="mqtt://localhost", qos=1)),
        output=Endpoint(
            FanoutEndpoint(
                [
                    Endpoint(StaticEndpoint("s")),
                    Endpoint(
                        KafkaEndpoint(brokers="b", consumer_options=[("k", "v")])
                    ),
                ]
            )
        ),
        concurrency=3,
    )
    data = route.to_dict()
    assert data["concurrency"] == 3
    assert parse_route(data) == route
    http = Endpoint(
        HttpEndpoint(
            url="http://localhost:8080", response_out=Endpoint.new_memory("resp", 2)
        )
    )
    assert parse_endpoint(http.to_dict()) == http