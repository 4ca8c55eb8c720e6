"""Route and endpoint configuration, read from mappings, YAML or the environment."""

from __future__ import annotations

import dataclasses
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Mapping, Optional, Union

import yaml

from mq_bridge.traits import CommandHandler


class ConfigError(ValueError):
    """The configuration is malformed."""


_MISSING: Any = object()
_U64_MAX = (1 << 64) - 1
_I64_MIN = -(1 << 63)
_I64_MAX = (1 << 63) - 1


def _kind(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, Mapping):
        return "a map"
    if isinstance(value, (list, tuple)):
        return "a sequence"
    return type(value).__name__


def _as_str(value: Any, where: str) -> str:
    # Scalars are accepted for string fields, as values read from the
    # environment arrive already typed.
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    raise ConfigError(f"{where}: expected a string, got {_kind(value)}")


def _as_bool(value: Any, where: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"{where}: expected a boolean, got {_kind(value)}")


def _as_uint(maximum: int) -> Callable[[Any, str], int]:
    def convert(value: Any, where: str) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{where}: expected an unsigned integer, got {_kind(value)}")
        if not 0 <= value <= maximum:
            raise ConfigError(f"{where}: {value} is out of range 0..={maximum}")
        return value

    return convert


_USIZE = _as_uint(_U64_MAX)
_U64 = _as_uint(_U64_MAX)
_U16 = _as_uint(0xFFFF)
_U8 = _as_uint(0xFF)


def _as_float(value: Any, where: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{where}: expected a number, got {_kind(value)}")
    return float(value)


def _as_pairs(value: Any, where: str) -> list[tuple[str, str]]:
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{where}: expected a sequence of pairs, got {_kind(value)}")
    pairs = []
    for position, item in enumerate(value):
        item_where = f"{where}[{position}]"
        if not isinstance(item, (list, tuple)) or len(item) != 2:
            raise ConfigError(f"{item_where}: expected a pair of strings")
        pairs.append((_as_str(item[0], item_where), _as_str(item[1], item_where)))
    return pairs


class _Reader:
    """Reads the fields of one map, rejecting fields nobody asked for."""

    def __init__(self, data: Any, what: str) -> None:
        if not isinstance(data, Mapping):
            raise ConfigError(f"{what}: expected a map, got {_kind(data)}")
        self._data = data
        self._what = what
        self._seen: set[Any] = set()

    def get(
        self,
        key: str,
        convert: Callable[[Any, str], Any],
        default: Any = _MISSING,
        *,
        optional: bool = False,
        factory: Optional[Callable[[], Any]] = None,
    ) -> Any:
        self._seen.add(key)
        if key not in self._data:
            if optional:
                return None
            if factory is not None:
                return factory()
            if default is _MISSING:
                raise ConfigError(f"{self._what}: missing field `{key}`")
            return default
        value = self._data[key]
        where = f"{self._what}.{key}"
        if value is None:
            if optional:
                return None
            raise ConfigError(f"{where}: invalid type: null")
        return convert(value, where)

    def finish(self) -> None:
        for key in self._data:
            if key not in self._seen:
                raise ConfigError(f"{self._what}: unknown field `{key}`")


def _plain(value: Any) -> Any:
    if isinstance(value, Endpoint):
        return value.to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _plain(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


class _Section:
    """A configuration section serialised as a map of its fields."""

    def _to_value(self) -> Any:
        return _plain(self)


# --- Common configuration ---


@dataclass
class TlsConfig:
    """TLS settings for secure connections."""

    required: bool = False
    ca_file: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    cert_password: Optional[str] = None
    accept_invalid_certs: bool = False

    def is_mtls_client_configured(self) -> bool:
        return self.required and self.cert_file is not None and self.key_file is not None

    def is_tls_server_configured(self) -> bool:
        return self.required and self.cert_file is not None and self.key_file is not None

    @classmethod
    def _parse(cls, value: Any, where: str) -> "TlsConfig":
        r = _Reader(value, where)
        tls = cls(
            required=r.get("required", _as_bool),
            ca_file=r.get("ca_file", _as_str, optional=True),
            cert_file=r.get("cert_file", _as_str, optional=True),
            key_file=r.get("key_file", _as_str, optional=True),
            cert_password=r.get("cert_password", _as_str, optional=True),
            accept_invalid_certs=r.get("accept_invalid_certs", _as_bool, False),
        )
        r.finish()
        return tls


# --- Endpoint types ---


@dataclass
class KafkaEndpoint(_Section):
    """A Kafka topic and the connection to its brokers."""

    key: ClassVar[str] = "kafka"

    brokers: str = ""
    topic: Optional[str] = None
    group_id: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    tls: TlsConfig = field(default_factory=TlsConfig)
    delayed_ack: bool = False
    producer_options: Optional[list[tuple[str, str]]] = None
    consumer_options: Optional[list[tuple[str, str]]] = None

    @classmethod
    def _parse(cls, value: Any, where: str) -> "KafkaEndpoint":
        r = _Reader(value, where)
        endpoint = cls(
            topic=r.get("topic", _as_str, optional=True),
            brokers=r.get("brokers", _as_str),
            group_id=r.get("group_id", _as_str, optional=True),
            username=r.get("username", _as_str, optional=True),
            password=r.get("password", _as_str, optional=True),
            tls=r.get("tls", TlsConfig._parse, factory=TlsConfig),
            delayed_ack=r.get("delayed_ack", _as_bool, False),
            producer_options=r.get("producer_options", _as_pairs, optional=True),
            consumer_options=r.get("consumer_options", _as_pairs, optional=True),
        )
        r.finish()
        return endpoint


@dataclass
class NatsEndpoint(_Section):
    """A NATS subject and the connection to its server."""

    key: ClassVar[str] = "nats"

    url: str = ""
    subject: Optional[str] = None
    stream: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    tls: TlsConfig = field(default_factory=TlsConfig)
    delayed_ack: bool = False
    no_jetstream: bool = False
    default_stream: Optional[str] = None
    prefetch_count: Optional[int] = None

    @classmethod
    def _parse(cls, value: Any, where: str) -> "NatsEndpoint":
        r = _Reader(value, where)
        endpoint = cls(
            subject=r.get("subject", _as_str, optional=True),
            stream=r.get("stream", _as_str, optional=True),
            url=r.get("url", _as_str),
            username=r.get("username", _as_str, optional=True),
            password=r.get("password", _as_str, optional=True),
            token=r.get("token", _as_str, optional=True),
            tls=r.get("tls", TlsConfig._parse, factory=TlsConfig),
            delayed_ack=r.get("delayed_ack", _as_bool, False),
            no_jetstream=r.get("no_jetstream", _as_bool, False),
            default_stream=r.get("default_stream", _as_str, optional=True),
            prefetch_count=r.get("prefetch_count", _USIZE, optional=True),
        )
        r.finish()
        return endpoint


@dataclass
class MemoryConfig(_Section):
    """An in-process channel identified by its topic."""

    key: ClassVar[str] = "memory"

    topic: str = ""
    capacity: Optional[int] = None

    @classmethod
    def _parse(cls, value: Any, where: str) -> "MemoryConfig":
        r = _Reader(value, where)
        endpoint = cls(
            topic=r.get("topic", _as_str),
            capacity=r.get("capacity", _USIZE, optional=True),
        )
        r.finish()
        return endpoint


@dataclass
class AmqpEndpoint(_Section):
    """An AMQP queue and the connection to its broker."""

    key: ClassVar[str] = "amqp"

    url: str = ""
    queue: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    exchange: Optional[str] = None
    prefetch_count: Optional[int] = None
    tls: TlsConfig = field(default_factory=TlsConfig)
    no_persistence: bool = False
    delayed_ack: bool = False

    @classmethod
    def _parse(cls, value: Any, where: str) -> "AmqpEndpoint":
        r = _Reader(value, where)
        endpoint = cls(
            queue=r.get("queue", _as_str, optional=True),
            url=r.get("url", _as_str),
            username=r.get("username", _as_str, optional=True),
            password=r.get("password", _as_str, optional=True),
            exchange=r.get("exchange", _as_str, optional=True),
            prefetch_count=r.get("prefetch_count", _U16, optional=True),
            tls=r.get("tls", TlsConfig._parse, factory=TlsConfig),
            no_persistence=r.get("no_persistence", _as_bool, False),
            delayed_ack=r.get("delayed_ack", _as_bool, False),
        )
        r.finish()
        return endpoint


@dataclass
class MongoDbEndpoint(_Section):
    """A MongoDB collection and the connection to its database."""

    key: ClassVar[str] = "mongodb"

    url: str = ""
    database: str = ""
    collection: Optional[str] = None
    polling_interval_ms: Optional[int] = None

    @classmethod
    def _parse(cls, value: Any, where: str) -> "MongoDbEndpoint":
        r = _Reader(value, where)
        endpoint = cls(
            collection=r.get("collection", _as_str, optional=True),
            url=r.get("url", _as_str),
            database=r.get("database", _as_str),
            polling_interval_ms=r.get("polling_interval_ms", _U64, optional=True),
        )
        r.finish()
        return endpoint


@dataclass
class MqttEndpoint(_Section):
    """An MQTT topic and the connection to its broker."""

    key: ClassVar[str] = "mqtt"

    url: str = ""
    topic: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    tls: TlsConfig = field(default_factory=TlsConfig)
    queue_capacity: Optional[int] = None
    qos: Optional[int] = None
    clean_session: bool = True
    keep_alive_seconds: Optional[int] = None

    @classmethod
    def _parse(cls, value: Any, where: str) -> "MqttEndpoint":
        r = _Reader(value, where)
        endpoint = cls(
            topic=r.get("topic", _as_str, optional=True),
            url=r.get("url", _as_str),
            username=r.get("username", _as_str, optional=True),
            password=r.get("password", _as_str, optional=True),
            tls=r.get("tls", TlsConfig._parse, factory=TlsConfig),
            queue_capacity=r.get("queue_capacity", _USIZE, optional=True),
            qos=r.get("qos", _U8, optional=True),
            clean_session=r.get("clean_session", _as_bool, True),
            keep_alive_seconds=r.get("keep_alive_seconds", _U64, optional=True),
        )
        r.finish()
        return endpoint


@dataclass
class HttpEndpoint(_Section):
    """An HTTP endpoint, optionally forwarding responses to another endpoint."""

    key: ClassVar[str] = "http"

    url: Optional[str] = None
    tls: TlsConfig = field(default_factory=TlsConfig)
    response_out: Optional["Endpoint"] = None

    @classmethod
    def _parse(cls, value: Any, where: str) -> "HttpEndpoint":
        r = _Reader(value, where)
        endpoint = cls(
            url=r.get("url", _as_str, optional=True),
            tls=r.get("tls", TlsConfig._parse, factory=TlsConfig),
            response_out=r.get("response_out", _parse_endpoint, optional=True),
        )
        r.finish()
        return endpoint


@dataclass
class FileEndpoint:
    """A file, given by its path."""

    key: ClassVar[str] = "file"

    path: str

    @classmethod
    def _parse(cls, value: Any, where: str) -> "FileEndpoint":
        return cls(_as_str(value, where))

    def _to_value(self) -> str:
        return self.path


@dataclass
class StaticEndpoint:
    """Fixed content that is produced or answered with."""

    key: ClassVar[str] = "static"

    content: str

    @classmethod
    def _parse(cls, value: Any, where: str) -> "StaticEndpoint":
        return cls(_as_str(value, where))

    def _to_value(self) -> str:
        return self.content


@dataclass
class FanoutEndpoint:
    """Several endpoints that each receive every message."""

    key: ClassVar[str] = "fanout"

    endpoints: list["Endpoint"] = field(default_factory=list)

    @classmethod
    def _parse(cls, value: Any, where: str) -> "FanoutEndpoint":
        if not isinstance(value, (list, tuple)):
            raise ConfigError(f"{where}: expected a sequence of endpoints, got {_kind(value)}")
        return cls([_parse_endpoint(item, f"{where}[{i}]") for i, item in enumerate(value)])

    def _to_value(self) -> list[dict[str, Any]]:
        return [endpoint.to_dict() for endpoint in self.endpoints]


EndpointType = Union[
    KafkaEndpoint,
    NatsEndpoint,
    FileEndpoint,
    StaticEndpoint,
    MemoryConfig,
    AmqpEndpoint,
    MongoDbEndpoint,
    MqttEndpoint,
    HttpEndpoint,
    FanoutEndpoint,
]

_ENDPOINT_TYPES: dict[str, Any] = {
    cls.key: cls
    for cls in (
        KafkaEndpoint,
        NatsEndpoint,
        FileEndpoint,
        StaticEndpoint,
        MemoryConfig,
        AmqpEndpoint,
        MongoDbEndpoint,
        MqttEndpoint,
        HttpEndpoint,
        FanoutEndpoint,
    )
}


# --- Middlewares ---


@dataclass
class DeduplicationMiddleware:
    """Drops messages whose id was already seen within the TTL."""

    key: ClassVar[str] = "deduplication"

    sled_path: str
    ttl_seconds: int

    @classmethod
    def _parse(cls, value: Any, where: str) -> "DeduplicationMiddleware":
        r = _Reader(value, where)
        middleware = cls(
            sled_path=r.get("sled_path", _as_str),
            ttl_seconds=r.get("ttl_seconds", _U64),
        )
        r.finish()
        return middleware


@dataclass
class MetricsMiddleware:
    """Records message counts and durations; its presence enables it."""

    key: ClassVar[str] = "metrics"

    @classmethod
    def _parse(cls, value: Any, where: str) -> "MetricsMiddleware":
        _Reader(value, where).finish()
        return cls()


@dataclass
class DeadLetterQueueMiddleware:
    """Sends messages that could not be published to another endpoint."""

    key: ClassVar[str] = "dlq"

    endpoint: "Endpoint"
    dlq_retry_attempts: int = 3
    dlq_initial_interval_ms: int = 100
    dlq_max_interval_ms: int = 5000
    dlq_multiplier: float = 2.0

    @classmethod
    def _parse(cls, value: Any, where: str) -> "DeadLetterQueueMiddleware":
        r = _Reader(value, where)
        middleware = cls(
            endpoint=r.get("endpoint", _parse_endpoint),
            dlq_retry_attempts=r.get("dlq_retry_attempts", _USIZE, 3),
            dlq_initial_interval_ms=r.get("dlq_initial_interval_ms", _U64, 100),
            dlq_max_interval_ms=r.get("dlq_max_interval_ms", _U64, 5000),
            dlq_multiplier=r.get("dlq_multiplier", _as_float, 2.0),
        )
        r.finish()
        return middleware


@dataclass
class RetryMiddleware:
    """Retries failed publishing with exponential backoff."""

    key: ClassVar[str] = "retry"

    max_attempts: int = 3
    initial_interval_ms: int = 100
    max_interval_ms: int = 5000
    multiplier: float = 2.0

    @classmethod
    def _parse(cls, value: Any, where: str) -> "RetryMiddleware":
        r = _Reader(value, where)
        middleware = cls(
            max_attempts=r.get("max_attempts", _USIZE, 3),
            initial_interval_ms=r.get("initial_interval_ms", _U64, 100),
            max_interval_ms=r.get("max_interval_ms", _U64, 5000),
            multiplier=r.get("multiplier", _as_float, 2.0),
        )
        r.finish()
        return middleware


@dataclass
class RandomPanicMiddleware:
    """Fails at random with the given probability, for fault testing."""

    key: ClassVar[str] = "random_panic"

    probability: float

    @classmethod
    def _parse(cls, value: Any, where: str) -> "RandomPanicMiddleware":
        r = _Reader(value, where)
        probability = r.get("probability", _as_float)
        if not 0.0 <= probability <= 1.0:
            raise ConfigError(f"{where}.probability: probability must be between 0.0 and 1.0")
        r.finish()
        return cls(probability)


Middleware = Union[
    DeduplicationMiddleware,
    MetricsMiddleware,
    DeadLetterQueueMiddleware,
    RetryMiddleware,
    RandomPanicMiddleware,
]

_MIDDLEWARE_TYPES: dict[str, Any] = {
    cls.key: cls
    for cls in (
        DeduplicationMiddleware,
        MetricsMiddleware,
        DeadLetterQueueMiddleware,
        RetryMiddleware,
        RandomPanicMiddleware,
    )
}


# --- Endpoints and routes ---


@dataclass
class Endpoint:
    """A source or sink of messages with the middlewares wrapped around it."""

    endpoint_type: EndpointType
    middlewares: list[Middleware] = field(default_factory=list)
    handler: Optional[CommandHandler] = field(default=None, repr=False, compare=False)

    @classmethod
    def new_memory(cls, topic: str, capacity: int) -> "Endpoint":
        return cls(MemoryConfig(topic=topic, capacity=capacity))

    def add_middleware(self, middleware: Middleware) -> "Endpoint":
        self.middlewares.append(middleware)
        return self

    def to_dict(self) -> dict[str, Any]:
        """The endpoint as a plain mapping; the handler is not included."""
        result: dict[str, Any] = {
            "middlewares": [{m.key: _plain(m)} for m in self.middlewares]
        }
        result[self.endpoint_type.key] = self.endpoint_type._to_value()
        return result


@dataclass
class Route:
    """A message processing route from an input to an output."""

    input: Endpoint
    output: Endpoint
    concurrency: int = 1

    def with_handler(self, handler: CommandHandler) -> "Route":
        self.output.handler = handler
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "concurrency": self.concurrency,
            "input": self.input.to_dict(),
            "output": self.output.to_dict(),
        }


Config = dict[str, Route]


def _index(key: Any) -> Optional[int]:
    if isinstance(key, bool):
        return None
    if isinstance(key, int):
        return key if key >= 0 else None
    if isinstance(key, str) and re.fullmatch(r"\+?[0-9]+", key):
        return int(key)
    return None


def _parse_middleware(item: Any, where: str) -> Middleware:
    if not isinstance(item, Mapping) or len(item) != 1:
        raise ConfigError(f"{where}: expected a map with exactly one middleware")
    ((name, value),) = item.items()
    cls = _MIDDLEWARE_TYPES.get(name)
    if cls is None:
        expected = ", ".join(f"`{key}`" for key in _MIDDLEWARE_TYPES)
        raise ConfigError(f"{where}: unknown variant `{name}`, expected one of {expected}")
    return cls._parse(value, f"{where}.{name}")


def _parse_middlewares(value: Any, where: str) -> list[Middleware]:
    if isinstance(value, (list, tuple)):
        items = list(value)
    elif isinstance(value, Mapping):
        # Maps with numeric keys ("0", "1", ...) come from the environment;
        # their order is given by the keys. Other keys are ignored.
        indexed = [(_index(key), item) for key, item in value.items()]
        items = [item for _, item in sorted(
            ((i, item) for i, item in indexed if i is not None), key=lambda pair: pair[0]
        )]
    else:
        raise ConfigError(f"{where}: Expected an array or object")
    return [_parse_middleware(item, f"{where}[{i}]") for i, item in enumerate(items)]


def parse_middlewares(value: Any) -> list[Middleware]:
    """Parse a list of middlewares, or a map of them keyed by position."""
    return _parse_middlewares(value, "middlewares")


def _parse_endpoint(data: Any, where: str) -> Endpoint:
    if not isinstance(data, Mapping):
        raise ConfigError(f"{where}: expected a map representing an endpoint, got {_kind(data)}")
    rest = {key: value for key, value in data.items() if key != "middlewares"}
    if len(rest) != 1:
        raise ConfigError(f"{where}: expected exactly one endpoint type, found {len(rest)}")
    ((name, value),) = rest.items()
    cls = _ENDPOINT_TYPES.get(name)
    if cls is None:
        expected = ", ".join(f"`{key}`" for key in _ENDPOINT_TYPES)
        raise ConfigError(f"{where}: unknown variant `{name}`, expected one of {expected}")
    endpoint_type = cls._parse(value, f"{where}.{name}")
    middlewares = (
        _parse_middlewares(data["middlewares"], f"{where}.middlewares")
        if "middlewares" in data
        else []
    )
    return Endpoint(endpoint_type=endpoint_type, middlewares=middlewares)


def parse_endpoint(data: Any) -> Endpoint:
    """Parse an endpoint mapping."""
    return _parse_endpoint(data, "endpoint")


def _parse_route(data: Any, where: str) -> Route:
    r = _Reader(data, where)
    route = Route(
        concurrency=r.get("concurrency", _USIZE, 1),
        input=r.get("input", _parse_endpoint),
        output=r.get("output", _parse_endpoint),
    )
    r.finish()
    return route


def parse_route(data: Any) -> Route:
    """Parse a route mapping."""
    return _parse_route(data, "route")


def parse_config(data: Any) -> Config:
    """Parse a mapping of route names to routes."""
    if not isinstance(data, Mapping):
        raise ConfigError(f"config: expected a map of routes, got {_kind(data)}")
    config: Config = {}
    for name, route in data.items():
        route_name = _as_str(name, "config")
        config[route_name] = _parse_route(route, route_name)
    return config


def parse_config_yaml(text: str) -> Config:
    """Parse routes from a YAML document; an empty document has no routes."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML: {exc}") from exc
    if data is None:
        return {}
    return parse_config(data)


_INT_RE = re.compile(r"[+-]?[0-9]+")
_FLOAT_RE = re.compile(
    r"[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?|[+-]?(?:inf|infinity|nan)",
    re.IGNORECASE,
)


def _env_value(raw: str) -> Any:
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if _INT_RE.fullmatch(raw):
        number = int(raw)
        if _I64_MIN <= number <= _I64_MAX:
            return number
    if _FLOAT_RE.fullmatch(raw):
        return float(raw)
    return raw


def config_from_env(
    environ: Optional[Mapping[str, str]] = None,
    prefix: str = "MQB",
    separator: str = "__",
) -> Config:
    """Build routes from variables such as MQB__ROUTE__INPUT__KAFKA__TOPIC.

    Names are matched case-insensitively and lower-cased; values that look
    like booleans or numbers are converted.
    """
    source = os.environ if environ is None else environ
    sep = separator.lower()
    head = f"{prefix}{separator}".lower() if prefix else ""
    tree: dict[str, Any] = {}
    for name, raw in source.items():
        lowered = name.lower()
        if not lowered.startswith(head):
            continue
        remainder = lowered[len(head):]
        parts = remainder.split(sep) if sep else [remainder]
        if not all(parts):
            continue
        node = tree
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[parts[-1]] = _env_value(raw)
    return parse_config(tree)