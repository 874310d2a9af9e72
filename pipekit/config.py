"""Service configuration structures and a lock-guarded boolean."""

import threading
import typing
from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any, Mapping


def _keyed(key: str, **kwargs: Any) -> Any:
    """Declare a field whose serialized name is not the PascalCase of its attribute."""
    return field(metadata={"key": key}, **kwargs)


def _key(f: Any) -> str:
    return f.metadata.get("key") or "".join(part.capitalize() for part in f.name.split("_"))


def _encode(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return {_key(f): _encode(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Mapping):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _decode(tp: Any, value: Any) -> Any:
    if value is None or tp is Any:
        return value
    origin = typing.get_origin(tp)
    if origin is dict:
        _, value_type = typing.get_args(tp)
        if not isinstance(value, Mapping):
            raise TypeError(f"expected a mapping, got {type(value).__name__}")
        return {str(k): _decode(value_type, v) for k, v in value.items()}
    if origin is list:
        (item_type,) = typing.get_args(tp)
        return [_decode(item_type, v) for v in value]
    if isinstance(tp, type) and is_dataclass(tp):
        return _from_mapping(tp, value)
    if tp is bool:
        return bool(value)
    if tp in (int, float, str):
        return tp(value)
    return value


def _from_mapping(cls: type, data: Any) -> Any:
    if not isinstance(data, Mapping):
        raise TypeError(f"expected a mapping for {cls.__name__}, got {type(data).__name__}")
    kwargs = {
        f.name: _decode(f.type, data[_key(f)])
        for f in fields(cls)
        if f.init and _key(f) in data
    }
    return cls(**kwargs)


class AtomicBool:
    """A boolean whose reads and writes are guarded by a lock."""

    def __init__(self, value: bool = False) -> None:
        self._lock = threading.Lock()
        self._value = bool(value)

    def get(self) -> bool:
        with self._lock:
            return self._value

    def set(self, value: bool) -> None:
        with self._lock:
            self._value = bool(value)

    def __bool__(self) -> bool:
        return self.get()


@dataclass
class ClientInfo:
    """Where a dependent service is reached."""

    host: str = ""
    port: int = 0
    protocol: str = ""

    def url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"


@dataclass
class RegistryInfo:
    host: str = ""
    port: int = 0
    type: str = ""


@dataclass
class ServiceInfo:
    host: str = ""
    port: int = 0
    server_bind_addr: str = ""
    startup_msg: str = ""
    max_result_count: int = 0
    max_request_size: int = 0
    request_timeout: str = ""
    health_check_interval: str = ""


@dataclass
class MessageBusInfo:
    disabled: bool = False
    type: str = ""
    protocol: str = ""
    host: str = ""
    port: int = 0
    auth_mode: str = ""
    secret_name: str = ""
    base_topic_prefix: str = ""
    optional: dict[str, str] = field(default_factory=dict)


@dataclass
class DatabaseInfo:
    type: str = ""
    host: str = ""
    port: int = 0
    timeout: str = ""


@dataclass
class TelemetryInfo:
    interval: str = ""
    metrics: dict[str, bool] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)


@dataclass
class BootstrapConfiguration:
    """The parts of the configuration the service start-up needs."""

    clients: dict[str, ClientInfo] = field(default_factory=dict)
    service: ServiceInfo = field(default_factory=ServiceInfo)
    registry: RegistryInfo = field(default_factory=RegistryInfo)
    message_bus: MessageBusInfo = field(default_factory=MessageBusInfo)


@dataclass
class TopicPipeline:
    """A pipeline that runs only for messages on matching topics."""

    id: str = ""
    topics: str = ""
    execution_order: str = ""


@dataclass
class PipelineFunction:
    """Configured parameters of a built-in pipeline function."""

    parameters: dict[str, str] = field(default_factory=dict)


@dataclass
class PipelineInfo:
    execution_order: str = ""
    per_topic_pipelines: dict[str, TopicPipeline] = field(default_factory=dict)
    target_type: str = ""
    functions: dict[str, PipelineFunction] = field(default_factory=dict)


@dataclass
class StoreAndForwardInfo:
    enabled: bool = False
    retry_interval: str = ""
    max_retry_count: int = 0


@dataclass
class WritableInfo:
    """Configuration that may change while the service runs."""

    log_level: str = ""
    pipeline: PipelineInfo = field(default_factory=PipelineInfo)
    store_and_forward: StoreAndForwardInfo = field(default_factory=StoreAndForwardInfo)
    insecure_secrets: dict[str, dict[str, Any]] = field(default_factory=dict)
    telemetry: TelemetryInfo = field(default_factory=TelemetryInfo)


@dataclass
class HttpConfig:
    protocol: str = ""
    secret_name: str = ""
    https_cert_name: str = _keyed("HTTPSCertName", default="")
    https_key_name: str = _keyed("HTTPSKeyName", default="")


@dataclass
class ExternalMqttConfig:
    url: str = ""
    client_id: str = ""
    connect_timeout: str = ""
    auto_reconnect: bool = False
    keep_alive: int = 0
    qos: int = _keyed("QoS", default=0)
    retain: bool = False
    skip_cert_verify: bool = False
    secret_name: str = ""
    auth_mode: str = ""
    retry_duration: int = 0
    retry_interval: int = 0


@dataclass
class TriggerInfo:
    type: str = ""
    subscribe_topics: str = ""
    publish_topic: str = ""
    external_mqtt: ExternalMqttConfig = field(default_factory=ExternalMqttConfig)


@dataclass
class Credentials:
    username: str = ""
    password: str = ""


@dataclass
class Configuration:
    """The whole configuration of an application service."""

    writable: WritableInfo = field(default_factory=WritableInfo)
    registry: RegistryInfo = field(default_factory=RegistryInfo)
    service: ServiceInfo = field(default_factory=ServiceInfo)
    http_server: HttpConfig = field(default_factory=HttpConfig)
    message_bus: MessageBusInfo = field(default_factory=MessageBusInfo)
    trigger: TriggerInfo = field(default_factory=TriggerInfo)
    application_settings: dict[str, str] = field(default_factory=dict)
    clients: dict[str, ClientInfo] = field(default_factory=dict)
    database: DatabaseInfo = field(default_factory=DatabaseInfo)

    def update_from_raw(self, raw: Any) -> bool:
        """Overwrite this configuration with ``raw`` if it is a Configuration."""
        if not isinstance(raw, Configuration):
            return False
        for f in fields(self):
            setattr(self, f.name, getattr(raw, f.name))
        return True

    def empty_writable(self) -> WritableInfo:
        return WritableInfo()

    def update_writable_from_raw(self, raw: Any) -> bool:
        """Replace the writable section with ``raw`` if it is a WritableInfo."""
        if not isinstance(raw, WritableInfo):
            return False
        self.writable = raw
        return True

    def get_bootstrap(self) -> BootstrapConfiguration:
        return BootstrapConfiguration(
            clients=self.clients,
            service=self.service,
            registry=self.registry,
            message_bus=self.message_bus,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the configuration as plain data keyed by the service's field names."""
        return _encode(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Configuration":
        """Build a configuration from data shaped like ``to_dict`` output; absent keys keep defaults."""
        return _from_mapping(cls, data)