"""A lazy dependency container and helpers that fetch services from it."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Mapping, Optional, Protocol, runtime_checkable

from .config import Configuration

Get = Callable[[str], Any]
Constructor = Callable[[Get], Any]

CONFIGURATION_NAME = "Configuration"
STORE_CLIENT_NAME = "StoreClient"
LOGGING_CLIENT_NAME = "LoggingClient"
SECRET_PROVIDER_NAME = "SecretProvider"
METRICS_MANAGER_NAME = "MetricsManager"
EVENT_CLIENT_NAME = "EventClient"
COMMAND_CLIENT_NAME = "CommandClient"
DEVICE_SERVICE_CLIENT_NAME = "DeviceServiceClient"
DEVICE_PROFILE_CLIENT_NAME = "DeviceProfileClient"
DEVICE_CLIENT_NAME = "DeviceClient"
NOTIFICATION_CLIENT_NAME = "NotificationClient"
SUBSCRIPTION_CLIENT_NAME = "SubscriptionClient"

_default_logger = logging.getLogger("pipekit")


class Container:
    """Holds named constructors and builds each service on first use."""

    def __init__(self, constructors: Optional[Mapping[str, Constructor]] = None) -> None:
        self._lock = threading.RLock()
        self._constructors: dict[str, Constructor] = {}
        self._instances: dict[str, Any] = {}
        self.update(constructors or {})

    def get(self, name: str) -> Any:
        """Return the service registered under ``name``, or None if there is none."""
        with self._lock:
            if name in self._instances:
                return self._instances[name]
            constructor = self._constructors.get(name)
            if constructor is None:
                return None
            instance = constructor(self.get)
            if instance is not None:
                self._instances[name] = instance
            return instance

    def update(self, constructors: Mapping[str, Constructor]) -> None:
        """Add or replace constructors; replaced services are rebuilt on next use."""
        with self._lock:
            for name, constructor in constructors.items():
                self._constructors[name] = constructor
                self._instances.pop(name, None)


@runtime_checkable
class StoreClient(Protocol):
    """Persists data kept for a later export retry."""

    def store(self, obj: Any) -> str: ...

    def retrieve_from_store(self, app_service_key: str) -> list: ...

    def update(self, obj: Any) -> None: ...

    def remove_from_store(self, obj: Any) -> None: ...

    def disconnect(self) -> None: ...


@runtime_checkable
class SecretProvider(Protocol):
    """Stores and hands out service secrets."""

    def store_secret(self, secret_name: str, secrets: Mapping[str, str]) -> None: ...

    def get_secret(self, secret_name: str, *keys: str) -> dict[str, str]: ...

    def secrets_last_updated(self) -> Any: ...


@runtime_checkable
class MetricsManager(Protocol):
    """Registers metrics to be reported."""

    def register(self, name: str, metric: Any, tags: Mapping[str, str]) -> None: ...

    def unregister(self, name: str) -> None: ...


def configuration_from(get: Get) -> Configuration:
    """Return the service configuration; raise LookupError if none is registered."""
    item = get(CONFIGURATION_NAME)
    if not isinstance(item, Configuration):
        raise LookupError("no configuration registered in the container")
    return item


def store_client_from(get: Get) -> Optional[StoreClient]:
    """Return the store client, or None if there is none."""
    return get(STORE_CLIENT_NAME)


def logging_client_from(get: Get) -> logging.Logger:
    """Return the registered logger, or the package logger if none is registered."""
    item = get(LOGGING_CLIENT_NAME)
    return item if item is not None else _default_logger


def secret_provider_from(get: Get) -> Optional[SecretProvider]:
    return get(SECRET_PROVIDER_NAME)


def metrics_manager_from(get: Get) -> Optional[MetricsManager]:
    return get(METRICS_MANAGER_NAME)


def client_from(get: Get, name: str) -> Any:
    """Return a service client by name, or None if it is not configured."""
    return get(name)