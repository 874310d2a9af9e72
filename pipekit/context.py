"""The context handed to each function of a functions pipeline."""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

from .constants import PIPELINE_ID_KEY
from .container import (
    DEVICE_PROFILE_CLIENT_NAME,
    Container,
    client_from,
    logging_client_from,
    metrics_manager_from,
    secret_provider_from,
)

_PLACEHOLDER = re.compile(r"{[^}]*}")


class PlaceholderError(ValueError):
    """Raised when a placeholder has no value stored in the context."""


class AppFunctionContext:
    """Per-message state shared by the functions of a pipeline."""

    def __init__(
        self,
        correlation_id: str = "",
        dic: Optional[Container] = None,
        input_content_type: str = "",
    ) -> None:
        self.dic = dic if dic is not None else Container()
        self.correlation_id = correlation_id
        self.input_content_type = input_content_type
        self.response_data: Optional[bytes] = None
        self.retry_data: Optional[bytes] = None
        self.response_content_type = ""
        self._data: dict[str, str] = {}

    def clone(self) -> "AppFunctionContext":
        """Return a copy whose stored values can be changed independently."""
        copy = AppFunctionContext(self.correlation_id, self.dic, self.input_content_type)
        copy.response_data = self.response_data
        copy.retry_data = self.retry_data
        copy.response_content_type = self.response_content_type
        copy._data = dict(self._data)
        return copy

    @property
    def logging_client(self) -> logging.Logger:
        return logging_client_from(self.dic.get)

    @property
    def secret_provider(self) -> Any:
        return secret_provider_from(self.dic.get)

    @property
    def metrics_manager(self) -> Any:
        return metrics_manager_from(self.dic.get)

    def client(self, name: str) -> Any:
        """Return the service client registered under ``name``, or None."""
        return client_from(self.dic.get, name)

    def add_value(self, key: str, value: str) -> None:
        """Store a value, under a case-insensitive key, for later functions."""
        self._data[key.lower()] = value

    def remove_value(self, key: str) -> None:
        self._data.pop(key.lower(), None)

    def get_value(self, key: str) -> Optional[str]:
        """Return the value stored under ``key``, or None if there is none."""
        return self._data.get(key.lower())

    def get_all_values(self) -> dict[str, str]:
        """Return a copy of all stored values."""
        return dict(self._data)

    @property
    def pipeline_id(self) -> str:
        """The id of the pipeline that is executing, or an empty string."""
        return self.get_value(PIPELINE_ID_KEY) or ""

    def apply_values(self, format: str) -> str:
        """Replace each ``{key}`` placeholder with the value stored under key.

        Raises PlaceholderError if any placeholder has no stored value.
        """
        attempts: dict[str, bool] = {}
        result = format
        for placeholder in _PLACEHOLDER.findall(format):
            if placeholder in attempts:
                continue
            value = self.get_value(placeholder.lstrip("{").rstrip("}"))
            attempts[placeholder] = value is not None
            if value is not None:
                result = result.replace(placeholder, value)

        if not all(attempts.values()):
            raise PlaceholderError(
                "failed to replace all context placeholders in input "
                f"('{result}' after replacements)"
            )
        return result

    def get_device_resource(self, profile_name: str, resource_name: str) -> Any:
        """Fetch a device resource through the device profile client."""
        client = self.client(DEVICE_PROFILE_CLIENT_NAME)
        if client is None:
            raise LookupError(
                "DeviceProfileClient not initialized. "
                "Core Metadata is missing from clients configuration"
            )
        response = client.device_resource_by_profile_name_and_resource_name(
            profile_name, resource_name
        )
        return response.resource