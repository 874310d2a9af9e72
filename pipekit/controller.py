"""Handlers for the service's common REST endpoints."""

from __future__ import annotations

import dataclasses
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional

from . import constants
from .constants import (
    API_ADD_SECRET_ROUTE,
    API_CONFIG_ROUTE,
    API_PING_ROUTE,
    API_VERSION,
    API_VERSION_ROUTE,
    CONTENT_TYPE_HEADER,
    CONTENT_TYPE_JSON,
    CORRELATION_HEADER,
)
from .container import configuration_from, logging_client_from, secret_provider_from

STATUS_OK = 200
STATUS_CREATED = 201
STATUS_BAD_REQUEST = 400
STATUS_INTERNAL_SERVER_ERROR = 500


class _RequestInvalid(ValueError):
    """A request body that does not meet the contract."""


@dataclass
class Request:
    """An incoming HTTP request."""

    method: str = "GET"
    path: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> str:
        """Return a header's value, matching its name case-insensitively."""
        lowered = name.lower()
        return next((v for k, v in self.headers.items() if k.lower() == lowered), "")


@dataclass
class Response:
    """An outgoing HTTP response."""

    status_code: int = STATUS_OK
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def json(self) -> Any:
        return json.loads(self.body)


def _unix_date(now: datetime) -> str:
    return f"{now:%a %b} {now.day:2d} {now:%H:%M:%S} {now.tzname() or 'UTC'} {now.year}"


def _plain(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, Mapping):
        return dict(value)
    return value


def _parse_secret_request(body: bytes) -> dict[str, Any]:
    try:
        data = json.loads(body)
    except (ValueError, TypeError) as err:
        raise _RequestInvalid(str(err)) from err
    if not isinstance(data, dict):
        raise _RequestInvalid("request must be a JSON object")

    if not isinstance(data.get("apiVersion"), str) or not data["apiVersion"]:
        raise _RequestInvalid("apiVersion is required")
    request_id = data.get("requestId", "") or ""
    if not isinstance(request_id, str):
        raise _RequestInvalid("requestId must be a string")
    if request_id:
        try:
            uuid.UUID(request_id)
        except ValueError:
            raise _RequestInvalid(f"requestId '{request_id}' is not a valid UUID") from None

    name = data.get("secretName", "")
    if not isinstance(name, str) or not name.strip():
        raise _RequestInvalid("secretName is required")

    secret_data = data.get("secretData")
    if not isinstance(secret_data, list) or not secret_data:
        raise _RequestInvalid("secretData must hold at least one item")
    for item in secret_data:
        if not isinstance(item, dict):
            raise _RequestInvalid("secretData items must be objects")
        for part in ("key", "value"):
            if not isinstance(item.get(part), str) or not item[part]:
                raise _RequestInvalid(f"secretData item {part} is required")

    return {"requestId": request_id, "secretName": name, "secretData": secret_data}


class Controller:
    """Serves the ping, version, config and secret endpoints."""

    def __init__(self, dic: Any, service_name: str) -> None:
        self._secret_provider = secret_provider_from(dic.get)
        self._lc = logging_client_from(dic.get)
        self._config = configuration_from(dic.get)
        self._custom_config: Optional[Any] = None
        self.service_name = service_name

    def set_custom_config_info(self, custom_config: Any) -> None:
        """Include ``custom_config`` in the config endpoint's response."""
        self._custom_config = custom_config

    def ping(self, request: Request) -> Response:
        response = {
            "apiVersion": API_VERSION,
            "timestamp": _unix_date(datetime.now().astimezone()),
            "serviceName": self.service_name,
        }
        return self._send(request, API_PING_ROUTE, response, STATUS_OK)

    def version(self, request: Request) -> Response:
        response = {
            "apiVersion": API_VERSION,
            "version": constants.APPLICATION_VERSION,
            "sdk_version": constants.SDK_VERSION,
            "serviceName": self.service_name,
        }
        return self._send(request, API_VERSION_ROUTE, response, STATUS_OK)

    def config(self, request: Request) -> Response:
        full_config = self._config.to_dict()
        if self._custom_config is not None:
            full_config = {**full_config, "CustomConfiguration": _plain(self._custom_config)}
        response = {
            "apiVersion": API_VERSION,
            "config": full_config,
            "serviceName": self.service_name,
        }
        return self._send(request, API_CONFIG_ROUTE, response, STATUS_OK)

    def add_secret(self, request: Request) -> Response:
        """Store the secret in the request in the service's secret store."""
        try:
            secret_request = _parse_secret_request(request.body)
        except _RequestInvalid as err:
            return self._send_error(request, STATUS_BAD_REQUEST, "JSON decode failed", err, "")

        name = secret_request["secretName"].strip()
        secrets = {item["key"]: item["value"] for item in secret_request["secretData"]}
        request_id = secret_request["requestId"]

        try:
            self._secret_provider.store_secret(name, secrets)
        except Exception as err:  # noqa: BLE001 - any store failure is reported
            return self._send_error(
                request, STATUS_INTERNAL_SERVER_ERROR, "Storing secret failed", err, request_id
            )

        return self._send(
            request, API_ADD_SECRET_ROUTE, self._base_response(request_id, "", STATUS_CREATED),
            STATUS_CREATED,
        )

    @staticmethod
    def _base_response(request_id: str, message: str, status_code: int) -> dict[str, Any]:
        out: dict[str, Any] = {"apiVersion": API_VERSION}
        if request_id:
            out["requestId"] = request_id
        if message:
            out["message"] = message
        out["statusCode"] = status_code
        return out

    def _send_error(
        self, request: Request, status: int, message: str, err: BaseException, request_id: str
    ) -> Response:
        self._lc.error("%s: %s", message, err)
        return self._send(
            request, API_ADD_SECRET_ROUTE, self._base_response(request_id, message, status), status
        )

    def _send(self, request: Request, api: str, response: Any, status: int) -> Response:
        correlation_id = request.header(CORRELATION_HEADER)
        headers = {CORRELATION_HEADER: correlation_id, CONTENT_TYPE_HEADER: CONTENT_TYPE_JSON}
        try:
            body = json.dumps(response).encode("utf-8")
        except (TypeError, ValueError) as err:
            self._lc.error(
                "Unable to marshal %s response: %s, correlation id=%s", api, err, correlation_id
            )
            return Response(STATUS_INTERNAL_SERVER_ERROR, headers, str(err).encode("utf-8"))
        return Response(status, headers, body)