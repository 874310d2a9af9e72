import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from types import SimpleNamespace

import pytest

from pipekit import constants
from pipekit.config import Configuration, RegistryInfo, WritableInfo
from pipekit.constants import (
    API_ADD_SECRET_ROUTE,
    API_VERSION,
    CONTENT_TYPE_HEADER,
    CONTENT_TYPE_JSON,
    CORRELATION_HEADER,
)
from pipekit.container import configuration_from, logging_client_from, secret_provider_from
from pipekit.controller import Controller, Request

CORRELATION_ID = str(uuid.uuid4())
REQUEST_ID = "82eb2e26-0f24-48aa-ae4c-de9dac3fb9bc"


class FakeSecretProvider:
    def __init__(self):
        self.stored = []

    def store_secret(self, name, secrets):
        if name == "no":
            raise RuntimeError("invalid w/o Vault")
        self.stored.append((name, secrets))


def _name_of(resolver, sample):
    seen = []

    def get(name):
        seen.append(name)
        return sample

    resolver(get)
    return seen[0]


def _make_dic(config, provider=None):
    provider = provider if provider is not None else FakeSecretProvider()
    logger = logging.getLogger("pipekit-test-controller")
    services = {
        _name_of(configuration_from, config): config,
        _name_of(logging_client_from, logger): logger,
        _name_of(secret_provider_from, provider): provider,
    }
    return SimpleNamespace(get=services.get)


def _get(handler, path):
    response = handler(Request("GET", path, {CORRELATION_HEADER: CORRELATION_ID}))
    assert response.status_code == 200
    assert response.headers[CONTENT_TYPE_HEADER] == CONTENT_TYPE_JSON
    assert response.headers[CORRELATION_HEADER] == CORRELATION_ID
    assert response.body
    return response.json()


def _expected_config():
    return Configuration(
        writable=WritableInfo(log_level="DEBUG"),
        registry=RegistryInfo(host="localhost", port=8500, type="consul"),
    )


def test_ping_request():
    service_name = str(uuid.uuid4())
    target = Controller(_make_dic(Configuration()), service_name)
    actual = _get(target.ping, "/api/v3/ping")
    datetime.strptime(" ".join(actual["timestamp"].split()[:4] + actual["timestamp"].split()[-1:]),
                      "%a %b %d %H:%M:%S %Y")
    assert actual["apiVersion"] == API_VERSION
    assert actual["serviceName"] == service_name


def test_version_request(monkeypatch):
    service_name = str(uuid.uuid4())
    monkeypatch.setattr(constants, "APPLICATION_VERSION", "1.2.5")
    monkeypatch.setattr(constants, "SDK_VERSION", "1.3.1")
    target = Controller(_make_dic(Configuration()), service_name)
    actual = _get(target.version, "/api/v3/version")
    assert actual["apiVersion"] == API_VERSION
    assert actual["version"] == "1.2.5"
    assert actual["sdk_version"] == "1.3.1"
    assert actual["serviceName"] == service_name


def test_config_request():
    service_name = str(uuid.uuid4())
    expected = _expected_config()
    target = Controller(_make_dic(expected), service_name)
    actual = _get(target.config, "/api/v3/config")
    assert actual["apiVersion"] == API_VERSION
    assert actual["serviceName"] == service_name
    assert Configuration.from_dict(actual["config"]) == expected


@dataclass
class CustomConfig:
    sample: str


def test_config_request_custom_config():
    service_name = str(uuid.uuid4())
    expected = _expected_config()
    target = Controller(_make_dic(expected), service_name)
    target.set_custom_config_info(CustomConfig("test custom config"))
    actual = _get(target.config, "/api/v3/config")
    assert actual["serviceName"] == service_name
    assert actual["config"]["CustomConfiguration"] == {"sample": "test custom config"}
    assert Configuration.from_dict(actual["config"]) == expected


def _secret_request(**changes):
    request = {
        "apiVersion": API_VERSION,
        "requestId": REQUEST_ID,
        "secretName": "mqtt",
        "secretData": [
            {"key": "username", "value": "username"},
            {"key": "password", "value": "password"},
        ],
    }
    request.update(changes)
    return request


@pytest.mark.parametrize(
    "request_body, expected_request_id, error_expected, expected_status",
    [
        (_secret_request(), REQUEST_ID, False, 201),
        (_secret_request(requestId=""), "", False, 201),
        (_secret_request(secretName=""), "", True, 400),
        (_secret_request(requestId="bad requestId"), "", True, 400),
        (_secret_request(secretData=[]), "", True, 400),
        (_secret_request(secretData=[{"key": "", "value": "username"}]), "", True, 400),
        (_secret_request(secretData=[{"key": "username", "value": ""}]), "", True, 400),
        (_secret_request(secretName="no"), "", True, 500),
    ],
)
def test_add_secret_request(request_body, expected_request_id, error_expected, expected_status):
    provider = FakeSecretProvider()
    target = Controller(_make_dic(Configuration(), provider), str(uuid.uuid4()))
    request = Request(
        "POST",
        API_ADD_SECRET_ROUTE,
        {CORRELATION_HEADER: CORRELATION_ID},
        json.dumps(request_body).encode(),
    )
    response = target.add_secret(request)
    actual = response.json()

    assert response.status_code == expected_status
    assert actual["apiVersion"] == API_VERSION
    assert actual["statusCode"] == expected_status
    assert response.headers[CORRELATION_HEADER] == CORRELATION_ID
    if error_expected:
        assert actual.get("message")
    else:
        assert actual.get("requestId", "") == expected_request_id
        assert actual.get("message", "") == ""
        assert provider.stored == [("mqtt", {"username": "username", "password": "password"})]


def test_add_secret_invalid_json():
    provider = FakeSecretProvider()
    target = Controller(_make_dic(Configuration(), provider), "svc")
    response = target.add_secret(Request("POST", API_ADD_SECRET_ROUTE, {}, b"{not json"))
    assert response.status_code == 400
    assert response.json()["message"] == "JSON decode failed"
    assert provider.stored == []


def test_add_secret_trims_name():
    provider = FakeSecretProvider()
    target = Controller(_make_dic(Configuration(), provider), "svc")
    body = json.dumps(_secret_request(secretName="  mqtt  ")).encode()
    response = target.add_secret(Request("POST", API_ADD_SECRET_ROUTE, {}, body))
    assert response.status_code == 201
    assert provider.stored[0][0] == "mqtt"