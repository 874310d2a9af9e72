# pipekit

`pipekit` is a library for application services that push incoming messages
through pipelines of functions. It provides:

- **Pipelines** (`pipekit.pipeline`, `pipekit.runtime`) – a default pipeline
  plus per-topic pipelines, matched against the incoming topic with `#`
  (any remaining levels) and `+` (exactly one level) wildcards by
  `topic_matches`. `FunctionsPipelineRuntime` adds, replaces, clears and
  removes pipelines and runs messages through them.
- **Message decoding** – `FunctionsPipelineRuntime.decode_message` decodes a
  `MessageEnvelope` whose content type is `application/json` or
  `application/cbor` into an `Event` (given either bare or wrapped in an
  AddEventRequest), into a custom type, or leaves the payload as raw bytes.
- **Function context** (`pipekit.context`) – `AppFunctionContext` holds
  per-message values under case-insensitive keys and substitutes
  `{placeholder}`s in strings.
- **Store and forward** (`pipekit.storeforward`) – `StoreForward` saves data
  whose export failed through a `StoreClient` and retries it on an interval
  until it succeeds, runs out of retries, or its pipeline changes.
- **Encrypt-then-MAC** (`pipekit.etm`) – AEAD_AES_256_CBC_HMAC_SHA_512
  sealing with `new_aes256_sha512`.
- **Service endpoints** (`pipekit.controller`) – `Controller` handlers for
  ping, version, config and add-secret requests.
- **Version check** (`pipekit.version`) – `VersionValidator` checks that Core
  Metadata reports the same major version as the SDK.
- **Configuration** (`pipekit.config`) – `Configuration` and its sections as
  dataclasses, with `to_dict` / `from_dict`.
- **Dependency container** (`pipekit.container`) – `Container` builds named
  services lazily on first use.

## Installation

```
pip install pipekit
```

## A pipeline in a few lines

```python
import json

from pipekit.container import Container
from pipekit.context import AppFunctionContext
from pipekit.runtime import Event, FunctionsPipelineRuntime, MessageEnvelope, Reading

dic = Container({})
runtime = FunctionsPipelineRuntime("my-service", None, dic)

def print_device(ctx, data):
    print(data.device_name)
    return True, data

runtime.set_default_functions_pipeline([print_device])

event = Event(
    profile_name="Thermostat",
    device_name="FamilyRoomThermostat",
    source_name="Temperature",
    readings=[
        Reading(
            resource_name="Temperature",
            value_type="Int64",
            value="72",
            device_name="FamilyRoomThermostat",
            profile_name="Thermostat",
        )
    ],
)
envelope = MessageEnvelope(
    correlation_id="123",
    payload=json.dumps({"apiVersion": "v3", "event": event.to_dict()}).encode(),
    content_type="application/json",
    received_topic="edgex/events/Thermostat/FamilyRoomThermostat/Temperature",
)

ctx = AppFunctionContext("123", dic, "")
target = runtime.decode_message(ctx, envelope)
for pipeline in runtime.get_matching_pipelines(envelope.received_topic):
    runtime.process_message(ctx.clone(), target, pipeline)
```

With no target type the runtime decodes to `Event`. Pass `bytes` to receive
the raw payload, or any other class to have the decoded data handed to its
`from_dict` class method if it has one, or to its constructor otherwise.

Decoding stores the device, profile and source names (for events) and the
received topic in the context. `decode_message` raises `MessageError` with
`error_code` 400 for a payload that cannot be decoded and 500 when the
target type is not a class.

A pipeline function takes `(context, data)` and returns `(continue, result)`;
each function receives the previous function's result. Returning `False`
stops the pipeline. If the result is then an exception,
`execute_pipeline` raises `MessageError` with `error_code` 422 and increments
the pipeline's `processing_errors` counter; if the function had set
`context.retry_data`, that data is stored for a later retry.
`process_message` raises `MessageError` with `error_code` 500 when the
pipeline has no functions.

## Context values

```python
ctx.add_value("DeviceName", "thermostat")
ctx.get_value("devicename")                # -> "thermostat"
ctx.apply_values("devices/{DeviceName}")   # -> "devices/thermostat"
```

A placeholder with no stored value raises `PlaceholderError`.
`get_device_resource` asks the device profile client registered in the
container and raises `LookupError` when there is none.

## The container

Services are registered as constructors that receive the container's `get`:

```python
import logging

from pipekit.config import Configuration, StoreAndForwardInfo, WritableInfo
from pipekit.container import CONFIGURATION_NAME, LOGGING_CLIENT_NAME, Container

config = Configuration(
    writable=WritableInfo(store_and_forward=StoreAndForwardInfo(enabled=True, max_retry_count=10))
)
dic = Container({
    CONFIGURATION_NAME: lambda get: config,
    LOGGING_CLIENT_NAME: lambda get: logging.getLogger("my-service"),
})
```

Other names are `STORE_CLIENT_NAME`, `SECRET_PROVIDER_NAME`,
`METRICS_MANAGER_NAME` and the client names such as
`DEVICE_PROFILE_CLIENT_NAME`. Without a registered logger, the `pipekit`
logger is used. When a `MetricsManager` is registered, each pipeline's
`Counter` and `Timer` metrics are registered with it.

## Store and forward

```python
import threading

app_stop = threading.Event()
enabled_stop = threading.Event()
thread = runtime.start_store_and_forward(app_stop, enabled_stop, "my-service")
```

The loop retries stored items every `Writable.StoreAndForward.RetryInterval`
(a duration such as `"30s"` or `"1m30s"`, at least one second) until either
event is set. A `MaxRetryCount` of 0 means retry without limit. Storing needs
store and forward to be enabled in the configuration and a `StoreClient`
registered in the container.

## Sealing data

```python
import os
from pipekit.etm import new_aes256_sha512

aead = new_aes256_sha512(os.urandom(64))
nonce = os.urandom(aead.nonce_size)
sealed = aead.seal(nonce, b"plain", b"associated")
assert aead.open(None, sealed, b"associated") == b"plain"
```

A key that is not 64 bytes raises `ValueError`; `open` raises
`AuthenticationError` when the message was tampered with.

## Endpoints

`Controller(dic, service_name)` needs a `Configuration` in the container. Its
`ping`, `version`, `config` and `add_secret` methods take a `Request` and
return a `Response` with a JSON body, echoing the `X-Correlation-ID` header.
`add_secret` stores the request's secret through the registered
`SecretProvider`, answering 201, 400 for an invalid request, or 500 when the
store fails.

## What pipekit does not do

- It runs no HTTP server; the controller's handlers must be wired to one.
- It has no message bus or MQTT trigger; messages must be handed to the
  runtime by the caller.
- It ships no `StoreClient` or `SecretProvider` implementation and no
  metrics reporting; these are protocols for the caller to supply.
- It has no built-in pipeline functions such as filters, compression or
  HTTP export.

## Running the tests

```
pip install -e ".[test]"
pytest
```