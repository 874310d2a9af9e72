"""The runtime that decodes messages and runs them through functions pipelines."""

from __future__ import annotations

import base64
import dataclasses
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from itertools import islice
from typing import Any, Mapping, Optional, Sequence

import cbor2

from .constants import (
    API_VERSION,
    CONTENT_TYPE_CBOR,
    CONTENT_TYPE_JSON,
    DEFAULT_PIPELINE_ID,
    DEVICE_NAME_KEY,
    PIPELINE_ID_KEY,
    PIPELINE_MESSAGE_PROCESSING_TIME_NAME,
    PIPELINE_MESSAGES_PROCESSED_NAME,
    PIPELINE_PROCESSING_ERRORS_NAME,
    PROFILE_NAME_KEY,
    RECEIVED_TOPIC_KEY,
    SOURCE_NAME_KEY,
    pipeline_metric_name,
)
from .container import Container, logging_client_from, metrics_manager_from
from .context import AppFunctionContext
from .pipeline import (
    TOPIC_WILDCARD,
    AppFunction,
    FunctionPipeline,
    MessageError,
    calculate_pipeline_hash,
    new_function_pipeline,
    topic_matches,
)
from .storeforward import StoreForward

STATUS_BAD_REQUEST = 400
STATUS_UNPROCESSABLE_ENTITY = 422
STATUS_INTERNAL_SERVER_ERROR = 500

VALUE_TYPE_BINARY = "Binary"
VALUE_TYPE_OBJECT = "Object"


def _mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValueError(f"{what} must be an object, got {type(data).__name__}")
    return data


def _text(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field '{key}' must be a string")
    return value


def _integer(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key, 0)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field '{key}' must be an integer")
    return value


def _tags(data: Mapping[str, Any]) -> dict[str, Any]:
    value = data.get("tags") or {}
    return dict(_mapping(value, "tags"))


@dataclass
class MessageEnvelope:
    """A message as received from a trigger."""

    correlation_id: str = ""
    payload: bytes = b""
    content_type: str = ""
    received_topic: str = ""


@dataclass
class Reading:
    """One value read from a device resource."""

    resource_name: str = ""
    value_type: str = ""
    value: str = ""
    device_name: str = ""
    profile_name: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    origin: int = field(default_factory=time.time_ns)
    units: str = ""
    binary_value: bytes = b""
    media_type: str = ""
    object_value: Any = None
    tags: dict[str, Any] = field(default_factory=dict)

    @property
    def _kind(self) -> str:
        return self.value_type.lower()

    def validate(self) -> None:
        """Raise ValueError if a required field is missing."""
        required = (
            ("deviceName", self.device_name),
            ("resourceName", self.resource_name),
            ("profileName", self.profile_name),
            ("valueType", self.value_type),
        )
        missing = [name for name, value in required if not value]
        if not self.origin:
            missing.append("origin")
        if missing:
            raise ValueError(f"reading is missing {', '.join(missing)}")
        if self._kind == VALUE_TYPE_BINARY.lower():
            if not self.binary_value:
                raise ValueError("binary reading requires binaryValue")
            if not self.media_type:
                raise ValueError("binary reading requires mediaType")
        elif self._kind == VALUE_TYPE_OBJECT.lower():
            if self.object_value is None:
                raise ValueError("object reading requires objectValue")
        elif self.value == "":
            raise ValueError("reading requires a value")

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "origin": self.origin,
            "deviceName": self.device_name,
            "resourceName": self.resource_name,
            "profileName": self.profile_name,
            "valueType": self.value_type,
        }
        if self.units:
            out["units"] = self.units
        if self._kind == VALUE_TYPE_BINARY.lower():
            out["binaryValue"] = base64.b64encode(self.binary_value).decode("ascii")
            out["mediaType"] = self.media_type
        elif self._kind == VALUE_TYPE_OBJECT.lower():
            out["objectValue"] = self.object_value
        else:
            out["value"] = self.value
        if self.tags:
            out["tags"] = dict(self.tags)
        return out

    @classmethod
    def from_dict(cls, data: Any) -> "Reading":
        data = _mapping(data, "reading")
        raw_binary = data.get("binaryValue") or b""
        if isinstance(raw_binary, str):
            binary = base64.b64decode(raw_binary, validate=True)
        elif isinstance(raw_binary, (bytes, bytearray)):
            binary = bytes(raw_binary)
        else:
            raise ValueError("field 'binaryValue' must be bytes or base64 text")
        return cls(
            resource_name=_text(data, "resourceName"),
            value_type=_text(data, "valueType"),
            value=_text(data, "value"),
            device_name=_text(data, "deviceName"),
            profile_name=_text(data, "profileName"),
            id=_text(data, "id"),
            origin=_integer(data, "origin"),
            units=_text(data, "units"),
            binary_value=binary,
            media_type=_text(data, "mediaType"),
            object_value=data.get("objectValue"),
            tags=_tags(data),
        )


@dataclass
class Event:
    """A set of readings taken from one device source."""

    profile_name: str = ""
    device_name: str = ""
    source_name: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    origin: int = field(default_factory=time.time_ns)
    readings: list[Reading] = field(default_factory=list)
    tags: dict[str, Any] = field(default_factory=dict)
    api_version: str = API_VERSION

    def validate(self) -> None:
        """Raise ValueError if the event is not a valid event."""
        try:
            uuid.UUID(self.id)
        except (ValueError, TypeError, AttributeError):
            raise ValueError(f"event id '{self.id}' is not a valid UUID") from None
        required = (
            ("deviceName", self.device_name),
            ("profileName", self.profile_name),
            ("sourceName", self.source_name),
        )
        missing = [name for name, value in required if not value]
        if not self.origin:
            missing.append("origin")
        if missing:
            raise ValueError(f"event is missing {', '.join(missing)}")
        if not self.readings:
            raise ValueError("event must hold at least one reading")
        for reading in self.readings:
            reading.validate()

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "apiVersion": self.api_version,
            "id": self.id,
            "deviceName": self.device_name,
            "profileName": self.profile_name,
            "sourceName": self.source_name,
            "origin": self.origin,
            "readings": [reading.to_dict() for reading in self.readings],
        }
        if self.tags:
            out["tags"] = dict(self.tags)
        return out

    @classmethod
    def from_dict(cls, data: Any) -> "Event":
        data = _mapping(data, "event")
        readings = data.get("readings") or []
        if not isinstance(readings, list):
            raise ValueError("field 'readings' must be a list")
        return cls(
            profile_name=_text(data, "profileName"),
            device_name=_text(data, "deviceName"),
            source_name=_text(data, "sourceName"),
            id=_text(data, "id"),
            origin=_integer(data, "origin"),
            readings=[Reading.from_dict(item) for item in readings],
            tags=_tags(data),
            api_version=_text(data, "apiVersion"),
        )


def _event_from_add_event_request(data: Any) -> Event:
    request = _mapping(data, "AddEventRequest")
    if not _text(request, "apiVersion"):
        raise ValueError("AddEventRequest is missing apiVersion")
    if "event" not in request:
        raise ValueError("AddEventRequest is missing event")
    event = Event.from_dict(request["event"])
    event.validate()
    return event


class FunctionsPipelineRuntime:
    """Runs decoded messages through the configured functions pipelines."""

    def __init__(
        self, service_key: str, target_type: Optional[type] = None, dic: Optional[Container] = None
    ) -> None:
        self.service_key = service_key
        self.target_type = target_type
        self.dic = dic if dic is not None else Container()
        self._pipelines: dict[str, FunctionPipeline] = {}
        self._lock = threading.Lock()
        self.store_forward = StoreForward(self, self.dic)

    @property
    def _lc(self) -> logging.Logger:
        return logging_client_from(self.dic.get)

    def set_default_functions_pipeline(self, transforms: Sequence[AppFunction]) -> None:
        pipeline = self.get_default_pipeline()
        self.set_functions_pipeline_transforms(pipeline.id, transforms)

    def set_functions_pipeline_transforms(
        self, id: str, transforms: Optional[Sequence[AppFunction]]
    ) -> None:
        """Replace the functions of an existing pipeline; unknown ids are ignored."""
        pipeline = self._pipelines.get(id)
        if pipeline is None:
            self._lc.warning("Unable to set transforms for `%s` pipeline: Pipeline not found", id)
            return
        with self._lock:
            pipeline.transforms = list(transforms) if transforms is not None else None
            pipeline.hash = calculate_pipeline_hash(transforms)
        self._lc.info("Transforms set for `%s` pipeline", id)

    def set_functions_pipeline_topics(self, id: str, topics: Sequence[str]) -> None:
        """Replace the topics of an existing pipeline; unknown ids are ignored."""
        pipeline = self._pipelines.get(id)
        if pipeline is None:
            self._lc.warning("Unable to set topic for `%s` pipeline: Pipeline not found", id)
            return
        with self._lock:
            pipeline.topics = list(topics)
        self._lc.info("Topics '%s' set for `%s` pipeline", list(topics), id)

    def clear_all_functions_pipeline_transforms(self) -> None:
        with self._lock:
            for pipeline in self._pipelines.values():
                pipeline.transforms = None
                pipeline.hash = ""

    def remove_all_function_pipelines(self) -> None:
        manager = metrics_manager_from(self.dic.get)
        with self._lock:
            for id in list(self._pipelines):
                if manager is not None:
                    for template in self._metric_templates():
                        manager.unregister(pipeline_metric_name(template, id))
                del self._pipelines[id]

    def add_functions_pipeline(
        self, id: str, topics: Sequence[str], transforms: Optional[Sequence[AppFunction]]
    ) -> None:
        """Add a new pipeline; raise ValueError if the id is already in use."""
        if id in self._pipelines:
            raise ValueError(f"pipeline with Id='{id}' already exists")
        self._add_functions_pipeline(id, topics, transforms)

    @staticmethod
    def _metric_templates() -> tuple[str, str, str]:
        return (
            PIPELINE_MESSAGES_PROCESSED_NAME,
            PIPELINE_MESSAGE_PROCESSING_TIME_NAME,
            PIPELINE_PROCESSING_ERRORS_NAME,
        )

    def _add_functions_pipeline(
        self, id: str, topics: Sequence[str], transforms: Optional[Sequence[AppFunction]]
    ) -> FunctionPipeline:
        pipeline = new_function_pipeline(id, topics, transforms)
        with self._lock:
            self._pipelines[id] = pipeline

        manager = metrics_manager_from(self.dic.get)
        metrics = (
            pipeline.messages_processed,
            pipeline.message_processing_time,
            pipeline.processing_errors,
        )
        for template, metric in zip(self._metric_templates(), metrics):
            self._register_metric(manager, template, id, metric)
        return pipeline

    def _register_metric(self, manager: Any, template: str, pipeline_id: str, metric: Any) -> None:
        name = pipeline_metric_name(template, pipeline_id)
        if manager is None:
            self._lc.warning("Unable to register %s metric: no metrics manager", name)
            return
        try:
            manager.register(name, metric, {"pipeline": pipeline_id})
        except Exception as err:  # noqa: BLE001 - a metric failure is only logged
            self._lc.warning(
                "Unable to register %s metric. Metric will not be reported : %s", name, err
            )
        else:
            self._lc.info("%s metric has been registered and will be reported (if enabled)", name)

    def process_message(
        self, app_context: AppFunctionContext, target: Any, pipeline: FunctionPipeline
    ) -> None:
        """Run ``target`` through a copy of the pipeline; raise MessageError on failure."""
        if not pipeline.transforms:
            err = RuntimeError(
                f"no transforms configured for pipeline Id='{pipeline.id}'. "
                "Please check log for earlier errors loading pipeline"
            )
            self._log_error(err, app_context.correlation_id)
            raise MessageError(err, STATUS_INTERNAL_SERVER_ERROR)

        app_context.add_value(PIPELINE_ID_KEY, pipeline.id)
        self._lc.debug(
            "Pipeline '%s' processing message %d Transforms", pipeline.id, len(pipeline.transforms)
        )

        # Run a copy so the pipeline may be reconfigured while messages are in flight.
        with self._lock:
            exec_pipeline = dataclasses.replace(
                pipeline,
                transforms=list(pipeline.transforms),
                topics=list(pipeline.topics),
            )

        self.execute_pipeline(target, app_context, exec_pipeline, 0, False)

    def decode_message(self, app_context: AppFunctionContext, envelope: MessageEnvelope) -> Any:
        """Decode the envelope's payload into the target type.

        Raises MessageError with status 500 for a misconfigured target type and
        400 for a payload that cannot be decoded.
        """
        if self.target_type is None:
            self.target_type = Event

        target_type = self.target_type
        if not isinstance(target_type, type):
            err = TypeError("TargetType must be a type, not an instance of the target type")
            self._log_error(err, envelope.correlation_id)
            raise MessageError(err, STATUS_INTERNAL_SERVER_ERROR)

        if issubclass(target_type, (bytes, bytearray)):
            self._lc.debug("Expecting raw byte data")
            target: Any = envelope.payload
        elif issubclass(target_type, Event):
            self._lc.debug("Expecting an AddEventRequest or Event DTO")
            try:
                event = self._process_event_payload(envelope)
            except ValueError as cause:
                err = ValueError(f"unable to process payload {cause}")
                self._log_error(err, envelope.correlation_id)
                raise MessageError(err, STATUS_BAD_REQUEST) from cause

            if self._lc.isEnabledFor(logging.DEBUG):
                self._debug_log_event(event)

            app_context.add_value(DEVICE_NAME_KEY, event.device_name)
            app_context.add_value(PROFILE_NAME_KEY, event.profile_name)
            app_context.add_value(SOURCE_NAME_KEY, event.source_name)
            target = event
        else:
            type_name = f"{target_type.__module__}.{target_type.__qualname__}"
            self._lc.debug("Expecting a custom type of %s", type_name)
            try:
                target = self._build_custom(target_type, self._unmarshal_payload(envelope))
            except (ValueError, TypeError) as cause:
                err = ValueError(
                    f"unable to process custom object received of type '{type_name}': {cause}"
                )
                self._log_error(err, envelope.correlation_id)
                raise MessageError(err, STATUS_BAD_REQUEST) from cause

        app_context.correlation_id = envelope.correlation_id
        app_context.input_content_type = envelope.content_type
        app_context.add_value(RECEIVED_TOPIC_KEY, envelope.received_topic)
        return target

    @staticmethod
    def _build_custom(target_type: type, data: Any) -> Any:
        from_dict = getattr(target_type, "from_dict", None)
        if callable(from_dict):
            return from_dict(data)
        if isinstance(data, Mapping):
            return target_type(**data)
        return target_type(data)

    def execute_pipeline(
        self,
        target: Any,
        app_context: AppFunctionContext,
        pipeline: FunctionPipeline,
        start_position: int = 0,
        is_retry: bool = False,
    ) -> None:
        """Run the pipeline's functions from ``start_position``.

        A function that stops the pipeline with an exception as its result
        causes a MessageError with status 422; its retry data, if any, is
        stored for a later retry unless this run is itself a retry.
        """
        result: Any = None
        for index, function in islice(enumerate(pipeline.transforms or ()), start_position, None):
            app_context.retry_data = None
            continue_pipeline, result = function(
                app_context, target if result is None else result
            )
            if continue_pipeline:
                continue
            if isinstance(result, BaseException):
                app_context.logging_client.error(
                    "Pipeline (%s) function #%d resulted in error: %s (correlation id=%s)",
                    pipeline.id,
                    index,
                    result,
                    app_context.correlation_id,
                )
                if app_context.retry_data is not None and not is_retry:
                    self.store_forward.store_for_later_retry(
                        app_context.retry_data, app_context, pipeline, index
                    )
                pipeline.processing_errors.inc(1)
                raise MessageError(result, STATUS_UNPROCESSABLE_ENTITY) from result
            break

    def start_store_and_forward(
        self, app_stop: threading.Event, enabled_stop: threading.Event, service_key: str
    ) -> threading.Thread:
        """Start the store-and-forward retry loop in a background thread."""
        return self.store_forward.start_retry_loop(app_stop, enabled_stop, service_key)

    def _process_event_payload(self, envelope: MessageEnvelope) -> Event:
        data = self._unmarshal_payload(envelope)

        self._lc.debug("Attempting to process Payload as an AddEventRequest DTO")
        try:
            event = _event_from_add_event_request(data)
        except ValueError as request_error:
            self._lc.debug("Attempting to process Payload as an Event DTO")
            try:
                event = Event.from_dict(data)
                event.validate()
            except ValueError:
                raise request_error from None
            self._lc.debug("Using Event DTO received")
            return event

        self._lc.debug("Using Event DTO from AddEventRequest DTO")
        return event

    @staticmethod
    def _unmarshal_payload(envelope: MessageEnvelope) -> Any:
        content_type = envelope.content_type.split(";")[0].strip()
        try:
            if content_type == CONTENT_TYPE_JSON:
                return json.loads(envelope.payload)
            if content_type == CONTENT_TYPE_CBOR:
                return cbor2.loads(envelope.payload)
        except (ValueError, TypeError) as err:
            raise ValueError(str(err)) from err
        raise ValueError(f"unsupported content-type '{envelope.content_type}' recieved")

    def _debug_log_event(self, event: Event) -> None:
        lc = self._lc
        lc.debug(
            "Event Received with ProfileName=%s, DeviceName=%s and ReadingCount=%d",
            event.profile_name,
            event.device_name,
            len(event.readings),
        )
        if event.tags:
            lc.debug("Event tags are: [%s]", event.tags)
        else:
            lc.debug("Event has no tags")

        for number, reading in enumerate(event.readings, start=1):
            if reading.value_type.lower() == VALUE_TYPE_BINARY.lower():
                lc.debug(
                    "Reading #%d received with ResourceName=%s, ValueType=%s, MediaType=%s "
                    "and BinaryValue of size=`%d`",
                    number,
                    reading.resource_name,
                    reading.value_type,
                    reading.media_type,
                    len(reading.binary_value),
                )
            else:
                lc.debug(
                    "Reading #%d received with ResourceName=%s, ValueType=%s, Value=`%s`",
                    number,
                    reading.resource_name,
                    reading.value_type,
                    reading.value,
                )

    def _log_error(self, err: BaseException, correlation_id: str) -> None:
        self._lc.error("%s. correlation id=%s", err, correlation_id)

    def get_default_pipeline(self) -> FunctionPipeline:
        """Return the default pipeline, creating it without functions if absent."""
        pipeline = self._pipelines.get(DEFAULT_PIPELINE_ID)
        if pipeline is None:
            pipeline = self._add_functions_pipeline(DEFAULT_PIPELINE_ID, [TOPIC_WILDCARD], None)
        return pipeline

    def get_matching_pipelines(self, incoming_topic: str) -> list[FunctionPipeline]:
        """Return the pipelines whose topics match ``incoming_topic``."""
        with self._lock:
            pipelines = list(self._pipelines.values())
        return [p for p in pipelines if topic_matches(incoming_topic, p.topics)]

    def get_pipeline_by_id(self, id: str) -> Optional[FunctionPipeline]:
        return self._pipelines.get(id)