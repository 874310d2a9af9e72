import dataclasses
import logging
import threading
import time
import uuid

import pytest

from pipekit.config import Configuration, StoreAndForwardInfo, WritableInfo
from pipekit.container import CONFIGURATION_NAME, STORE_CLIENT_NAME, Container
from pipekit.context import AppFunctionContext
from pipekit.pipeline import MessageError, new_function_pipeline
from pipekit.storeforward import StoredObject, StoreForward, parse_duration

SERVICE_KEY = "AppService-UnitTest"
PAYLOAD = b"This is a sample payload"
CONTEXT_DATA = {"x": "y"}


def passthru(ctx, data):
    return True, data


def target(ctx, data):
    return False, None


class FakeRuntime:
    def __init__(self):
        self.service_key = SERVICE_KEY
        self.pipelines = {}
        self.calls = []
        self.fail = False

    def add(self, pipeline_id):
        pipeline = new_function_pipeline(pipeline_id, ["#"], [passthru, passthru, target])
        self.pipelines[pipeline_id] = pipeline
        return pipeline

    def get_pipeline_by_id(self, pipeline_id):
        return self.pipelines.get(pipeline_id)

    def execute_pipeline(self, data, app_context, pipeline, start_position, is_retry):
        self.calls.append(
            {
                "data": data,
                "values": app_context.get_all_values(),
                "correlation_id": app_context.correlation_id,
                "start": start_position,
                "is_retry": is_retry,
                "pipeline_id": pipeline.id,
            }
        )
        if self.fail:
            raise MessageError(RuntimeError("I failed"), 422)


def _validate(id_required, obj):
    if id_required and not obj.id:
        raise ValueError("invalid contract, ID cannot be empty")
    if not obj.app_service_key:
        raise ValueError("invalid contract, app service key cannot be empty")
    if not obj.payload:
        raise ValueError("invalid contract, payload cannot be empty")
    if not obj.version:
        raise ValueError("invalid contract, version cannot be empty")


class MemoryStore:
    def __init__(self):
        self.objects = {}
        self.fail_retrieve = False
        self.fail_store = False

    def store(self, obj):
        if self.fail_store:
            raise RuntimeError("store down")
        _validate(False, obj)
        copy = dataclasses.replace(obj)
        if not copy.id:
            copy.id = str(uuid.uuid4())
        self.objects[copy.id] = copy
        return copy.id

    def retrieve_from_store(self, key):
        if self.fail_retrieve:
            raise RuntimeError("db down")
        return [dataclasses.replace(o) for o in self.objects.values() if o.app_service_key == key]

    def update(self, obj):
        _validate(True, obj)
        self.objects[obj.id] = dataclasses.replace(obj)

    def remove_from_store(self, obj):
        _validate(True, obj)
        self.objects.pop(obj.id, None)

    def disconnect(self):
        pass


def make_config(enabled=True, max_retry_count=10, retry_interval=""):
    return Configuration(
        writable=WritableInfo(
            log_level="DEBUG",
            store_and_forward=StoreAndForwardInfo(
                enabled=enabled, max_retry_count=max_retry_count, retry_interval=retry_interval
            ),
        )
    )


def make_dic(config, store=None):
    return Container(
        {
            CONFIGURATION_NAME: lambda get: config,
            STORE_CLIENT_NAME: lambda get: store,
        }
    )


@pytest.mark.parametrize("pipeline_id", ["default-pipeline", "per-topic"])
@pytest.mark.parametrize(
    "fail, retry_count, expected_retry_count, remove_count, bad_version, called",
    [
        (False, 0, 0, 1, False, True),
        (True, 4, 5, 0, False, True),
        (True, 9, 9, 1, False, True),
        (False, 0, 0, 1, True, False),
    ],
)
def test_process_retry_items(
    pipeline_id, fail, retry_count, expected_retry_count, remove_count, bad_version, called
):
    runtime = FakeRuntime()
    runtime.fail = fail
    pipeline = runtime.add(pipeline_id)
    sf = StoreForward(runtime, make_dic(make_config()))

    version = "some bad version" if bad_version else pipeline.hash
    item = StoredObject("dummy", PAYLOAD, pipeline.id, 2, version, dict(CONTEXT_DATA))
    item.retry_count = retry_count

    removes, updates = sf.process_retry_items([item])

    assert bool(runtime.calls) is called
    if called:
        call = runtime.calls[0]
        assert call["data"] == PAYLOAD
        assert call["values"] == CONTEXT_DATA
        assert call["start"] == 2
        assert call["is_retry"] is True
    if retry_count != expected_retry_count:
        assert len(updates) == 1
        assert updates[0].retry_count == expected_retry_count
    assert len(removes) == remove_count


def test_process_retry_items_missing_pipeline_is_removed():
    runtime = FakeRuntime()
    sf = StoreForward(runtime, make_dic(make_config()))
    item = StoredObject("dummy", PAYLOAD, "gone", 0, "v1")
    removes, updates = sf.process_retry_items([item])
    assert removes == [item]
    assert updates == []
    assert runtime.calls == []


def test_process_retry_items_unlimited_retries():
    runtime = FakeRuntime()
    runtime.fail = True
    pipeline = runtime.add("p")
    sf = StoreForward(runtime, make_dic(make_config(max_retry_count=0)))
    item = StoredObject("dummy", PAYLOAD, "p", 0, pipeline.hash)
    item.retry_count = 50
    removes, updates = sf.process_retry_items([item])
    assert removes == []
    assert [u.retry_count for u in updates] == [51]


@pytest.mark.parametrize("pipeline_id", ["default-pipeline", "per-topic"])
@pytest.mark.parametrize(
    "fail, retry_count, expected_retry_count, expected_object_count",
    [
        (True, 1, 2, 1),
        (True, 9, 0, 0),
        (False, 1, 0, 0),
    ],
)
def test_retry_stored_data(
    pipeline_id, fail, retry_count, expected_retry_count, expected_object_count
):
    store = MemoryStore()
    runtime = FakeRuntime()
    runtime.fail = fail
    pipeline = runtime.add(pipeline_id)
    sf = StoreForward(runtime, make_dic(make_config(), store))

    item = StoredObject(SERVICE_KEY, b"My Payload", pipeline.id, 1, pipeline.hash)
    item.correlation_id = "CorrelationID"
    item.retry_count = retry_count
    store.store(item)

    sf.retry_stored_data(SERVICE_KEY)

    objects = store.retrieve_from_store(SERVICE_KEY)
    assert len(objects) == expected_object_count
    if expected_object_count:
        assert objects[0].retry_count == expected_retry_count
        assert objects[0].app_service_key == SERVICE_KEY
        assert objects[0].correlation_id == "CorrelationID"
    assert runtime.calls[0]["correlation_id"] == "CorrelationID"


def test_retry_stored_data_ignores_other_services():
    store = MemoryStore()
    runtime = FakeRuntime()
    pipeline = runtime.add("p")
    sf = StoreForward(runtime, make_dic(make_config(), store))
    store.store(StoredObject("other-service", PAYLOAD, "p", 0, pipeline.hash))

    sf.retry_stored_data(SERVICE_KEY)

    assert runtime.calls == []
    assert len(store.objects) == 1


def test_retry_stored_data_logs_load_failure(caplog):
    store = MemoryStore()
    runtime = FakeRuntime()
    pipeline = runtime.add("p")
    store.store(StoredObject(SERVICE_KEY, PAYLOAD, "p", 0, pipeline.hash))
    store.fail_retrieve = True
    sf = StoreForward(runtime, make_dic(make_config(), store))

    with caplog.at_level(logging.ERROR, logger="pipekit"):
        sf.retry_stored_data(SERVICE_KEY)

    assert runtime.calls == []
    assert len(store.objects) == 1
    assert "Unable to load store and forward items" in caplog.text


def test_store_for_later_retry():
    store = MemoryStore()
    runtime = FakeRuntime()
    pipeline = runtime.add("p")
    dic = make_dic(make_config(), store)
    sf = StoreForward(runtime, dic)
    ctx = AppFunctionContext("corr-1", dic)
    ctx.add_value("Key", "v")

    sf.store_for_later_retry(b"data", ctx, pipeline, 2)

    stored = list(store.objects.values())
    assert len(stored) == 1
    obj = stored[0]
    assert obj.app_service_key == SERVICE_KEY
    assert obj.correlation_id == "corr-1"
    assert obj.pipeline_id == "p"
    assert obj.pipeline_position == 2
    assert obj.version == pipeline.hash
    assert obj.context_data == {"key": "v"}
    assert obj.payload == b"data"


def test_store_for_later_retry_when_disabled():
    store = MemoryStore()
    runtime = FakeRuntime()
    pipeline = runtime.add("p")
    dic = make_dic(make_config(enabled=False), store)
    sf = StoreForward(runtime, dic)

    sf.store_for_later_retry(b"data", AppFunctionContext("c", dic), pipeline, 1)

    assert store.objects == {}


def test_store_for_later_retry_store_failure_is_logged(caplog):
    store = MemoryStore()
    store.fail_store = True
    runtime = FakeRuntime()
    pipeline = runtime.add("p")
    dic = make_dic(make_config(), store)
    sf = StoreForward(runtime, dic)

    with caplog.at_level(logging.ERROR, logger="pipekit"):
        sf.store_for_later_retry(b"data", AppFunctionContext("c", dic), pipeline, 1)

    assert store.objects == {}
    assert "store down" in caplog.text


def test_retry_export_function_lowercases_context_keys():
    runtime = FakeRuntime()
    pipeline = runtime.add("p")
    sf = StoreForward(runtime, make_dic(make_config()))
    item = StoredObject(SERVICE_KEY, PAYLOAD, "p", 1, pipeline.hash, {"X": "y"})

    assert sf.retry_export_function(item, pipeline) is True
    assert runtime.calls[0]["values"] == {"x": "y"}

    runtime.fail = True
    assert sf.retry_export_function(item, pipeline) is False


def test_retry_loop_retries_until_stopped():
    store = MemoryStore()
    runtime = FakeRuntime()
    runtime.fail = True
    pipeline = runtime.add("p")
    sf = StoreForward(runtime, make_dic(make_config(retry_interval="1s"), store))
    object_id = store.store(StoredObject(SERVICE_KEY, PAYLOAD, "p", 0, pipeline.hash, retry_count=1))

    app_stop = threading.Event()
    enabled_stop = threading.Event()
    thread = sf.start_retry_loop(app_stop, enabled_stop, SERVICE_KEY)

    deadline = time.monotonic() + 5
    while time.monotonic() < deadline and store.objects[object_id].retry_count < 2:
        time.sleep(0.05)
    app_stop.set()
    thread.join(5)

    assert not thread.is_alive()
    assert store.objects[object_id].retry_count >= 2


def test_retry_loop_stops_at_once_and_fixes_negative_max_retries():
    store = MemoryStore()
    runtime = FakeRuntime()
    config = make_config(max_retry_count=-5, retry_interval="bogus")
    sf = StoreForward(runtime, make_dic(config, store))

    app_stop = threading.Event()
    enabled_stop = threading.Event()
    enabled_stop.set()
    thread = sf.start_retry_loop(app_stop, enabled_stop, SERVICE_KEY)
    thread.join(5)

    assert not thread.is_alive()
    assert runtime.calls == []
    assert config.writable.store_and_forward.max_retry_count == 1


@pytest.mark.parametrize(
    "text, expected",
    [
        ("1s", 1.0),
        ("0", 0.0),
        ("250ms", 0.25),
        ("1m30s", 90.0),
        ("1.5h", 5400.0),
        ("-2s", -2.0),
        ("10us", 1e-5),
        ("100ns", 1e-7),
    ],
)
def test_parse_duration(text, expected):
    assert parse_duration(text) == pytest.approx(expected)


@pytest.mark.parametrize("text", ["", "5", "abc", "1x", "s", "-", "1s2"])
def test_parse_duration_invalid(text):
    with pytest.raises(ValueError):
        parse_duration(text)