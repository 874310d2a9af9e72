"""Storing data whose export failed, and retrying it later."""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from .container import configuration_from, logging_client_from, store_client_from
from .context import AppFunctionContext
from .pipeline import FunctionPipeline, MessageError

DEFAULT_MIN_RETRY_INTERVAL = 1.0
_POLL_INTERVAL = 0.1

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_COMPONENT = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(text: str) -> float:
    """Parse a duration such as ``"1m30s"`` or ``"250ms"`` into seconds."""
    s = text
    sign = 1.0
    if s and s[0] in "+-":
        sign = -1.0 if s[0] == "-" else 1.0
        s = s[1:]
    if s == "0":
        return 0.0
    if not s:
        raise ValueError(f"invalid duration {text!r}")
    total = 0.0
    pos = 0
    while pos < len(s):
        match = _COMPONENT.match(s, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        total += float(match[1]) * _UNITS[match[2]]
        pos = match.end()
    return sign * total


@dataclass
class StoredObject:
    """Data kept for a later export retry, with where in the pipeline to resume."""

    app_service_key: str
    payload: bytes
    pipeline_id: str
    pipeline_position: int
    version: str
    context_data: dict[str, str] = field(default_factory=dict)
    id: str = ""
    retry_count: int = 0
    correlation_id: str = ""


class StoreForward:
    """Stores failed exports and retries them through their pipeline."""

    def __init__(self, runtime: Any, dic: Any) -> None:
        self._runtime = runtime
        self._dic = dic

    def start_retry_loop(
        self,
        app_stop: threading.Event,
        enabled_stop: threading.Event,
        service_key: str,
    ) -> threading.Thread:
        """Start retrying stored data periodically until either event is set."""
        thread = threading.Thread(
            target=self._retry_loop,
            args=(app_stop, enabled_stop, service_key),
            name="store-and-forward-retry",
            daemon=True,
        )
        thread.start()
        return thread

    def _retry_loop(
        self, app_stop: threading.Event, enabled_stop: threading.Event, service_key: str
    ) -> None:
        config = configuration_from(self._dic.get)
        lc = logging_client_from(self._dic.get)
        settings = config.writable.store_and_forward

        try:
            interval = parse_duration(settings.retry_interval)
        except ValueError:
            lc.warning(
                "StoreAndForward RetryInterval failed to parse, defaulting to %ss",
                DEFAULT_MIN_RETRY_INTERVAL,
            )
            interval = DEFAULT_MIN_RETRY_INTERVAL
        else:
            if interval < DEFAULT_MIN_RETRY_INTERVAL:
                lc.warning(
                    "StoreAndForward RetryInterval value %ss is less than the allowed "
                    "minimum value, defaulting to %ss",
                    interval,
                    DEFAULT_MIN_RETRY_INTERVAL,
                )
                interval = DEFAULT_MIN_RETRY_INTERVAL

        if settings.max_retry_count < 0:
            lc.warning("StoreAndForward MaxRetryCount can not be less than 0, defaulting to 1")
            settings.max_retry_count = 1

        lc.info(
            "Starting StoreAndForward Retry Loop with %ss RetryInterval and %d max retries",
            interval,
            settings.max_retry_count,
        )

        while not self._wait_for_stop(interval, app_stop, enabled_stop):
            self.retry_stored_data(service_key)

        lc.info("Exiting StoreAndForward Retry Loop")

    @staticmethod
    def _wait_for_stop(timeout: float, *events: threading.Event) -> bool:
        """Wait up to ``timeout`` seconds; return True as soon as any event is set."""
        deadline = time.monotonic() + timeout
        while True:
            if any(event.is_set() for event in events):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            events[0].wait(min(remaining, _POLL_INTERVAL))

    def store_for_later_retry(
        self,
        payload: bytes,
        app_context: AppFunctionContext,
        pipeline: FunctionPipeline,
        pipeline_position: int,
    ) -> None:
        """Store data so the pipeline can be resumed from ``pipeline_position`` later."""
        item = StoredObject(
            app_service_key=self._runtime.service_key,
            payload=payload,
            pipeline_id=pipeline.id,
            pipeline_position=pipeline_position,
            version=pipeline.hash,
            context_data=app_context.get_all_values(),
            correlation_id=app_context.correlation_id,
        )
        lc = app_context.logging_client
        lc.debug(
            "Storing data for later retry for pipeline '%s' (correlation id=%s)",
            pipeline.id,
            app_context.correlation_id,
        )

        config = configuration_from(self._dic.get)
        if not config.writable.store_and_forward.enabled:
            lc.error(
                "Failed to store item for later retry for pipeline '%s': "
                "StoreAndForward not enabled",
                pipeline.id,
            )
            return

        store_client = store_client_from(self._dic.get)
        if store_client is None:
            lc.error(
                "Failed to store item for later retry for pipeline '%s': no store client",
                pipeline.id,
            )
            return

        try:
            store_client.store(item)
        except Exception as err:  # noqa: BLE001 - a store failure is only logged
            lc.error("Failed to store item for later retry for pipeline '%s': %s", pipeline.id, err)

    def retry_stored_data(self, service_key: str) -> None:
        """Retry every stored item of the service, then remove or update each."""
        lc = logging_client_from(self._dic.get)
        store_client = store_client_from(self._dic.get)
        if store_client is None:
            lc.error("Unable to load store and forward items: no store client")
            return

        try:
            items = list(store_client.retrieve_from_store(service_key) or [])
        except Exception as err:  # noqa: BLE001
            lc.error("Unable to load store and forward items from DB: %s", err)
            return

        lc.debug("%d stored data items found for retrying", len(items))
        if not items:
            return

        to_remove, to_update = self.process_retry_items(items)
        lc.debug(" %d stored data items will be removed post retry", len(to_remove))
        lc.debug(" %d stored data items will be update post retry", len(to_update))

        for item in to_remove:
            try:
                store_client.remove_from_store(item)
            except Exception as err:  # noqa: BLE001
                lc.error(
                    "Unable to remove stored data item for pipeline '%s' from DB, objectID=%s: %s",
                    item.pipeline_id,
                    item.id,
                    err,
                )

        for item in to_update:
            try:
                store_client.update(item)
            except Exception as err:  # noqa: BLE001
                lc.error(
                    "Unable to update stored data item for pipeline '%s' from DB, objectID=%s: %s",
                    item.pipeline_id,
                    item.id,
                    err,
                )

    def process_retry_items(
        self, items: list[StoredObject]
    ) -> tuple[list[StoredObject], list[StoredObject]]:
        """Retry items; return those to remove and those to update.

        An item is removed when its retry succeeds, its retries are used up,
        its pipeline is gone, or its pipeline has changed since it was stored.
        """
        lc = logging_client_from(self._dic.get)
        config = configuration_from(self._dic.get)
        max_retries = config.writable.store_and_forward.max_retry_count

        to_remove: list[StoredObject] = []
        to_update: list[StoredObject] = []

        for item in items:
            pipeline: Optional[FunctionPipeline] = self._runtime.get_pipeline_by_id(item.pipeline_id)
            if pipeline is None:
                lc.error(
                    "Stored data item's pipeline '%s' no longer exists. Removing item from DB",
                    item.pipeline_id,
                )
                to_remove.append(item)
                continue

            if item.version != pipeline.hash:
                lc.error(
                    "Stored data item's pipeline Version doesn't match '%s' pipeline's "
                    "Version. Removing item from DB",
                    item.pipeline_id,
                )
                to_remove.append(item)
                continue

            if self.retry_export_function(item, pipeline):
                lc.debug(
                    "Retry successful for pipeline '%s'. Removing item from DB (correlation id=%s)",
                    item.pipeline_id,
                    item.correlation_id,
                )
                to_remove.append(item)
                continue

            item.retry_count += 1
            if max_retries == 0 or item.retry_count < max_retries:
                lc.debug(
                    "Export retry failed for pipeline '%s'. retries=%d, Incrementing retry "
                    "count (correlation id=%s)",
                    item.pipeline_id,
                    item.retry_count,
                    item.correlation_id,
                )
                to_update.append(item)
                continue

            lc.debug(
                "Max retries exceeded for pipeline '%s'. retries=%d, Removing item from DB "
                "(correlation id=%s)",
                item.pipeline_id,
                item.retry_count,
                item.correlation_id,
            )
            to_remove.append(item)

        return to_remove, to_update

    def retry_export_function(self, item: StoredObject, pipeline: FunctionPipeline) -> bool:
        """Resume the pipeline with the stored payload; return True if it succeeded."""
        app_context = AppFunctionContext(item.correlation_id, self._dic, "")
        for key, value in (item.context_data or {}).items():
            app_context.add_value(key.lower(), value)

        app_context.logging_client.debug(
            "Retrying stored data for pipeline '%s' (correlation id=%s)",
            item.pipeline_id,
            app_context.correlation_id,
        )
        try:
            self._runtime.execute_pipeline(
                item.payload, app_context, pipeline, item.pipeline_position, True
            )
        except MessageError:
            return False
        return True