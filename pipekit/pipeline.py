"""Functions pipelines, their metrics, topic matching and pipeline errors."""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional, Sequence

TOPIC_WILDCARD = "#"
TOPIC_SINGLE_LEVEL_WILDCARD = "+"
TOPIC_LEVEL_SEPARATOR = "/"
HASH_PREFIX = "Pipeline-functions: "

AppFunction = Callable[[Any, Any], "tuple[bool, Any]"]


class Counter:
    """A thread-safe counter metric."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._count = 0

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def inc(self, amount: int = 1) -> None:
        with self._lock:
            self._count += amount

    def clear(self) -> None:
        with self._lock:
            self._count = 0


class Timer:
    """A thread-safe metric recording durations in seconds."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._count = 0
        self._total = 0.0
        self._min: Optional[float] = None
        self._max: Optional[float] = None

    def update(self, seconds: float) -> None:
        """Record one duration."""
        with self._lock:
            self._count += 1
            self._total += seconds
            self._min = seconds if self._min is None else min(self._min, seconds)
            self._max = seconds if self._max is None else max(self._max, seconds)

    @contextmanager
    def time(self) -> Iterator[None]:
        """Record how long the enclosed block takes."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.update(time.perf_counter() - start)

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def total(self) -> float:
        with self._lock:
            return self._total

    @property
    def min(self) -> float:
        with self._lock:
            return self._min if self._min is not None else 0.0

    @property
    def max(self) -> float:
        with self._lock:
            return self._max if self._max is not None else 0.0

    @property
    def mean(self) -> float:
        with self._lock:
            return self._total / self._count if self._count else 0.0


@dataclass
class FunctionPipeline:
    """A named sequence of functions run for messages on matching topics."""

    id: str
    transforms: Optional[list] = None
    topics: list[str] = field(default_factory=list)
    hash: str = HASH_PREFIX
    messages_processed: Counter = field(default_factory=Counter)
    message_processing_time: Timer = field(default_factory=Timer)
    processing_errors: Counter = field(default_factory=Counter)


class MessageError(Exception):
    """A failure to process a message, with the status code to report."""

    def __init__(self, err: Any, error_code: int) -> None:
        super().__init__(str(err))
        self.err = err
        self.error_code = error_code


def _function_name(fn: Any) -> str:
    inner = getattr(fn, "func", None)
    if inner is not None and not hasattr(fn, "__qualname__"):
        return _function_name(inner)
    qualname = getattr(fn, "__qualname__", None)
    module = getattr(fn, "__module__", None)
    if qualname is None:
        qualname = type(fn).__qualname__
        module = type(fn).__module__
    return f"{module}.{qualname}" if module else qualname


def calculate_pipeline_hash(transforms: Optional[Sequence[AppFunction]]) -> str:
    """Return a string identifying the functions of a pipeline, in order."""
    return HASH_PREFIX + "".join(" " + _function_name(fn) for fn in transforms or ())


def new_function_pipeline(
    id: str, topics: Sequence[str], transforms: Optional[Sequence[AppFunction]]
) -> FunctionPipeline:
    """Create a pipeline with fresh metrics and a hash of its functions."""
    return FunctionPipeline(
        id=id,
        transforms=list(transforms) if transforms is not None else None,
        topics=list(topics),
        hash=calculate_pipeline_hash(transforms),
    )


def topic_matches(incoming_topic: str, pipeline_topics: Sequence[str]) -> bool:
    """Return True if the incoming topic matches any of the pipeline topics.

    ``#`` matches any remaining levels and ``+`` matches exactly one level.
    """
    for pipeline_topic in pipeline_topics:
        if pipeline_topic == TOPIC_WILDCARD:
            return True

        wildcards = pipeline_topic.count(TOPIC_WILDCARD) + pipeline_topic.count(
            TOPIC_SINGLE_LEVEL_WILDCARD
        )
        if wildcards == 0:
            if incoming_topic == pipeline_topic:
                return True
            continue

        pipeline_levels = pipeline_topic.split(TOPIC_LEVEL_SEPARATOR)
        incoming_levels = incoming_topic.split(TOPIC_LEVEL_SEPARATOR)
        if len(pipeline_levels) > len(incoming_levels):
            continue

        for index, level in enumerate(pipeline_levels):
            if level in (TOPIC_WILDCARD, TOPIC_SINGLE_LEVEL_WILDCARD):
                incoming_levels[index] = level

        if TOPIC_LEVEL_SEPARATOR.join(incoming_levels).startswith(pipeline_topic):
            return True
    return False