"""In-process Prometheus metrics served as text on ``GET /metrics``."""

from __future__ import annotations

from bisect import bisect_left
from contextlib import contextmanager
import time
from typing import Generic, Iterator, TypeVar

_DEFAULT_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


class CounterChild:
    __slots__ = ("value",)

    def __init__(self) -> None:
        self.value = 0.0

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        self.value += amount


class HistogramChild:
    __slots__ = ("buckets", "bucket_counts", "count", "total")

    def __init__(self, buckets: tuple[float, ...]) -> None:
        self.buckets = buckets
        self.bucket_counts = [0] * len(buckets)
        self.count = 0
        self.total = 0.0

    def observe(self, seconds: float) -> None:
        self.count += 1
        self.total += seconds
        idx = bisect_left(self.buckets, seconds)
        if idx < len(self.buckets):
            self.bucket_counts[idx] += 1

    @contextmanager
    def time(self) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - started)


ChildT = TypeVar("ChildT", CounterChild, HistogramChild)


class _Family(Generic[ChildT]):
    kind = "untyped"

    def __init__(self, name: str, description: str, label_names: tuple[str, ...]) -> None:
        self.name = name
        self.description = description
        self.label_names = label_names
        self._children: dict[tuple[str, ...], ChildT] = {}
        REGISTRY.append(self)

    def _new_child(self) -> ChildT:
        raise NotImplementedError

    def labels(self, **labels: str) -> ChildT:
        missing = set(self.label_names) - set(labels)
        if missing:
            raise ValueError(f"{self.name}: missing labels {sorted(missing)}")
        key = tuple(str(labels[name]) for name in self.label_names)
        child = self._children.get(key)
        if child is None:
            child = self._children[key] = self._new_child()
        return child

    def _selector(self, key: tuple[str, ...], extra: str = "") -> str:
        pairs = [f'{name}="{value}"' for name, value in zip(self.label_names, key)]
        if extra:
            pairs.append(extra)
        return "{" + ",".join(pairs) + "}" if pairs else ""

    def samples(self) -> Iterator[str]:
        raise NotImplementedError

    def render(self) -> list[str]:
        return [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}", *self.samples()]


class Counter(_Family[CounterChild]):
    kind = "counter"

    def _new_child(self) -> CounterChild:
        return CounterChild()

    def samples(self) -> Iterator[str]:
        for key, child in self._children.items():
            yield f"{self.name}{self._selector(key)} {child.value}"


class Histogram(_Family[HistogramChild]):
    kind = "histogram"

    def __init__(
        self,
        name: str,
        description: str,
        label_names: tuple[str, ...],
        buckets: tuple[float, ...] = _DEFAULT_BUCKETS,
    ) -> None:
        super().__init__(name, description, label_names)
        self.buckets = tuple(sorted(buckets))

    def _new_child(self) -> HistogramChild:
        return HistogramChild(self.buckets)

    def samples(self) -> Iterator[str]:
        for key, child in self._children.items():
            cumulative = 0
            for bound, hits in zip(child.buckets, child.bucket_counts):
                cumulative += hits
                le = f'le="{bound}"'
                yield f"{self.name}_bucket{self._selector(key, le)} {cumulative}"
            inf = 'le="+Inf"'
            yield f"{self.name}_bucket{self._selector(key, inf)} {child.count}"
            yield f"{self.name}_count{self._selector(key)} {child.count}"
            yield f"{self.name}_sum{self._selector(key)} {child.total}"


REGISTRY: list[_Family] = []

SWITCHES = Counter(
    "deployease_switches_total",
    "Traffic switch calls by outcome",
    ("outcome",),
)
DEPLOYMENTS = Counter(
    "deployease_deployments_total",
    "Deploy and rollback calls by branch and outcome",
    ("branch", "outcome"),
)
REMOTE_CALLS = Counter(
    "deployease_remote_calls_total",
    "Remote calls routed through the retry executor",
    ("operation_kind", "outcome"),
)
SWITCH_DURATION = Histogram(
    "deployease_switch_duration_seconds",
    "Duration of traffic switch calls",
    ("target",),
)


def render_metrics() -> str:
    lines: list[str] = []
    for family in REGISTRY:
        lines.extend(family.render())
    return "\n".join(lines) + "\n"
