import threading
from collections import defaultdict
from typing import Protocol


class MetricsRecorder(Protocol):
    def incr(self, name: str, value: int = 1, **labels: str) -> None:
        ...

    def observe(self, name: str, value: float, **labels: str) -> None:
        ...


class NullMetrics:
    def incr(self, name: str, value: int = 1, **labels: str) -> None:
        return None

    def observe(self, name: str, value: float, **labels: str) -> None:
        return None


def _key(name: str, labels: dict[str, str]) -> tuple[str, tuple[tuple[str, str], ...]]:
    return name, tuple(sorted(labels.items()))


class InMemoryMetrics:
    def __init__(self) -> None:
        self._counters: dict[tuple, int] = defaultdict(int)
        self._observations: dict[tuple, list[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def incr(self, name: str, value: int = 1, **labels: str) -> None:
        with self._lock:
            self._counters[_key(name, labels)] += value

    def observe(self, name: str, value: float, **labels: str) -> None:
        with self._lock:
            self._observations[_key(name, labels)].append(value)

    def count(self, name: str, **labels: str) -> int:
        with self._lock:
            return self._counters.get(_key(name, labels), 0)

    def observations(self, name: str, **labels: str) -> list[float]:
        with self._lock:
            return list(self._observations.get(_key(name, labels), []))
