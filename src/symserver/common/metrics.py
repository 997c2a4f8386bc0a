"""Process-local metrics rendered in the Prometheus text exposition format."""

from __future__ import annotations

import math
from typing import Callable, Dict


class Counter:
    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._value = 0.0

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        self._value += amount

    @property
    def value(self) -> float:
        return self._value

    def render(self) -> str:
        return f"# HELP {self.name} {self.description}\n# TYPE {self.name} counter\n{self.name} {self._value}\n"


class Gauge:
    """Gauge holding either a set value or the result of ``supplier`` at render time."""

    def __init__(self, name: str, description: str = "", supplier: Callable[[], float] | None = None) -> None:
        self.name = name
        self.description = description
        self._value = 0.0
        self._supplier = supplier

    def set(self, value: float) -> None:
        self._value = value

    def bind(self, supplier: Callable[[], float] | None) -> None:
        self._supplier = supplier

    @property
    def value(self) -> float:
        return float(self._supplier()) if self._supplier else self._value

    def render(self) -> str:
        return f"# HELP {self.name} {self.description}\n# TYPE {self.name} gauge\n{self.name} {self.value}\n"


class Histogram:
    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        self.name = name
        self.description = description
        self._buckets = sorted(buckets) + [math.inf]
        self._counts = [0] * len(self._buckets)
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        self._count += 1
        self._sum += value
        for index, bound in enumerate(self._buckets):
            if value <= bound:
                self._counts[index] += 1

    @property
    def count(self) -> int:
        return self._count

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} histogram"]
        for bound, count in zip(self._buckets, self._counts):
            label = "+Inf" if math.isinf(bound) else bound
            lines.append(f'{self.name}_bucket{{le="{label}"}} {count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, object] = {}

    def register(self, metric):
        # Re-registering a name returns the existing metric so module reloads stay idempotent.
        existing = self._metrics.get(metric.name)
        if existing is not None:
            return existing
        self._metrics[metric.name] = metric
        return metric

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values()) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()
