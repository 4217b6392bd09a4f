"""Prometheus text-format metrics kept in process memory."""

from __future__ import annotations

import math
from typing import Callable, Dict


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description

    def _header(self) -> list[str]:
        return [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]

    def render(self) -> str:
        raise NotImplementedError


class Counter(_Metric):
    kind = "counter"

    def __init__(self, name: str, description: str = "") -> None:
        super().__init__(name, description)
        self._value = 0.0

    @property
    def value(self) -> float:
        return self._value

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only increase")
        self._value += amount

    def render(self) -> str:
        return "\n".join(self._header() + [f"{self.name} {self._value}"]) + "\n"


class Gauge(_Metric):
    kind = "gauge"

    def __init__(self, name: str, description: str = "", supplier: Callable[[], float] | None = None) -> None:
        super().__init__(name, description)
        self._value = 0.0
        self._supplier = supplier

    @property
    def value(self) -> float:
        return self._supplier() if self._supplier else self._value

    def set(self, value: float) -> None:
        self._value = value

    def inc(self, amount: float = 1.0) -> None:
        self._value += amount

    def dec(self, amount: float = 1.0) -> None:
        self._value -= amount

    def render(self) -> str:
        return "\n".join(self._header() + [f"{self.name} {self.value}"]) + "\n"


class Histogram(_Metric):
    kind = "histogram"

    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        super().__init__(name, description)
        self._bounds = sorted(buckets) + [math.inf]
        self._counts = [0] * len(self._bounds)
        self._sum = 0.0
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    def observe(self, value: float) -> None:
        self._count += 1
        self._sum += value
        for index, bound in enumerate(self._bounds):
            if value <= bound:
                self._counts[index] += 1
                break

    def render(self) -> str:
        lines = self._header()
        cumulative = 0
        for bound, count in zip(self._bounds, self._counts):
            cumulative += count
            label = "+Inf" if bound == math.inf else bound
            lines.append(f'{self.name}_bucket{{le="{label}"}} {cumulative}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, _Metric] = {}

    def register(self, metric):
        existing = self._metrics.get(metric.name)
        if existing is not None:
            return existing
        self._metrics[metric.name] = metric
        return metric

    def render(self) -> str:
        return "".join(metric.render() for metric in self._metrics.values())


GLOBAL_REGISTRY = MetricsRegistry()
