"""Prometheus text exposition for the cache server's in-process metrics."""

from __future__ import annotations

INF = float("inf")


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description

    def _header(self) -> list[str]:
        return [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]

    def samples(self) -> list[str]:  # pragma: no cover - interface
        raise NotImplementedError

    def render(self) -> str:
        return "\n".join(self._header() + self.samples()) + "\n"


class Counter(_Metric):
    kind = "counter"

    def __init__(self, name: str, description: str = "") -> None:
        super().__init__(name, description)
        self._value = 0.0

    def inc(self, amount: float = 1.0) -> None:
        self._value += amount

    def samples(self) -> list[str]:
        return [f"{self.name} {self._value}"]


class Gauge(_Metric):
    kind = "gauge"

    def __init__(self, name: str, description: str = "") -> None:
        super().__init__(name, description)
        self._value = 0.0

    def set(self, value: float) -> None:
        self._value = value

    def samples(self) -> list[str]:
        return [f"{self.name} {self._value}"]


class Histogram(_Metric):
    """Cumulative histogram; every observation also lands in the ``+Inf`` bucket."""

    kind = "histogram"

    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        super().__init__(name, description)
        self._bounds = sorted(buckets) + [INF]
        self._counts = [0] * len(self._bounds)
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        self._count += 1
        self._sum += value
        for position, bound in enumerate(self._bounds):
            if value <= bound:
                self._counts[position] += 1

    def samples(self) -> list[str]:
        lines = []
        for bound, count in zip(self._bounds, self._counts):
            label = "+Inf" if bound == INF else bound
            lines.append(f'{self.name}_bucket{{le="{label}"}} {count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return lines


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}

    def register(self, metric):
        self._metrics[metric.name] = metric
        return metric

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values()) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()
