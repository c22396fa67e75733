"""
In-process counters exported in the Prometheus text format.

Every metric in this service counts outcomes (transitions, webhook results,
reconciliation gaps, reward awards, notifications, HTTP requests), so the
registry only knows counters. Values live per process and reset on restart.
"""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple

LabelKey = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


class Counter:
    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None, help_text: str = ""):
        self.name = name
        self.label_names = tuple(label_names or ())
        self.help_text = help_text
        self._values: Dict[LabelKey, float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelKey:
        labels = labels or {}
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name}: unknown labels {sorted(unknown)}")
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        if amount < 0:
            raise ValueError(f"{self.name}: counters only go up")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def render(self) -> List[str]:
        lines = []
        if self.help_text:
            lines.append(f"# HELP {self.name} {self.help_text}")
        lines.append(f"# TYPE {self.name} counter")
        with self._lock:
            samples = sorted(self._values.items())
        for key, value in samples:
            if self.label_names:
                pairs = ",".join(f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, key))
                lines.append(f"{self.name}{{{pairs}}} {value}")
            else:
                lines.append(f"{self.name} {value}")
        return lines

    def reset(self):
        with self._lock:
            self._values.clear()


class MetricsRegistry:
    def __init__(self):
        self._counters: Dict[str, Counter] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, label_names: Optional[Iterable[str]] = None, help_text: str = "") -> Counter:
        with self._lock:
            existing = self._counters.get(name)
            if existing is None:
                existing = self._counters[name] = Counter(name, label_names, help_text)
            return existing

    def export_prometheus(self) -> str:
        with self._lock:
            counters = list(self._counters.values())
        lines: List[str] = []
        for counter in counters:
            lines.extend(counter.render())
        return "\n".join(lines) + "\n"

    def reset(self):
        with self._lock:
            counters = list(self._counters.values())
        for counter in counters:
            counter.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", ["method", "path", "status"], "HTTP requests by route and status")
ledger_transitions_total = METRICS.counter(
    "ledger_transitions_total", ["outcome", "source"], "Subscription ledger transitions by arbitration outcome")
webhook_events_total = METRICS.counter(
    "webhook_events_total", ["provider", "result"], "Provider webhook deliveries by result")
reconciliation_gaps_total = METRICS.counter(
    "reconciliation_gaps_total", ["provider"], "Payments confirmed without a recorded entitlement")
reward_awards_total = METRICS.counter(
    "reward_awards_total", ["result"], "Free-month reward decisions")
notifications_total = METRICS.counter(
    "notifications_total", ["result"], "Outbound e-mail enqueue and delivery results")


# Numbers, UUIDs and provider object ids (sub_..., cus_..., cs_..., evt_..., I-...)
_ID_SEGMENT = re.compile(r"^(\d+|[0-9a-fA-F-]{8,}|(sub|cus|cs|evt|I)[-_][A-Za-z0-9]+)$")


def normalize_path(path: str) -> str:
    """Collapse id-like path segments to :id to keep label cardinality bounded."""
    segments = [s for s in path.split("/") if s]
    return "/" + "/".join(":id" if _ID_SEGMENT.match(s) else s for s in segments)
