import math
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, List, Mapping, Tuple

import structlog

from simulator import Sample
from structures import PriorityQueue, Stack

log = structlog.get_logger(__name__)

PRIORITY_CRITICAL = 1
PRIORITY_WARNING = 2

ALERT_RETENTION_MS = 120_000
ALERT_VIEW_LIMIT = 12

# persisted (camelCase) key for each threshold field
PERSISTED_KEYS = {
    "hr_high": "hrHigh",
    "hr_critical": "hrCritical",
    "spo2_low": "spo2Low",
    "spo2_critical": "spo2Critical",
    "temp_high": "tempHigh",
    "temp_critical": "tempCritical",
}


@dataclass(frozen=True)
class RuleSet:
    hr_high: float = 120.0
    hr_critical: float = 150.0
    spo2_low: float = 92.0
    spo2_critical: float = 86.0
    temp_high: float = 100.4   # °F
    temp_critical: float = 102.0

    def to_mapping(self) -> Dict[str, float]:
        return {PERSISTED_KEYS[k]: v for k, v in asdict(self).items()}


def default_rules() -> RuleSet:
    return RuleSet()


def _field_name(name: str) -> str:
    if name in PERSISTED_KEYS:
        return name
    for field_name, key in PERSISTED_KEYS.items():
        if key == name:
            return field_name
    raise KeyError(name)


def rules_from_mapping(raw: Mapping[str, Any]) -> RuleSet:
    """
    Overlay persisted values on the defaults.
    Unknown keys are ignored; missing, null, non-numeric or non-finite values keep the default.
    """
    values = {}
    for f in fields(RuleSet):
        v = raw.get(PERSISTED_KEYS[f.name])
        if v is None:
            continue
        try:
            number = float(v)
        except (TypeError, ValueError):
            number = math.nan
        if not math.isfinite(number):
            log.warning("rule_value_ignored", key=PERSISTED_KEYS[f.name], value=repr(v))
            continue
        values[f.name] = number
    return replace(default_rules(), **values)


class RuleBook:
    """Active rule set plus an unbounded undo history of prior snapshots."""

    def __init__(self, rules: RuleSet | None = None):
        self.active = rules or default_rules()
        self._history: Stack[RuleSet] = Stack()

    @property
    def can_undo(self) -> bool:
        return not self._history.is_empty()

    @property
    def depth(self) -> int:
        return len(self._history)

    def replace(self, rules: RuleSet) -> None:
        self._history.push(self.active)
        self.active = rules

    def set_threshold(self, name: str, value: Any) -> RuleSet:
        field_name = _field_name(name)
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"threshold {name!r} must be numeric, got {value!r}")
        if not math.isfinite(number):
            raise ValueError(f"threshold {name!r} must be finite, got {value!r}")
        self.replace(replace(self.active, **{field_name: number}))
        log.info("rule_changed", rule=field_name, value=number, depth=self.depth)
        return self.active

    def undo(self) -> bool:
        prev = self._history.pop()
        if prev is None:
            log.info("undo_empty")
            return False
        self.active = prev
        log.info("rule_undo", depth=self.depth)
        return True


@dataclass(frozen=True)
class Alert:
    priority: int
    type: str
    msg: str
    patient_id: str
    ts: int = 0
    id: int = 0
    true_event: bool = False


def _num(x: float) -> str:
    return f"{x:g}"


def evaluate_rules(rules: RuleSet, sample: Sample, patient_id: str) -> List[Alert]:
    alerts: List[Alert] = []

    # priority: 1 critical, 2 warning (lower = more severe)
    if sample.hr >= rules.hr_critical:
        alerts.append(Alert(PRIORITY_CRITICAL, "HR",
                            f"Critical HR: {sample.hr:.0f} bpm (≥ {_num(rules.hr_critical)})", patient_id))
    elif sample.hr >= rules.hr_high:
        alerts.append(Alert(PRIORITY_WARNING, "HR",
                            f"High HR: {sample.hr:.0f} bpm (≥ {_num(rules.hr_high)})", patient_id))

    if sample.spo2 <= rules.spo2_critical:
        alerts.append(Alert(PRIORITY_CRITICAL, "SpO₂",
                            f"Critical SpO₂: {sample.spo2:.0f}% (≤ {_num(rules.spo2_critical)})", patient_id))
    elif sample.spo2 <= rules.spo2_low:
        alerts.append(Alert(PRIORITY_WARNING, "SpO₂",
                            f"Low SpO₂: {sample.spo2:.0f}% (≤ {_num(rules.spo2_low)})", patient_id))

    if sample.temp >= rules.temp_critical:
        alerts.append(Alert(PRIORITY_CRITICAL, "Temp",
                            f"Critical Fever: {sample.temp:.1f}°F (≥ {_num(rules.temp_critical)})", patient_id))
    elif sample.temp >= rules.temp_high:
        alerts.append(Alert(PRIORITY_WARNING, "Temp",
                            f"Fever: {sample.temp:.1f}°F (≥ {_num(rules.temp_high)})", patient_id))

    return alerts


def _view_key(entry: Tuple[int, Alert]):
    seq, a = entry
    return (a.priority, -a.ts, -seq)


class AlertStore:
    """
    Time-windowed alert history with a priority view for display.

    View order: priority ascending, then newest timestamp, then latest insertion.
    """

    def __init__(self, retention_ms: int = ALERT_RETENTION_MS):
        self.retention_ms = retention_ms
        self._entries: List[Tuple[int, Alert]] = []  # (insertion seq, alert)
        self._seq = 0
        self._queue: PriorityQueue[Tuple[int, Alert]] = PriorityQueue(_view_key)

    def add(self, alert: Alert) -> None:
        self._seq += 1
        self._entries.append((self._seq, alert))

    def evict(self, now_ms: int) -> int:
        keep = [e for e in self._entries if now_ms - e[1].ts <= self.retention_ms]
        evicted = len(self._entries) - len(keep)
        if evicted:
            log.debug("alerts_evicted", count=evicted, retained=len(keep))
        self._entries = keep
        return evicted

    def rebuild(self) -> None:
        queue: PriorityQueue[Tuple[int, Alert]] = PriorityQueue(_view_key)
        for entry in self._entries:
            queue.push(entry)
        self._queue = queue

    def top(self, k: int = ALERT_VIEW_LIMIT) -> List[Alert]:
        return [a for _, a in self._queue.sorted_items(limit=k)]

    def all(self) -> List[Alert]:
        return [a for _, a in self._entries]

    def __len__(self) -> int:
        return len(self._entries)
