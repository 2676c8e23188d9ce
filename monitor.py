import asyncio
import itertools
import random
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List

import structlog

from risk_engine import AlertStore, RuleBook, evaluate_rules
from simulator import Patient, default_patients, generate_vitals, inject_event
from structures import HashTable

log = structlog.get_logger(__name__)

TICK_INTERVAL_MS = 1000
# ~20 minutes of rows at 3 patients per tick
RUN_LOG_LIMIT = 20 * 60 * 3
PLACEHOLDER = "—"


def now_ms() -> int:
    return int(time.time() * 1000)


def fmt_time(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%H:%M:%S")


@dataclass
class Metrics:
    total_alerts: int = 0
    true_positives: int = 0
    false_positives: int = 0


@dataclass(frozen=True)
class RunLogEntry:
    ts: int
    time: str
    patient_id: str
    hr: float
    spo2: float
    temp: float
    in_event: bool
    alert_count: int


@dataclass
class MonitorState:
    """Everything a session mutates: patients, rules, alerts, metrics and the run log."""

    patients: HashTable = field(default_factory=default_patients)
    rules: RuleBook = field(default_factory=RuleBook)
    alerts: AlertStore = field(default_factory=AlertStore)
    metrics: Metrics = field(default_factory=Metrics)
    run_log: List[RunLogEntry] = field(default_factory=list)
    rng: random.Random = field(default_factory=random.Random)
    noise_scale: float = 1.0
    tick_count: int = 0
    last_tick_ms: int = 0
    _alert_ids: Any = field(default_factory=lambda: itertools.count(1), repr=False)

    def patient(self, patient_id: str) -> Patient:
        return self.patients[patient_id]

    def patient_ids(self) -> List[str]:
        return self.patients.keys()

    def next_alert_id(self) -> int:
        return next(self._alert_ids)

    def inject_event(self, patient_id: str, at_ms: int | None = None) -> int:
        return inject_event(self.patient(patient_id), now_ms() if at_ms is None else at_ms)


class TickerStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class TickOrchestrator:
    """
    Periodic driver of the sample -> rules -> alerts pipeline.

    The host supplies the timer: it calls poll() (Streamlit reruns, CLI loop)
    or awaits run() (asyncio). Missed periods are not caught up.
    """

    def __init__(self, state: MonitorState, interval_ms: int = TICK_INTERVAL_MS,
                 clock: Callable[[], int] = now_ms):
        self.state = state
        self.interval_ms = interval_ms
        self.clock = clock
        self.status = TickerStatus.IDLE
        self._next_due: int | None = None
        self._listeners: List[Callable[[MonitorState], None]] = []

    @property
    def running(self) -> bool:
        return self.status is TickerStatus.RUNNING

    def subscribe(self, callback: Callable[[MonitorState], None]) -> None:
        self._listeners.append(callback)

    def unsubscribe(self, callback: Callable[[MonitorState], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def start(self) -> bool:
        if self.running:
            return False
        self.status = TickerStatus.RUNNING
        log.info("ticker_started", interval_ms=self.interval_ms)
        t = self.clock()
        self._fire(t)
        return True

    def stop(self) -> bool:
        if not self.running:
            return False
        self.status = TickerStatus.IDLE
        self._next_due = None
        log.info("ticker_stopped", ticks=self.state.tick_count)
        return True

    def poll(self, at_ms: int | None = None) -> bool:
        if not self.running or self._next_due is None:
            return False
        t = self.clock() if at_ms is None else at_ms
        if t < self._next_due:
            return False
        self._fire(t)
        return True

    def _fire(self, t: int) -> None:
        self.tick(t)
        # a listener may have stopped us during the tick
        if self.running:
            self._next_due = t + self.interval_ms

    def seconds_until_due(self) -> float:
        if self._next_due is None:
            return self.interval_ms / 1000
        return max(0.0, (self._next_due - self.clock()) / 1000)

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Drive poll() until stopped, or until stop_event is set (the ticker stays running)."""
        while self.running:
            if stop_event is not None and stop_event.is_set():
                break
            self.poll()
            await asyncio.sleep(self.seconds_until_due())

    def tick(self, t_ms: int) -> None:
        state = self.state
        rules = state.rules.active
        metrics = state.metrics
        raised = 0

        for pid in state.patient_ids():
            patient = state.patient(pid)
            sample = generate_vitals(patient, t_ms, rng=state.rng, noise_scale=state.noise_scale)
            patient.record(sample)

            alerts = evaluate_rules(rules, sample, pid)
            for a in alerts:
                state.alerts.add(replace(a, ts=t_ms, id=state.next_alert_id(), true_event=sample.in_event))
                metrics.total_alerts += 1
                if sample.in_event:
                    metrics.true_positives += 1
                else:
                    metrics.false_positives += 1
            raised += len(alerts)

            state.run_log.append(RunLogEntry(
                ts=t_ms, time=fmt_time(t_ms), patient_id=pid,
                hr=sample.hr, spo2=sample.spo2, temp=sample.temp,
                in_event=sample.in_event, alert_count=len(alerts),
            ))

        state.alerts.evict(t_ms)
        state.alerts.rebuild()
        if len(state.run_log) > RUN_LOG_LIMIT:
            del state.run_log[:-RUN_LOG_LIMIT]

        state.tick_count += 1
        state.last_tick_ms = t_ms
        log.debug("tick_completed", tick=state.tick_count, alerts=raised, retained=len(state.alerts))

        for callback in list(self._listeners):
            try:
                callback(state)
            except Exception:
                # a broken view must not stop monitoring
                log.exception("listener_failed", listener=getattr(callback, "__name__", repr(callback)))


def _latest(value: float | None, fmt: str) -> str:
    return PLACEHOLDER if value is None else format(value, fmt)


def snapshot(state: MonitorState, patient_id: str, at_ms: int | None = None) -> Dict[str, Any]:
    """Render-ready view of one patient plus the shared alert feed and counters."""
    p = state.patient(patient_id)
    t = now_ms() if at_ms is None else at_ms
    return {
        "patient_id": p.id,
        "label": p.label,
        "event_active": p.event_active(t),
        "event_remaining_s": max(0, (p.event_active_until - t) // 1000),
        "latest": {
            "hr": _latest(p.hr.last(), ".0f"),
            "spo2": _latest(p.spo2.last(), ".0f"),
            "temp": _latest(p.temp.last(), ".1f"),
        },
        "series": {
            "hr": p.hr.to_list(),
            "spo2": p.spo2.to_list(),
            "temp": p.temp.to_list(),
        },
        "alerts": [asdict(a) for a in state.alerts.top()],
        "metrics": asdict(state.metrics),
        "rules": state.rules.active.to_mapping(),
        "can_undo": state.rules.can_undo,
        "tick": state.tick_count,
        "last_tick_ms": state.last_tick_ms,
    }
