import math
import random
from dataclasses import dataclass, field

import structlog

from structures import HashTable, RingBuffer

log = structlog.get_logger(__name__)

HISTORY_LEN = 60
EVENT_DURATION_MS = 25_000

# per-vital bias while a simulated event is active
EVENT_BIAS = {"hr": 40.0, "spo2": -8.0, "temp": 1.6}
NOISE_SD = {"hr": 3.0, "spo2": 0.6, "temp": 0.12}
LIMITS = {"hr": (45.0, 210.0), "spo2": (70.0, 100.0), "temp": (95.0, 106.0)}


def _clamp(x, lo, hi):
    return max(lo, min(hi, x))


def randn(rng=random) -> float:
    """Standard normal draw via Box-Muller over two uniform draws."""
    u = 0.0
    v = 0.0
    while u == 0.0:
        u = rng.random()
    while v == 0.0:
        v = rng.random()
    return math.sqrt(-2.0 * math.log(u)) * math.cos(2.0 * math.pi * v)


@dataclass(frozen=True)
class Baseline:
    hr: float    # bpm
    spo2: float  # %
    temp: float  # °F


@dataclass(frozen=True)
class Sample:
    hr: float
    spo2: float
    temp: float
    in_event: bool = False


@dataclass
class Patient:
    id: str
    label: str
    baseline: Baseline
    hr: RingBuffer = field(default_factory=lambda: RingBuffer(HISTORY_LEN))
    spo2: RingBuffer = field(default_factory=lambda: RingBuffer(HISTORY_LEN))
    temp: RingBuffer = field(default_factory=lambda: RingBuffer(HISTORY_LEN))
    event_active_until: int = 0  # epoch ms

    def event_active(self, t_ms: int) -> bool:
        return t_ms < self.event_active_until

    def record(self, sample: Sample) -> None:
        self.hr.push(sample.hr)
        self.spo2.push(sample.spo2)
        self.temp.push(sample.temp)


def default_patients() -> HashTable:
    patients = HashTable()
    for p in (
        Patient("P001", "Bed 1 — A. Rivera", Baseline(hr=78, spo2=98, temp=98.6)),
        Patient("P002", "Bed 2 — M. Chen", Baseline(hr=88, spo2=96, temp=99.1)),
        Patient("P003", "Bed 3 — S. Okafor", Baseline(hr=70, spo2=97, temp=98.2)),
    ):
        patients.set(p.id, p)
    return patients


def generate_vitals(patient: Patient, t_ms: int, rng=random, noise_scale: float = 1.0) -> Sample:
    """
    One noisy sample around the patient's baseline.
    Inside an event window the baseline is shifted by EVENT_BIAS first.
    """
    in_event = patient.event_active(t_ms)
    b = patient.baseline
    values = {}
    for key, base in (("hr", b.hr), ("spo2", b.spo2), ("temp", b.temp)):
        bias = EVENT_BIAS[key] if in_event else 0.0
        noise = randn(rng) * NOISE_SD[key] * noise_scale if noise_scale else 0.0
        lo, hi = LIMITS[key]
        values[key] = _clamp(base + bias + noise, lo, hi)

    return Sample(hr=values["hr"], spo2=values["spo2"], temp=values["temp"], in_event=in_event)


def inject_event(patient: Patient, now_ms: int) -> int:
    patient.event_active_until = now_ms + EVENT_DURATION_MS
    log.info("event_injected", patient_id=patient.id, until=patient.event_active_until)
    return patient.event_active_until
