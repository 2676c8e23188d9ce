import argparse
import random
import sys
import time

import structlog

from config import EXPORT_DIR, TICK_INTERVAL_MS, configure_logging
from export import NOTHING_TO_EXPORT, write_export
from monitor import MonitorState, TickOrchestrator, now_ms

log = structlog.get_logger(__name__)


class SimClock:
    """Manually advanced millisecond clock for headless runs."""

    def __init__(self, start_ms: int):
        self.t = start_ms

    def __call__(self) -> int:
        return self.t

    def advance(self, ms: int) -> None:
        self.t += ms


def run_headless(args) -> int:
    state = MonitorState(rng=random.Random(args.seed))
    clock = SimClock(now_ms())
    ticker = TickOrchestrator(state, interval_ms=args.interval_ms, clock=now_ms if args.realtime else clock)

    for pid in args.event or []:
        if pid not in state.patients:
            print(f"Unknown patient: {pid} (known: {', '.join(state.patient_ids())})", file=sys.stderr)
            return 2
        state.inject_event(pid, ticker.clock())

    ticker.start()
    while state.tick_count < args.ticks:
        if args.realtime:
            time.sleep(ticker.seconds_until_due())
        else:
            clock.advance(args.interval_ms)
        ticker.poll()
        m = state.metrics
        print(f"Tick {state.tick_count:4d} | alerts {len(state.alerts):3d} retained"
              f" | total {m.total_alerts} TP {m.true_positives} FP {m.false_positives}")
    ticker.stop()
    log.info("headless_run_complete", ticks=state.tick_count, alerts=state.metrics.total_alerts)

    path = write_export(state.run_log, args.export_dir, ticker.clock())
    if path is None:
        print(NOTHING_TO_EXPORT)
    else:
        print(f"Run log written to {path}")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="VitalStream - headless vitals simulation")
    parser.add_argument("--ticks", type=int, default=60, help="Number of ticks to run (default: 60)")
    parser.add_argument("--interval-ms", type=int, default=TICK_INTERVAL_MS, help="Tick period in ms")
    parser.add_argument("--event", action="append", metavar="PATIENT", help="Inject an event for PATIENT at start")
    parser.add_argument("--export-dir", default=EXPORT_DIR, help="Directory for the CSV export")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for reproducible runs")
    parser.add_argument("--realtime", action="store_true", help="Sleep between ticks instead of simulating time")
    parser.add_argument("--log-level", default=None, help="Override VITALSTREAM_LOG_LEVEL")

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level)
    return run_headless(args)


if __name__ == "__main__":
    sys.exit(main())
