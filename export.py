from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, List

import pandas as pd
import structlog

from monitor import RunLogEntry, now_ms

log = structlog.get_logger(__name__)

CSV_COLUMNS = ["ts", "time", "patientId", "hr", "spo2", "temp", "inEvent", "alertCount"]
NOTHING_TO_EXPORT = "Nothing to export yet."


@dataclass(frozen=True)
class CsvExport:
    filename: str
    content: str
    rows: int


def run_log_frame(entries: Iterable[RunLogEntry]) -> pd.DataFrame:
    rows = [{
        "ts": e.ts,
        "time": e.time,
        "patientId": e.patient_id,
        "hr": e.hr,
        "spo2": e.spo2,
        "temp": e.temp,
        "inEvent": 1 if e.in_event else 0,
        "alertCount": e.alert_count,
    } for e in entries]
    df = pd.DataFrame(rows, columns=CSV_COLUMNS)
    return df.astype({"ts": "int64", "hr": "float64", "spo2": "float64", "temp": "float64",
                      "inEvent": "int64", "alertCount": "int64"})


def export_filename(at_ms: int) -> str:
    stamp = datetime.fromtimestamp(at_ms / 1000).strftime("%Y%m%d-%H%M%S")
    return f"vitalstream_run_{stamp}.csv"


def export_csv(entries: List[RunLogEntry], at_ms: int | None = None) -> CsvExport | None:
    """CSV of the run log, or None when there is nothing to export."""
    if not entries:
        log.info("export_empty")
        return None
    df = run_log_frame(entries)
    content = df.to_csv(index=False, float_format="%.2f", lineterminator="\n")
    return CsvExport(filename=export_filename(now_ms() if at_ms is None else at_ms),
                     content=content, rows=len(df))


def write_export(entries: List[RunLogEntry], directory: str | Path, at_ms: int | None = None) -> Path | None:
    result = export_csv(entries, at_ms)
    if result is None:
        return None
    out_dir = Path(directory)
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / result.filename
    path.write_text(result.content, encoding="utf-8")
    log.info("export_written", path=str(path), rows=result.rows)
    return path
