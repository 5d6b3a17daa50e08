"""Report sinks for the daily alert report."""
import json
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

logger = logging.getLogger("alertmon.reporting")


@runtime_checkable
class ReportSink(Protocol):
    def submit(self, report: dict) -> None: ...


class FileReportSink:
    """Append each report as one JSON line."""

    def __init__(self, path="data/reports.jsonl"):
        self.path = Path(path)

    def submit(self, report: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(json.dumps(report, default=str) + "\n")
        logger.info(f"Report for {report.get('period_start')} written to {self.path}")

    def read_all(self):
        if not self.path.exists():
            return []
        with open(self.path) as f:
            return [json.loads(line) for line in f if line.strip()]
