import csv
from pathlib import Path
from typing import Sequence

from ..models import VERDICT_COLUMNS, VerdictRecord
from ..sources.base import ExportError


class CsvVerdictWriter:
    def __init__(self, dest_path: Path):
        self.dest_path = Path(dest_path)

    def write(self, records: Sequence[VerdictRecord]) -> None:
        try:
            self.dest_path.parent.mkdir(parents=True, exist_ok=True)
            with self.dest_path.open("w", newline="", encoding="utf-8") as f:
                writer = csv.DictWriter(f, fieldnames=VERDICT_COLUMNS, extrasaction="ignore", restval="")
                writer.writeheader()
                for record in records:
                    writer.writerow(record.as_row())
        except OSError as exc:
            raise ExportError(f"cannot write {self.dest_path}: {exc}") from exc
