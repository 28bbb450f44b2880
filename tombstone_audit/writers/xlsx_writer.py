from pathlib import Path
from typing import Any, Sequence

from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.utils.exceptions import IllegalCharacterError

from ..models import VERDICT_COLUMNS, VerdictRecord
from ..sources.base import ExportError

SHEET_TITLE = "Tombstone Audit"


def _cell_value(val: Any) -> Any:
    if val is None:
        return ""
    if isinstance(val, str):
        # guest-reported names can carry control characters openpyxl rejects
        return ILLEGAL_CHARACTERS_RE.sub("", val)
    return val


class XlsxVerdictWriter:
    def __init__(self, dest_path: Path):
        self.dest_path = Path(dest_path)

    def write(self, records: Sequence[VerdictRecord]) -> None:
        wb = Workbook()
        ws = wb.active
        ws.title = SHEET_TITLE
        ws.append(VERDICT_COLUMNS)
        try:
            for record in records:
                ws.append([_cell_value(val) for val in record.as_values()])
        except (IllegalCharacterError, ValueError, TypeError) as exc:
            raise ExportError(f"cannot render rows for {self.dest_path}: {exc}") from exc
        ws.freeze_panes = "A2"

        try:
            self.dest_path.parent.mkdir(parents=True, exist_ok=True)
            wb.save(self.dest_path)
        except OSError as exc:
            raise ExportError(f"cannot write {self.dest_path}: {exc}") from exc
