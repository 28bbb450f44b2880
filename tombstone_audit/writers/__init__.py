from pathlib import Path

from .csv_writer import CsvVerdictWriter
from .xlsx_writer import XlsxVerdictWriter

__all__ = ["CsvVerdictWriter", "XlsxVerdictWriter", "writer_for_path"]


def writer_for_path(path: Path):
    """Pick the exporter from the output file suffix (.xlsx or CSV otherwise)."""
    path = Path(path)
    if path.suffix.lower() == ".xlsx":
        return XlsxVerdictWriter(path)
    return CsvVerdictWriter(path)
