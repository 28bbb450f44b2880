"""Data sources consumed by the reconciliation engine."""

from .base import (
    AuditError,
    ComputerNotFound,
    ConfigError,
    DirectoryQueryError,
    ExportError,
    InventoryConnectionError,
    ResolutionError,
)

__all__ = [
    "AuditError",
    "ComputerNotFound",
    "ConfigError",
    "DirectoryQueryError",
    "ExportError",
    "InventoryConnectionError",
    "ResolutionError",
]
