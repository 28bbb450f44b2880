from typing import List, Protocol, Sequence

from ..models import ComputerObject, VerdictRecord, VirtualMachineRecord

DIRECTORY_ATTRIBUTES = ["lastLogonTimestamp", "pwdLastSet"]


class AuditError(Exception):
    """Base class for every error raised by the audit."""


class ConfigError(AuditError):
    pass


class InventoryConnectionError(AuditError):
    def __init__(self, host: str, message: str):
        super().__init__(f"{host}: {message}")
        self.host = host


class ResolutionError(AuditError):
    pass


class DirectoryQueryError(AuditError):
    pass


class ComputerNotFound(AuditError):
    """The directory answered but holds no matching computer object."""


class ExportError(AuditError):
    pass


class InventorySession(Protocol):
    host: str

    def list_vms(self) -> List[VirtualMachineRecord]:
        ...

    def close(self) -> None:
        ...


class InventorySource(Protocol):
    def connect(self, host: str) -> InventorySession:
        ...


class DnsSource(Protocol):
    def resolve_forward(self, hostname: str) -> List[str]:
        ...

    def resolve_reverse(self, ip: str) -> str:
        ...


class DirectorySource(Protocol):
    def get_tombstone_lifetime_days(self) -> int:
        ...

    def find_computer(self, short_name: str, search_base: str, server: str, attributes: Sequence[str]) -> ComputerObject:
        ...


class ProgressObserver(Protocol):
    def report(self, fraction: float, label: str) -> None:
        ...


class Exporter(Protocol):
    def write(self, records: Sequence[VerdictRecord]) -> None:
        ...
