from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar

T = TypeVar("T")

PRESENCE_PRESENT = "Present"
PRESENCE_ABSENT = "Absent"

VERDICT_COLUMNS: List[str] = [
    "HostName",
    "DNSHostName",
    "GuestId",
    "VMName",
    "VMId",
    "PasswordAgeDays",
    "LogonAgeDays",
    "Tombstoned",
    "ADPresence",
    "IPAddress",
    "DNSIPAddresses",
]


class FactState(str, Enum):
    UNKNOWN = "unknown"
    ABSENT = "absent"
    PRESENT = "present"


@dataclass(frozen=True)
class Fact(Generic[T]):
    """A single observed value that may be unknown, known-absent or present.

    UNKNOWN means the check was not run or failed; ABSENT means it ran and
    found nothing. Only PRESENT facts carry a value.
    """

    state: FactState
    value: Optional[T] = None

    @classmethod
    def unknown(cls) -> "Fact[T]":
        return cls(FactState.UNKNOWN)

    @classmethod
    def absent(cls) -> "Fact[T]":
        return cls(FactState.ABSENT)

    @classmethod
    def present(cls, value: T) -> "Fact[T]":
        return cls(FactState.PRESENT, value)

    @property
    def known(self) -> bool:
        return self.state is FactState.PRESENT

    def value_or(self, default: Any) -> Any:
        return self.value if self.known else default


@dataclass(frozen=True)
class VirtualMachineRecord:
    vm_id: str
    name: str
    guest_hostname: Optional[str] = None
    guest_ips: Tuple[str, ...] = ()
    guest_id: Optional[str] = None
    source_host: str = ""

    def __post_init__(self):
        hostname = (self.guest_hostname or "").strip()
        object.__setattr__(self, "guest_hostname", hostname or None)
        object.__setattr__(self, "guest_ips", tuple(ip for ip in self.guest_ips if ip))

    @property
    def primary_ip(self) -> Optional[str]:
        return self.guest_ips[0] if self.guest_ips else None


@dataclass(frozen=True)
class DnsFacts:
    forward: Fact = field(default_factory=Fact.unknown)
    reverse: Fact = field(default_factory=Fact.unknown)

    @classmethod
    def not_checked(cls) -> "DnsFacts":
        return cls()


@dataclass(frozen=True)
class DirectoryFacts:
    presence: FactState = FactState.UNKNOWN
    password_last_set: Fact = field(default_factory=Fact.unknown)
    last_logon: Fact = field(default_factory=Fact.unknown)
    password_age_days: Fact = field(default_factory=Fact.unknown)
    logon_age_days: Fact = field(default_factory=Fact.unknown)
    error: Optional[str] = None
    scoped: bool = True

    @classmethod
    def not_checked(cls) -> "DirectoryFacts":
        return cls()

    @classmethod
    def unscoped(cls) -> "DirectoryFacts":
        """No domain components to scope a query with; the directory was not asked."""
        return cls(
            presence=FactState.ABSENT,
            password_last_set=Fact.absent(),
            last_logon=Fact.absent(),
            password_age_days=Fact.absent(),
            logon_age_days=Fact.absent(),
            scoped=False,
        )

    @classmethod
    def not_found(cls) -> "DirectoryFacts":
        return cls(
            presence=FactState.ABSENT,
            password_last_set=Fact.absent(),
            last_logon=Fact.absent(),
            password_age_days=Fact.absent(),
            logon_age_days=Fact.absent(),
        )

    @classmethod
    def failed(cls, error: str) -> "DirectoryFacts":
        return cls(presence=FactState.UNKNOWN, error=error)


@dataclass(frozen=True)
class ComputerObject:
    """Directory computer object as returned by a directory source."""

    name: str
    distinguished_name: str = ""
    password_last_set: Optional[datetime] = None
    last_logon: Optional[datetime] = None


@dataclass(frozen=True)
class VerdictRecord:
    guest_hostname: Optional[str]
    dns_hostname: str
    guest_id: Optional[str]
    vm_name: str
    vm_id: str
    password_age_days: Optional[int]
    logon_age_days: Optional[int]
    tombstoned: bool
    ad_presence: str
    guest_ip: str
    dns_ips: str

    def as_values(self) -> List[Any]:
        return [
            self.guest_hostname,
            self.dns_hostname,
            self.guest_id,
            self.vm_name,
            self.vm_id,
            self.password_age_days,
            self.logon_age_days,
            self.tombstoned,
            self.ad_presence,
            self.guest_ip,
            self.dns_ips,
        ]

    def as_row(self) -> Dict[str, str]:
        return {col: ("" if val is None else str(val)) for col, val in zip(VERDICT_COLUMNS, self.as_values())}
