import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .models import (
    PRESENCE_ABSENT,
    PRESENCE_PRESENT,
    DirectoryFacts,
    DnsFacts,
    Fact,
    FactState,
    VerdictRecord,
    VirtualMachineRecord,
)
from .naming import decompose_hostname
from .sources.base import (
    DIRECTORY_ATTRIBUTES,
    ComputerNotFound,
    DirectoryQueryError,
    DirectorySource,
    DnsSource,
    ResolutionError,
)

logger = logging.getLogger("tombstone.reconcile")


@dataclass(frozen=True)
class AuditOptions:
    check_dns: bool = True
    check_ad: bool = True


def check_dns(source: DnsSource, hostname: Optional[str], primary_ip: Optional[str]) -> DnsFacts:
    """Forward-resolve the guest hostname and reverse-resolve the guest IP.

    The two lookups are independent: one failing never skips the other.
    """
    if not hostname:
        return DnsFacts.not_checked()

    try:
        ips = source.resolve_forward(hostname)
        forward = Fact.present(tuple(ips)) if ips else Fact.absent()
    except ResolutionError as exc:
        logger.warning(f"Forward lookup failed for {hostname}: {exc}")
        forward = Fact.absent()
    except Exception as exc:
        logger.warning(f"Forward lookup for {hostname} raised {exc.__class__.__name__}: {exc}")
        forward = Fact.absent()

    if not primary_ip:
        return DnsFacts(forward=forward, reverse=Fact.absent())

    try:
        name = source.resolve_reverse(primary_ip)
        reverse = Fact.present(name) if name else Fact.absent()
    except ResolutionError as exc:
        logger.warning(f"Reverse lookup failed for {primary_ip} ({hostname}): {exc}")
        reverse = Fact.absent()
    except Exception as exc:
        logger.warning(f"Reverse lookup for {primary_ip} raised {exc.__class__.__name__}: {exc}")
        reverse = Fact.absent()

    return DnsFacts(forward=forward, reverse=reverse)


def age_in_days(value: Optional[datetime], now: datetime) -> Fact:
    if value is None:
        return Fact.absent()
    return Fact.present((now - value).days)


def check_directory(source: DirectorySource, hostname: Optional[str], now: datetime) -> DirectoryFacts:
    if not hostname:
        return DirectoryFacts.not_checked()

    parts = decompose_hostname(hostname)
    if parts is None:
        logger.warning(f"Cannot scope directory query for {hostname!r} (no domain components); skipping")
        return DirectoryFacts.unscoped()

    try:
        computer = source.find_computer(parts.short_name, parts.search_base, parts.server, DIRECTORY_ATTRIBUTES)
    except ComputerNotFound:
        logger.info(f"No directory object for {parts.short_name} under {parts.search_base}")
        return DirectoryFacts.not_found()
    except DirectoryQueryError as exc:
        logger.warning(f"Directory query failed for {parts.short_name} on {parts.server}: {exc}")
        return DirectoryFacts.failed(str(exc))
    except Exception as exc:
        logger.warning(f"Directory query for {parts.short_name} raised {exc.__class__.__name__}: {exc}")
        return DirectoryFacts.failed(f"{exc.__class__.__name__}: {exc}")

    pwd = computer.password_last_set
    logon = computer.last_logon
    return DirectoryFacts(
        presence=FactState.PRESENT,
        password_last_set=Fact.present(pwd) if pwd else Fact.absent(),
        last_logon=Fact.present(logon) if logon else Fact.absent(),
        password_age_days=age_in_days(pwd, now),
        logon_age_days=age_in_days(logon, now),
    )


def is_tombstoned(password_age: Fact, logon_age: Fact, threshold_days: Optional[int]) -> bool:
    if threshold_days is None or not password_age.known or not logon_age.known:
        return False
    return password_age.value > threshold_days and logon_age.value > threshold_days


def assemble_verdict(
    vm: VirtualMachineRecord,
    dns: DnsFacts,
    directory: DirectoryFacts,
    threshold_days: Optional[int],
) -> VerdictRecord:
    forward_ips = dns.forward.value_or(())
    return VerdictRecord(
        guest_hostname=vm.guest_hostname,
        dns_hostname=dns.reverse.value_or(""),
        guest_id=vm.guest_id,
        vm_name=vm.name,
        vm_id=vm.vm_id,
        password_age_days=directory.password_age_days.value_or(None),
        logon_age_days=directory.logon_age_days.value_or(None),
        tombstoned=is_tombstoned(directory.password_age_days, directory.logon_age_days, threshold_days),
        ad_presence=PRESENCE_PRESENT if directory.presence is FactState.PRESENT else PRESENCE_ABSENT,
        guest_ip=vm.primary_ip or "",
        dns_ips=",".join(forward_ips),
    )


class ReconciliationEngine:
    """Per-VM fact gathering plus verdict assembly for one audit run.

    ``now`` and ``threshold_days`` are fixed at construction so every VM in a
    run is judged against the same reference.
    """

    def __init__(
        self,
        options: AuditOptions,
        now: datetime,
        threshold_days: Optional[int],
        dns: Optional[DnsSource] = None,
        directory: Optional[DirectorySource] = None,
    ):
        self.options = options
        self.now = now
        self.threshold_days = threshold_days
        self.dns = dns
        self.directory = directory

    def gather(self, vm: VirtualMachineRecord):
        dns_facts = DnsFacts.not_checked()
        dir_facts = DirectoryFacts.not_checked()
        if self.options.check_dns and self.dns is not None:
            dns_facts = check_dns(self.dns, vm.guest_hostname, vm.primary_ip)
        if self.options.check_ad and self.directory is not None:
            dir_facts = check_directory(self.directory, vm.guest_hostname, self.now)
        return dns_facts, dir_facts

    def reconcile(self, vm: VirtualMachineRecord) -> VerdictRecord:
        if not vm.guest_hostname:
            logger.debug(f"VM {vm.name} has no guest hostname; skipping lookups")
        dns_facts, dir_facts = self.gather(vm)
        return assemble_verdict(vm, dns_facts, dir_facts, self.threshold_days)

    def unchecked(self, vm: VirtualMachineRecord) -> VerdictRecord:
        return assemble_verdict(vm, DnsFacts.not_checked(), DirectoryFacts.not_checked(), self.threshold_days)
