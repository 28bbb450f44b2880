import concurrent.futures
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import Config
from .models import FactState, VerdictRecord, VirtualMachineRecord
from .progress import LoggingProgressObserver, NullProgressObserver
from .reconcile import AuditOptions, ReconciliationEngine, assemble_verdict
from .sources.base import (
    DirectoryQueryError,
    DirectorySource,
    DnsSource,
    ExportError,
    Exporter,
    InventoryConnectionError,
    InventorySource,
    ProgressObserver,
)

logger = logging.getLogger("tombstone.runner")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class InventoryResult:
    vms: List[VirtualMachineRecord] = field(default_factory=list)
    connected_hosts: List[str] = field(default_factory=list)
    failed_hosts: Dict[str, str] = field(default_factory=dict)

    @property
    def all_failed(self) -> bool:
        return not self.connected_hosts


@dataclass
class AuditOutcome:
    records: List[VerdictRecord]
    inventory: InventoryResult
    exit_code: int


def _empty_stats() -> Dict[str, int]:
    return {
        "vms": 0,
        "no_hostname": 0,
        "tombstoned": 0,
        "dns_forward_failed": 0,
        "dns_reverse_failed": 0,
        "ad_present": 0,
        "ad_not_found": 0,
        "ad_unscoped": 0,
        "ad_query_errors": 0,
        "vm_errors": 0,
        "cancelled": 0,
    }


class BatchRunner:
    """Runs the reconciliation engine over one batch of VMs."""

    def __init__(
        self,
        options: AuditOptions,
        inventory: Optional[InventorySource] = None,
        dns: Optional[DnsSource] = None,
        directory: Optional[DirectorySource] = None,
        exporter: Optional[Exporter] = None,
        observer: Optional[ProgressObserver] = None,
        max_concurrency: int = 1,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.options = options
        self.inventory = inventory
        self.dns = dns
        self.directory = directory
        self.exporter = exporter
        self.observer = observer or NullProgressObserver()
        self.max_concurrency = max(1, max_concurrency)
        self.clock = clock
        self.threshold_days: Optional[int] = None
        self.now: Optional[datetime] = None
        self.stats: Dict[str, int] = _empty_stats()
        self._stats_lock = threading.Lock()
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop starting new per-VM checks; in-flight lookups finish or time out.

        ``run`` calls this itself on Ctrl-C.
        """
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def connect_and_enumerate(self, hosts: Sequence[str]) -> InventoryResult:
        result = InventoryResult()
        for host in hosts:
            try:
                session = self.inventory.connect(host)
            except InventoryConnectionError as exc:
                logger.warning(f"Skipping inventory host {host}: {exc}")
                result.failed_hosts[host] = str(exc)
                continue
            try:
                vms = session.list_vms()
            except Exception as exc:
                logger.warning(f"Failed to enumerate VMs on {host}: {exc}")
                result.failed_hosts[host] = f"enumeration failed: {exc}"
                continue
            finally:
                session.close()
            result.connected_hosts.append(host)
            result.vms.extend(vms)

        if result.failed_hosts:
            logger.warning(f"{len(result.failed_hosts)}/{len(hosts)} inventory hosts failed: {sorted(result.failed_hosts)}")
        logger.info(f"Inventory: {len(result.vms)} VMs from {len(result.connected_hosts)} hosts")
        return result

    def fetch_threshold(self) -> Optional[int]:
        if not self.options.check_ad or self.directory is None:
            return None
        try:
            days = self.directory.get_tombstone_lifetime_days()
        except DirectoryQueryError as exc:
            logger.warning(f"Tombstone lifetime unavailable, no VM will be flagged as tombstoned: {exc}")
            return None
        logger.info(f"Directory tombstone lifetime: {days} days")
        return days

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] += 1

    def _tally(self, vm: VirtualMachineRecord, dns_facts, dir_facts, verdict: VerdictRecord) -> None:
        if not vm.guest_hostname:
            self._count("no_hostname")
            return
        if verdict.tombstoned:
            self._count("tombstoned")
        if self.options.check_dns:
            if dns_facts.forward.state is FactState.ABSENT:
                self._count("dns_forward_failed")
            if dns_facts.reverse.state is FactState.ABSENT:
                self._count("dns_reverse_failed")
        if self.options.check_ad:
            if not dir_facts.scoped:
                self._count("ad_unscoped")
            elif dir_facts.presence is FactState.PRESENT:
                self._count("ad_present")
            elif dir_facts.presence is FactState.ABSENT:
                self._count("ad_not_found")
            elif dir_facts.error:
                self._count("ad_query_errors")

    def _process(self, engine: ReconciliationEngine, vm: VirtualMachineRecord) -> VerdictRecord:
        if self.cancelled:
            self._count("cancelled")
            return engine.unchecked(vm)
        try:
            dns_facts, dir_facts = engine.gather(vm)
            verdict = assemble_verdict(vm, dns_facts, dir_facts, engine.threshold_days)
        except Exception:
            logger.exception(f"Unexpected error auditing VM {vm.name} ({vm.vm_id})")
            self._count("vm_errors")
            return engine.unchecked(vm)
        self._tally(vm, dns_facts, dir_facts, verdict)
        return verdict

    def run(self, vms: Sequence[VirtualMachineRecord]) -> List[VerdictRecord]:
        """Audit every VM and return one verdict per VM in input order."""
        self.stats = _empty_stats()
        self.stats["vms"] = len(vms)
        self.now = self.clock()
        self.threshold_days = self.fetch_threshold()
        engine = ReconciliationEngine(self.options, self.now, self.threshold_days, dns=self.dns, directory=self.directory)

        total = len(vms)
        slots: List[Optional[VerdictRecord]] = [None] * total
        if total == 0:
            self.observer.report(1.0, "no VMs to audit")
        else:
            done = 0

            def collect(future, idx):
                nonlocal done
                slots[idx] = future.result()
                done += 1
                self.observer.report(done / total, f"{done}/{total} {vms[idx].name}")

            with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_concurrency) as executor:
                future_to_idx = {executor.submit(self._process, engine, vm): idx for idx, vm in enumerate(vms)}
                try:
                    for future in concurrent.futures.as_completed(future_to_idx):
                        collect(future, future_to_idx[future])
                except KeyboardInterrupt:
                    logger.warning("Interrupted; VMs not yet started are reported without checks")
                    self.cancel()
                    for future, idx in future_to_idx.items():
                        if slots[idx] is None:
                            collect(future, idx)

        records = [r for r in slots if r is not None]
        if self.exporter is not None:
            self.exporter.write(records)
        return records


class Runner:
    """Wires concrete sources from a Config and runs one full audit pass."""

    def __init__(self, config: Config, batch: Optional[BatchRunner] = None):
        self.config = config
        self.run_id = f"{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}"
        self.batch = batch or self._build_batch()
        self.report: Dict[str, Any] = {
            "run_id": self.run_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "config": {
                "user": self._mask(self.config.username),
                "vcenter_hosts": self.config.vcenter_hosts,
                "check_dns": self.config.check_dns,
                "check_ad": self.config.check_ad,
                "ad_host": self.config.ad_host,
                "ad_server": self.config.ad_server,
                "dns_timeout": self.config.dns_timeout,
                "ad_timeout": self.config.ad_timeout,
                "max_concurrency": self.config.max_concurrency,
                "output": str(self.config.output_path),
            },
            "inventory": {},
            "summary": {},
        }

    @staticmethod
    def _mask(user: str) -> str:
        return f"{user[:3]}***" if user else ""

    def _build_batch(self) -> BatchRunner:
        from .sources.directory import ActiveDirectorySource
        from .sources.dns import SocketDnsSource
        from .sources.vcenter import VCenterInventorySource
        from .winrm_client import WinRMClient
        from .writers import writer_for_path

        cfg = self.config
        dns = SocketDnsSource(timeout=cfg.dns_timeout, max_workers=cfg.max_concurrency * 2) if cfg.check_dns else None
        directory = None
        if cfg.check_ad:
            client = WinRMClient(
                cfg.ad_host, cfg.ad_username, cfg.ad_password,
                port=cfg.winrm_port, transport=cfg.winrm_transport, scheme=cfg.winrm_scheme,
                verify_ssl=cfg.verify_ssl, timeout=cfg.ad_timeout,
            )
            directory = ActiveDirectorySource(client, server=cfg.ad_server)
        return BatchRunner(
            AuditOptions(check_dns=cfg.check_dns, check_ad=cfg.check_ad),
            inventory=VCenterInventorySource(cfg.username, cfg.password, port=cfg.port, verify_ssl=cfg.verify_ssl),
            dns=dns,
            directory=directory,
            exporter=writer_for_path(cfg.output_path),
            observer=LoggingProgressObserver(),
            max_concurrency=cfg.max_concurrency,
        )

    def save_report(self) -> None:
        try:
            self.config.json_report_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config.json_report_path, "w", encoding="utf-8") as f:
                json.dump(self.report, f, indent=2, default=str)
        except OSError as e:
            logger.error(f"Failed to save run report: {e}")

    def _close_sources(self) -> None:
        close = getattr(self.batch.dns, "close", None)
        if callable(close):
            close()

    def execute(self) -> AuditOutcome:
        start_time = time.time()
        logger.info(f"Config loaded. User: {self._mask(self.config.username)}")
        logger.info(f"Checks: dns={self.config.check_dns} ad={self.config.check_ad}")

        records: List[VerdictRecord] = []
        exit_code = 0
        try:
            inventory = self.batch.connect_and_enumerate(self.config.vcenter_hosts)
            self.report["inventory"] = {
                "connected_hosts": inventory.connected_hosts,
                "failed_hosts": inventory.failed_hosts,
                "vm_count": len(inventory.vms),
            }
            if inventory.all_failed:
                logger.error("Inventory connection failed for every vCenter host; nothing to audit.")
                exit_code = 1
            else:
                try:
                    records = self.batch.run(inventory.vms)
                    self.report["output"] = {"path": str(self.config.output_path), "rows": len(records)}
                except ExportError as e:
                    logger.error(f"Failed to write report: {e}")
                    self.report["output"] = {"error": str(e)}
                    exit_code = 1
        finally:
            self._close_sources()

        summary = dict(self.batch.stats)
        summary["threshold_days"] = self.batch.threshold_days
        summary["duration_sec"] = round(time.time() - start_time, 2)
        summary["exit_code"] = exit_code
        self.report["summary"] = summary
        self.save_report()

        print("\n=== Tombstone Audit Run Summary ===")
        print(f"Run ID: {self.run_id}")
        print(f"vCenter hosts: {len(inventory.connected_hosts)} connected, {len(inventory.failed_hosts)} failed")
        print(f"VMs audited: {len(records)}")
        print(f"Tombstone lifetime: {summary['threshold_days'] if summary['threshold_days'] is not None else 'unknown'}")
        print(f"Tombstoned: {summary['tombstoned']}")
        print(f"AD present / not found / unscoped / query errors: {summary['ad_present']} / {summary['ad_not_found']} / {summary['ad_unscoped']} / {summary['ad_query_errors']}")
        print(f"DNS forward / reverse failures: {summary['dns_forward_failed']} / {summary['dns_reverse_failed']}")
        if "output" in self.report:
            print(f"Output: {self.report['output'].get('path', self.report['output'].get('error', 'N/A'))}")
        print(f"Duration: {summary['duration_sec']}s")
        print(f"Report: {self.config.json_report_path}")
        print("===================================\n")

        return AuditOutcome(records=records, inventory=inventory, exit_code=exit_code)
