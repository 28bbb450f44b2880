import time
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from tombstone_audit.models import ComputerObject, VirtualMachineRecord
from tombstone_audit.reconcile import AuditOptions
from tombstone_audit.runner import BatchRunner, Runner
from tombstone_audit.sources.base import (
    ComputerNotFound,
    DirectoryQueryError,
    ExportError,
    InventoryConnectionError,
)

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _vm(i, hostname=True):
    return VirtualMachineRecord(
        vm_id=f"vm-{i}",
        name=f"host{i}",
        guest_hostname=f"host{i}.corp.example.com" if hostname else None,
        guest_ips=(f"10.0.0.{i}",),
        guest_id="otherGuest64",
    )


class FakeSession:
    def __init__(self, host, vms):
        self.host = host
        self.vms = vms
        self.closed = False

    def list_vms(self):
        return list(self.vms)

    def close(self):
        self.closed = True


class FakeInventory:
    def __init__(self, hosts):
        self.hosts = hosts
        self.sessions = []

    def connect(self, host):
        vms = self.hosts[host]
        if isinstance(vms, Exception):
            raise vms
        session = FakeSession(host, vms)
        self.sessions.append(session)
        return session


class SlowDns:
    """Earlier VMs resolve slower so completion order is reversed."""

    def __init__(self, count):
        self.count = count

    def resolve_forward(self, hostname):
        index = int(hostname.split(".")[0].replace("host", ""))
        time.sleep(0.005 * (self.count - index))
        return [f"10.0.0.{index}"]

    def resolve_reverse(self, ip):
        return f"rev-{ip}"


class FakeDirectory:
    def __init__(self, ages=None, threshold=90, threshold_error=False):
        self.ages = ages or {}
        self.threshold = threshold
        self.threshold_error = threshold_error
        self.threshold_calls = 0
        self.lookups = []

    def get_tombstone_lifetime_days(self):
        self.threshold_calls += 1
        if self.threshold_error:
            raise DirectoryQueryError("no DC")
        return self.threshold

    def find_computer(self, short_name, search_base, server, attributes):
        self.lookups.append(short_name)
        if short_name not in self.ages:
            raise ComputerNotFound(short_name)
        pwd_age, logon_age = self.ages[short_name]
        return ComputerObject(
            name=short_name,
            password_last_set=NOW - timedelta(days=pwd_age),
            last_logon=NOW - timedelta(days=logon_age),
        )


class RecordingObserver:
    def __init__(self):
        self.reports = []

    def report(self, fraction, label):
        self.reports.append((fraction, label))


class RecordingExporter:
    def __init__(self, fail=False):
        self.written = None
        self.fail = fail

    def write(self, records):
        if self.fail:
            raise ExportError("disk full")
        self.written = list(records)


def _runner(**kwargs):
    defaults = dict(clock=lambda: NOW)
    defaults.update(kwargs)
    options = defaults.pop("options", AuditOptions())
    return BatchRunner(options, **defaults)


def test_output_order_matches_input_under_concurrency():
    vms = [_vm(i) for i in range(1, 9)]
    exporter = RecordingExporter()
    runner = _runner(options=AuditOptions(check_dns=True, check_ad=False), dns=SlowDns(8),
                     exporter=exporter, max_concurrency=8)

    records = runner.run(vms)

    assert [r.vm_id for r in records] == [vm.vm_id for vm in vms]
    assert [r.dns_ips for r in records] == [f"10.0.0.{i}" for i in range(1, 9)]
    assert exporter.written == records


def test_progress_reaches_completion_exactly_once():
    observer = RecordingObserver()
    runner = _runner(options=AuditOptions(check_dns=True, check_ad=False), dns=SlowDns(5),
                     observer=observer, max_concurrency=3)

    runner.run([_vm(i) for i in range(1, 6)])

    fractions = [f for f, _ in observer.reports]
    assert len(fractions) == 5
    assert fractions.count(1.0) == 1
    assert all(0.0 < f <= 1.0 for f in fractions)


def test_empty_batch_reports_completion_once():
    observer = RecordingObserver()
    exporter = RecordingExporter()
    runner = _runner(observer=observer, exporter=exporter)

    assert runner.run([]) == []
    assert [f for f, _ in observer.reports] == [1.0]
    assert exporter.written == []


def test_threshold_fetched_once_and_applied():
    directory = FakeDirectory(ages={"host1": (120, 95), "host2": (120, 40)})
    runner = _runner(options=AuditOptions(check_dns=False, check_ad=True), directory=directory, max_concurrency=4)

    records = runner.run([_vm(1), _vm(2), _vm(3)])

    assert directory.threshold_calls == 1
    assert runner.threshold_days == 90
    assert [r.tombstoned for r in records] == [True, False, False]
    assert [r.ad_presence for r in records] == ["Present", "Present", "Absent"]
    assert runner.stats["ad_present"] == 2
    assert runner.stats["ad_not_found"] == 1
    assert runner.stats["tombstoned"] == 1


def test_threshold_failure_never_tombstones():
    directory = FakeDirectory(ages={"host1": (500, 500)}, threshold_error=True)
    runner = _runner(options=AuditOptions(check_dns=False, check_ad=True), directory=directory)

    records = runner.run([_vm(1)])

    assert runner.threshold_days is None
    assert records[0].tombstoned is False
    assert records[0].password_age_days == 500


def test_vm_without_hostname_gets_verdict():
    directory = FakeDirectory()
    runner = _runner(directory=directory, dns=SlowDns(1))

    records = runner.run([_vm(1, hostname=False)])

    assert len(records) == 1
    assert records[0].ad_presence == "Absent"
    assert records[0].dns_hostname == ""
    assert runner.stats["no_hostname"] == 1


def test_one_of_three_hosts_fails_to_connect():
    inventory = FakeInventory({
        "vc1": [_vm(1), _vm(2)],
        "vc2": InventoryConnectionError("vc2", "connection refused"),
        "vc3": [_vm(3)],
    })
    runner = _runner(inventory=inventory)

    result = runner.connect_and_enumerate(["vc1", "vc2", "vc3"])

    assert [vm.vm_id for vm in result.vms] == ["vm-1", "vm-2", "vm-3"]
    assert result.connected_hosts == ["vc1", "vc3"]
    assert "vc2" in result.failed_hosts
    assert not result.all_failed
    assert all(s.closed for s in inventory.sessions)


def test_all_hosts_failing_yields_empty_inventory():
    inventory = FakeInventory({"vc1": InventoryConnectionError("vc1", "auth failed")})
    runner = _runner(inventory=inventory)

    result = runner.connect_and_enumerate(["vc1"])

    assert result.vms == []
    assert result.all_failed


def test_cancel_still_yields_one_verdict_per_vm():
    directory = FakeDirectory(ages={"host1": (500, 500)})
    runner = _runner(directory=directory, dns=SlowDns(3))
    runner.cancel()

    records = runner.run([_vm(1), _vm(2), _vm(3)])

    assert len(records) == 3
    assert runner.stats["cancelled"] == 3
    assert not any(r.tombstoned for r in records)


def test_export_failure_propagates():
    runner = _runner(exporter=RecordingExporter(fail=True), options=AuditOptions(check_dns=False, check_ad=False))
    with pytest.raises(ExportError):
        runner.run([_vm(1)])


def _config(tmp_path, **overrides):
    values = dict(
        username="administrator@vsphere.local",
        vcenter_hosts=["vc1", "vc2", "vc3"],
        check_dns=True,
        check_ad=True,
        ad_host="mgmt01",
        ad_server="",
        dns_timeout=5.0,
        ad_timeout=30,
        max_concurrency=2,
        output_path=tmp_path / "audit.csv",
        json_report_path=tmp_path / "report.json",
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def test_runner_partial_failure_exits_zero(tmp_path):
    inventory = FakeInventory({
        "vc1": [_vm(1)],
        "vc2": InventoryConnectionError("vc2", "timeout"),
        "vc3": [_vm(2)],
    })
    exporter = RecordingExporter()
    batch = _runner(inventory=inventory, directory=FakeDirectory(ages={"host1": (120, 95)}), exporter=exporter)

    outcome = Runner(_config(tmp_path), batch=batch).execute()

    assert outcome.exit_code == 0
    assert len(outcome.records) == 2
    assert outcome.inventory.failed_hosts.keys() == {"vc2"}
    assert (tmp_path / "report.json").exists()


def test_runner_total_failure_exits_nonzero(tmp_path):
    inventory = FakeInventory({h: InventoryConnectionError(h, "down") for h in ("vc1", "vc2", "vc3")})
    exporter = RecordingExporter()
    batch = _runner(inventory=inventory, exporter=exporter)

    outcome = Runner(_config(tmp_path), batch=batch).execute()

    assert outcome.exit_code == 1
    assert outcome.records == []
    assert exporter.written is None


def test_runner_export_failure_exits_nonzero(tmp_path):
    inventory = FakeInventory({"vc1": [_vm(1)], "vc2": [], "vc3": []})
    batch = _runner(inventory=inventory, exporter=RecordingExporter(fail=True),
                    options=AuditOptions(check_dns=False, check_ad=False))

    outcome = Runner(_config(tmp_path), batch=batch).execute()

    assert outcome.exit_code == 1


def test_logging_observer_throttles_but_always_logs_completion(caplog):
    from tombstone_audit.progress import LoggingProgressObserver

    observer = LoggingProgressObserver(step=50)
    with caplog.at_level("INFO", logger="tombstone.progress"):
        for i in range(1, 11):
            observer.report(i / 10, f"{i}/10")

    messages = [r.getMessage() for r in caplog.records if r.levelname == "INFO"]
    assert len(messages) == 3
    assert "100%" in messages[-1]


def test_logging_observer_logs_full_completion_once_for_large_batches(caplog):
    from tombstone_audit.progress import LoggingProgressObserver

    observer = LoggingProgressObserver()
    with caplog.at_level("INFO", logger="tombstone.progress"):
        for i in range(1, 201):
            observer.report(i / 200, f"{i}/200")

    completed = [r.getMessage() for r in caplog.records if r.levelname == "INFO" and "100%" in r.getMessage()]
    assert completed == ["Progress 100% - 200/200"]


def test_single_label_hostname_counted_as_unscoped():
    directory = FakeDirectory(ages={"host1": (500, 500)})
    runner = _runner(options=AuditOptions(check_dns=False, check_ad=True), directory=directory)
    vm = VirtualMachineRecord(vm_id="vm-1", name="host1", guest_hostname="host1", guest_ips=("10.0.0.1",))

    records = runner.run([vm])

    assert directory.lookups == []
    assert records[0].ad_presence == "Absent"
    assert runner.stats["ad_unscoped"] == 1
    assert runner.stats["ad_not_found"] == 0


def test_not_found_and_unscoped_counted_apart():
    directory = FakeDirectory(ages={"host1": (10, 10)})
    runner = _runner(options=AuditOptions(check_dns=False, check_ad=True), directory=directory)
    unscoped = VirtualMachineRecord(vm_id="vm-9", name="lonely", guest_hostname="lonely")

    runner.run([_vm(1), _vm(2), unscoped])

    assert directory.lookups.count("host2") == 1
    assert runner.stats["ad_present"] == 1
    assert runner.stats["ad_not_found"] == 1
    assert runner.stats["ad_unscoped"] == 1


class InterruptingObserver(RecordingObserver):
    """Raises KeyboardInterrupt on the first report, like Ctrl-C in the collecting thread."""

    def report(self, fraction, label):
        super().report(fraction, label)
        if len(self.reports) == 1:
            raise KeyboardInterrupt


def test_interrupt_cancels_and_still_exports_every_vm():
    observer = InterruptingObserver()
    exporter = RecordingExporter()
    runner = _runner(options=AuditOptions(check_dns=True, check_ad=False), dns=SlowDns(4),
                     observer=observer, exporter=exporter, max_concurrency=1)
    vms = [_vm(i) for i in range(1, 5)]

    records = runner.run(vms)

    assert runner.cancelled
    assert [r.vm_id for r in records] == [vm.vm_id for vm in vms]
    assert exporter.written == records
    assert [f for f, _ in observer.reports].count(1.0) == 1
    assert len(observer.reports) == 4
