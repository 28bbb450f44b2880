import logging
import ssl
from typing import List, Optional

from pyVim.connect import Disconnect, SmartConnect  # SOAP client
from pyVmomi import vim  # vSphere SDK types

from ..models import VirtualMachineRecord
from .base import InventoryConnectionError

logger = logging.getLogger("tombstone.vcenter")


def _guest_ips(vm) -> List[str]:
    """Guest-reported IPs, primary first, then per-NIC addresses in order."""
    guest = getattr(vm, "guest", None)
    ips: List[str] = []
    primary = getattr(guest, "ipAddress", None) if guest else None
    if primary:
        ips.append(primary)
    for nic in (getattr(guest, "net", None) or []) if guest else []:
        for ip in getattr(nic, "ipAddress", None) or []:
            if ip and ip not in ips:
                ips.append(ip)
    return ips


def vm_to_record(vm, source_host: str = "") -> Optional[VirtualMachineRecord]:
    """Map a vim.VirtualMachine to a record; None for templates."""
    config = getattr(vm, "config", None)
    if config is not None and getattr(config, "template", False):
        return None
    guest = getattr(vm, "guest", None)
    guest_id = getattr(guest, "guestId", None) if guest else None
    if not guest_id and config is not None:
        guest_id = getattr(config, "guestId", None)
    return VirtualMachineRecord(
        vm_id=str(getattr(vm, "_moId", "") or ""),
        name=getattr(vm, "name", "") or "",
        guest_hostname=getattr(guest, "hostName", None) if guest else None,
        guest_ips=tuple(_guest_ips(vm)),
        guest_id=guest_id,
        source_host=source_host,
    )


class VCenterSession:
    def __init__(self, host: str, service_instance):
        self.host = host
        self.si = service_instance

    def list_vms(self) -> List[VirtualMachineRecord]:
        content = self.si.RetrieveContent()
        view = content.viewManager.CreateContainerView(content.rootFolder, [vim.VirtualMachine], True)
        records: List[VirtualMachineRecord] = []
        try:
            for vm in view.view:
                try:
                    record = vm_to_record(vm, self.host)
                except Exception as exc:
                    logger.warning(f"[{self.host}] Skipping VM {getattr(vm, '_moId', '?')}: {exc}")
                    continue
                if record is not None:
                    records.append(record)
        finally:
            try:
                view.Destroy()
            except Exception:
                logger.debug("Error destroying SOAP view", exc_info=True)
        logger.info(f"[{self.host}] Enumerated {len(records)} VMs")
        return records

    def close(self) -> None:
        try:
            Disconnect(self.si)
            logger.info(f"Disconnected from vCenter: {self.host}")
        except Exception:
            logger.debug("Error disconnecting SOAP session", exc_info=True)


class VCenterInventorySource:
    def __init__(self, username: str, password: str, port: int = 443, verify_ssl: bool = True):
        self.username = username
        self.password = password
        self.port = port
        self.verify_ssl = verify_ssl

    def _ssl_context(self):
        if self.verify_ssl:
            return None
        return ssl._create_unverified_context()

    def connect(self, host: str) -> VCenterSession:
        soap_host = (host or "").replace("https://", "").replace("http://", "").strip("/")
        try:
            si = SmartConnect(
                host=soap_host,
                user=self.username,
                pwd=self.password,
                port=self.port,
                sslContext=self._ssl_context(),
            )
        except Exception as exc:
            raise InventoryConnectionError(host, str(exc)) from exc
        logger.info(f"Connected to vCenter: {soap_host}")
        return VCenterSession(soap_host, si)
