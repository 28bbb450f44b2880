"""Active Directory lookups executed as PowerShell over WinRM.

The management host named by ``--ad-host`` needs the ActiveDirectory module
(RSAT). Every query prints a single compressed JSON document, or nothing when
no computer object matches.
"""
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Sequence

from ..models import ComputerObject
from ..winrm_client import WinRMClient
from .base import ComputerNotFound, DirectoryQueryError

logger = logging.getLogger("tombstone.directory")

# Used by AD when tombstoneLifetime is not set on the Directory Service object.
DEFAULT_TOMBSTONE_LIFETIME_DAYS = 60

FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)
FILETIME_NEVER = 0x7FFFFFFFFFFFFFFF

NOT_FOUND_MARKERS = ("adidentitynotfoundexception", "directory object not found")
SAFE_NAME = re.compile(r"^[A-Za-z0-9_.-]+$")

FIND_COMPUTER_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
$ProgressPreference = 'SilentlyContinue'
Import-Module ActiveDirectory
$params = @{
    Filter = "Name -eq '{NAME}'"
    SearchBase = '{SEARCH_BASE}'
    Properties = @({ATTRIBUTES})
}
$server = '{SERVER}'
if ($server) { $params.Server = $server }
$c = Get-ADComputer @params | Select-Object -First 1
if ($c) {
    [pscustomobject]@{
        Name = $c.Name
        DistinguishedName = $c.DistinguishedName
        lastLogonTimestamp = $c.lastLogonTimestamp
        pwdLastSet = $c.pwdLastSet
    } | ConvertTo-Json -Compress
}
"""

TOMBSTONE_LIFETIME_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
$ProgressPreference = 'SilentlyContinue'
Import-Module ActiveDirectory
$p = @{}
$server = '{SERVER}'
if ($server) { $p.Server = $server }
$root = Get-ADRootDSE @p
$ds = Get-ADObject -Identity "CN=Directory Service,CN=Windows NT,CN=Services,$($root.configurationNamingContext)" -Properties tombstoneLifetime @p
[pscustomobject]@{ TombstoneLifetime = $ds.tombstoneLifetime } | ConvertTo-Json -Compress
"""


def ps_quote(value: str) -> str:
    """Escape a value for use inside a single-quoted PowerShell string."""
    return (value or "").replace("'", "''")


def filetime_to_datetime(value: Any) -> Optional[datetime]:
    """Convert a Windows FILETIME (100ns ticks since 1601) to an aware datetime.

    ``0`` and the max-int64 sentinel both mean "never" and map to None.
    """
    if value is None or value == "":
        return None
    try:
        ticks = int(value)
    except (TypeError, ValueError):
        logger.debug(f"Unparseable FILETIME value {value!r}")
        return None
    if ticks <= 0 or ticks >= FILETIME_NEVER:
        return None
    return FILETIME_EPOCH + timedelta(microseconds=ticks // 10)


def _parse_json(stdout: str) -> Optional[Dict[str, Any]]:
    text = (stdout or "").strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise DirectoryQueryError(f"unparseable directory output: {exc}") from exc
    if isinstance(data, list):
        data = data[0] if data else None
    if data is not None and not isinstance(data, dict):
        raise DirectoryQueryError(f"unexpected directory output type {type(data).__name__}")
    return data


class ActiveDirectorySource:
    def __init__(self, client: WinRMClient, server: str = ""):
        self.client = client
        self.server = server

    def get_tombstone_lifetime_days(self) -> int:
        script = TOMBSTONE_LIFETIME_SCRIPT.replace("{SERVER}", ps_quote(self.server)).strip()
        res = self.client.run_command(script)
        if res.failed:
            raise DirectoryQueryError(f"tombstone lifetime query failed: {res.error_text[:200]}")
        data = _parse_json(res.stdout) or {}
        value = data.get("TombstoneLifetime")
        if value in (None, ""):
            logger.info(f"tombstoneLifetime not set; using AD default of {DEFAULT_TOMBSTONE_LIFETIME_DAYS} days")
            return DEFAULT_TOMBSTONE_LIFETIME_DAYS
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise DirectoryQueryError(f"invalid tombstoneLifetime {value!r}") from exc

    def find_computer(self, short_name: str, search_base: str, server: str, attributes: Sequence[str]) -> ComputerObject:
        if not SAFE_NAME.match(short_name or ""):
            raise DirectoryQueryError(f"refusing to query unsafe computer name {short_name!r}")
        script = (
            FIND_COMPUTER_SCRIPT
            .replace("{NAME}", ps_quote(short_name))
            .replace("{SEARCH_BASE}", ps_quote(search_base))
            .replace("{SERVER}", ps_quote(server))
            .replace("{ATTRIBUTES}", ",".join(f"'{ps_quote(a)}'" for a in attributes))
            .strip()
        )
        res = self.client.run_command(script)
        if res.failed:
            lowered = res.error_text.lower()
            if any(m in lowered for m in NOT_FOUND_MARKERS):
                raise ComputerNotFound(f"{short_name} not under {search_base}")
            raise DirectoryQueryError(res.error_text[:200])

        data = _parse_json(res.stdout)
        if not data:
            raise ComputerNotFound(f"{short_name} not under {search_base}")

        return ComputerObject(
            name=data.get("Name") or short_name,
            distinguished_name=data.get("DistinguishedName") or "",
            password_last_set=filetime_to_datetime(data.get("pwdLastSet")),
            last_logon=filetime_to_datetime(data.get("lastLogonTimestamp")),
        )
