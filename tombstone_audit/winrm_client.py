import logging
from dataclasses import dataclass
from typing import Optional

import winrm

logger = logging.getLogger("tombstone.winrm")

ERROR_STDERR_PATTERNS = (
    "remoteexception",
    "fullyqualifiederrorid",
    "categoryinfo",
    "<s s=\"error\">",
    "exception calling",
    "at line",
)


@dataclass
class WinRMResult:
    host: str
    exit_code: int
    stdout: str
    stderr: str
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        if self.exit_code != 0 or self.error:
            return True
        lowered = (self.stderr or "").lower()
        return any(p in lowered for p in ERROR_STDERR_PATTERNS)

    @property
    def error_text(self) -> str:
        text = self.error or self.stderr or ""
        if not text and self.exit_code != 0:
            text = f"exit code {self.exit_code}"
        return text


class WinRMClient:
    def __init__(self, host: str, username: str, password: str, port: int = 5985,
                 transport: str = "ntlm", scheme: str = "http", verify_ssl: bool = True,
                 timeout: int = 30):
        self.host = host
        self.username = username
        self.password = password
        self.port = port
        self.transport = transport
        self.scheme = scheme
        self.verify_ssl = verify_ssl
        self.timeout = timeout

    @property
    def endpoint(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}/wsman"

    def _get_session(self):
        return winrm.Session(
            target=self.endpoint,
            auth=(self.username, self.password),
            transport=self.transport,
            server_cert_validation='validate' if self.verify_ssl else 'ignore',
            operation_timeout_sec=self.timeout,
            read_timeout_sec=self.timeout + 10
        )

    def run_command(self, command: str) -> WinRMResult:
        """Run a PowerShell script and capture its output. Never raises."""
        try:
            session = self._get_session()
            r = session.run_ps(command)
            return WinRMResult(
                host=self.host,
                exit_code=r.status_code,
                stdout=self._decode(r.std_out),
                stderr=self._decode(r.std_err)
            )
        except Exception as e:
            logger.debug(f"[{self.host}] WinRM call failed: {e}")
            return WinRMResult(self.host, -1, "", "", str(e))

    def _decode(self, b: bytes) -> str:
        if not b:
            return ""
        try:
            return b.decode("utf-8")
        except UnicodeDecodeError:
            return b.decode("utf-16-le", errors="ignore")
