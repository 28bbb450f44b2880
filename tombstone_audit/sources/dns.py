import concurrent.futures
import logging
import socket
from typing import List

from .base import ResolutionError

logger = logging.getLogger("tombstone.dns")


class SocketDnsSource:
    """System resolver lookups with a bounded wait per lookup.

    ``socket`` resolver calls cannot be given a timeout directly, so each one
    runs on a small pool and the caller stops waiting after ``timeout``
    seconds. A timed out lookup keeps its worker until the resolver returns.
    """

    def __init__(self, timeout: float = 5.0, max_workers: int = 8):
        self.timeout = timeout
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="dns"
        )

    def _call(self, label: str, fn, *args):
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError as exc:
            future.cancel()
            raise ResolutionError(f"{label}: timed out after {self.timeout}s") from exc
        except (OSError, UnicodeError) as exc:
            # gaierror / herror are OSError subclasses
            raise ResolutionError(f"{label}: {exc}") from exc

    def resolve_forward(self, hostname: str) -> List[str]:
        infos = self._call(f"forward {hostname}", socket.getaddrinfo, hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
        ips: List[str] = []
        for _family, _type, _proto, _canon, sockaddr in infos:
            ip = sockaddr[0]
            if ip not in ips:
                ips.append(ip)
        if not ips:
            raise ResolutionError(f"forward {hostname}: no records")
        logger.debug(f"{hostname} -> {ips}")
        return ips

    def resolve_reverse(self, ip: str) -> str:
        name, _aliases, _addrs = self._call(f"reverse {ip}", socket.gethostbyaddr, ip)
        logger.debug(f"{ip} -> {name}")
        return name

    def close(self) -> None:
        self._executor.shutdown(wait=False)
