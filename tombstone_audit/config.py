import argparse
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from dotenv import load_dotenv

from .sources.base import ConfigError

DEFAULT_OUTPUT_NAME = "tombstone_audit.csv"


@dataclass
class Config:
    # vCenter
    vcenter_hosts: List[str]
    username: str
    password: str
    port: int
    verify_ssl: bool

    # Checks
    check_dns: bool
    check_ad: bool

    # Directory (WinRM management host)
    ad_host: str
    ad_username: str
    ad_password: str
    ad_server: str
    winrm_port: int
    winrm_transport: str
    winrm_scheme: str

    # Resilience / Performance
    dns_timeout: float
    ad_timeout: int
    max_concurrency: int

    # Output
    out_dir: Path
    output_path: Path
    json_report_path: Path

    # Mode
    debug: bool


def _read_hosts_file(path: str) -> List[str]:
    with open(path, 'r') as f:
        return [line.strip() for line in f if line.strip() and not line.strip().startswith("#")]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Audit vCenter VMs against DNS and Active Directory")

    # Inventory
    parser.add_argument("--vcenter-hosts", help="Comma-separated list of vCenter hosts")
    parser.add_argument("--hosts-file", help="Path to file with vCenter hosts (one per line)")
    parser.add_argument("--username", help="vCenter username")
    parser.add_argument("--password", help="vCenter password")
    parser.add_argument("--port", type=int, default=443, help="vCenter port (default 443)")
    parser.add_argument("--insecure", action="store_true", help="Ignore SSL cert validation")

    # Checks
    parser.add_argument("--check-dns", dest="check_dns", action=argparse.BooleanOptionalAction, default=True,
                        help="Run forward/reverse DNS checks (default on)")
    parser.add_argument("--check-ad", dest="check_ad", action=argparse.BooleanOptionalAction, default=True,
                        help="Run Active Directory checks (default on)")

    # Directory
    parser.add_argument("--ad-host", help="Windows host with the ActiveDirectory module, reached over WinRM")
    parser.add_argument("--ad-username", help="WinRM/AD username (defaults to --username)")
    parser.add_argument("--ad-password", help="WinRM/AD password (defaults to --password)")
    parser.add_argument("--ad-server", default=None, help="Domain controller used for the tombstone lifetime query")
    parser.add_argument("--winrm-port", type=int, default=5985, help="WinRM Port (default 5985)")
    parser.add_argument("--winrm-transport", default="ntlm", choices=["ntlm", "kerberos", "basic", "credssp"], help="WinRM Transport")
    parser.add_argument("--winrm-scheme", default="http", choices=["http", "https"], help="WinRM Scheme")

    # Resilience
    parser.add_argument("--dns-timeout", type=float, default=5.0, help="Timeout (sec) per DNS lookup")
    parser.add_argument("--ad-timeout", type=int, default=30, help="Timeout (sec) per directory query")
    parser.add_argument("--concurrency", type=int, default=8, help="Max VMs checked in parallel")

    # Output
    parser.add_argument("--out-dir", default="./out", help="Output directory")
    parser.add_argument("--output", help="Report path (.csv or .xlsx); defaults to <out-dir>/tombstone_audit.csv")

    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--env-file", help="Path to .env file")
    return parser


def load_config(argv: Optional[Sequence[str]] = None) -> Config:
    args = build_parser().parse_args(argv)

    # Load Env
    env_path = Path(args.env_file) if args.env_file else Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    username = args.username or os.getenv("VCENTER_USER") or ""
    password = args.password or os.getenv("VCENTER_PASSWORD") or os.getenv("VCENTER_PASS") or ""

    # Resolve Hosts
    hosts: List[str] = []
    if args.hosts_file:
        if not os.path.isfile(args.hosts_file):
            raise ConfigError(f"hosts file not found: {args.hosts_file}")
        hosts.extend(_read_hosts_file(args.hosts_file))
    if args.vcenter_hosts:
        hosts.extend([h.strip() for h in args.vcenter_hosts.split(",") if h.strip()])
    if not hosts and os.getenv("VCENTER_HOSTS"):
        hosts = [h.strip() for h in os.getenv("VCENTER_HOSTS").split(",") if h.strip()]
    hosts = list(dict.fromkeys(hosts))

    if not hosts:
        raise ConfigError("no vCenter hosts given (--vcenter-hosts, --hosts-file or VCENTER_HOSTS)")
    if not username or not password:
        raise ConfigError("vCenter credentials missing (--username/--password or VCENTER_USER/VCENTER_PASSWORD)")

    ad_host = args.ad_host or os.getenv("AD_WINRM_HOST") or ""
    if args.check_ad and not ad_host:
        raise ConfigError("--check-ad needs --ad-host (or AD_WINRM_HOST); pass --no-check-ad to skip directory checks")
    if args.concurrency < 1:
        raise ConfigError("--concurrency must be at least 1")

    out_dir = Path(args.out_dir)
    output_path = Path(args.output) if args.output else out_dir / DEFAULT_OUTPUT_NAME

    return Config(
        vcenter_hosts=hosts,
        username=username,
        password=password,
        port=args.port,
        verify_ssl=not args.insecure,
        check_dns=args.check_dns,
        check_ad=args.check_ad,
        ad_host=ad_host,
        ad_username=args.ad_username or os.getenv("AD_USER") or username,
        ad_password=args.ad_password or os.getenv("AD_PASSWORD") or password,
        ad_server=args.ad_server if args.ad_server is not None else (os.getenv("AD_SERVER") or ""),
        winrm_port=args.winrm_port,
        winrm_transport=args.winrm_transport,
        winrm_scheme=args.winrm_scheme,
        dns_timeout=args.dns_timeout,
        ad_timeout=args.ad_timeout,
        max_concurrency=args.concurrency,
        out_dir=out_dir,
        output_path=output_path,
        json_report_path=out_dir / "tombstone_run_report.json",
        debug=args.debug,
    )
