import logging
import sys
from typing import Optional, Sequence

from .config import load_config
from .runner import Runner
from .sources.base import ConfigError


def setup_logging(debug: bool):
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )
    # pyVmomi and winrm are chatty at DEBUG
    if not debug:
        logging.getLogger("urllib3").setLevel(logging.WARNING)


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        config = load_config(argv)
    except ConfigError as e:
        print(f"CONFIG ERROR: {e}", file=sys.stderr)
        return 1

    setup_logging(config.debug)
    try:
        outcome = Runner(config).execute()
    except Exception as e:
        logging.getLogger("tombstone").exception("Audit aborted")
        print(f"FATAL ERROR: {e}", file=sys.stderr)
        return 1
    return outcome.exit_code


if __name__ == "__main__":
    sys.exit(main())
