import logging

logger = logging.getLogger("tombstone.progress")


class LoggingProgressObserver:
    """Logs progress every ``step`` percent and always at 100%."""

    def __init__(self, step: int = 10):
        self.step = max(1, step)
        self._last_bucket = -1

    def report(self, fraction: float, label: str) -> None:
        # floor, so only the final report reads 100%
        pct = int(max(0.0, min(1.0, fraction)) * 100)
        bucket = pct // self.step
        if pct < 100 and bucket <= self._last_bucket:
            logger.debug(f"{pct:3d}% {label}")
            return
        self._last_bucket = bucket
        logger.info(f"Progress {pct:3d}% - {label}")


class NullProgressObserver:
    def report(self, fraction: float, label: str) -> None:
        pass
