"""
Kill switch signals.

A kill switch is a single boolean polled at the top of every decision cycle
and by a scheduler job. Once observed, the coordinator disables trading on
every engine and halts their ledgers.
"""

from datetime import UTC, datetime
from pathlib import Path

from mstb.utils.logger import get_logger

logger = get_logger(__name__)


class FlagFileKillSwitch:
    """
    Triggered while a control file exists.

    Any error while checking the file is treated as triggered.

    Example:
        ```python
        switch = FlagFileKillSwitch("data/kill-switch.flag")
        if switch.is_triggered():
            ...
        ```
    """

    def __init__(self, path: str | Path = "data/kill-switch.flag"):
        self.path = Path(path)
        self._last_state = False

    def is_triggered(self) -> bool:
        try:
            triggered = self.path.exists()
        except OSError as e:
            logger.error("kill_switch_check_failed", path=str(self.path), error=str(e))
            triggered = True

        if triggered and not self._last_state:
            logger.critical("kill_switch_flag_detected", path=str(self.path))
        self._last_state = triggered
        return triggered

    def activate(self, reason: str = "") -> None:
        """Create the control file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(f"{datetime.now(UTC).isoformat()} {reason}\n")
        logger.critical("kill_switch_activated", path=str(self.path), reason=reason)

    def deactivate(self) -> None:
        self.path.unlink(missing_ok=True)
        self._last_state = False
        logger.warning("kill_switch_deactivated", path=str(self.path))


class ManualKillSwitch:
    """In-process kill switch, flipped by code or tests."""

    def __init__(self):
        self._active = False
        self.activation_time: datetime | None = None
        self.activation_reason: str | None = None

    def activate(self, reason: str) -> None:
        self._active = True
        self.activation_time = datetime.now(UTC)
        self.activation_reason = reason
        logger.critical("kill_switch_activated", reason=reason)

    def deactivate(self) -> None:
        logger.warning("kill_switch_deactivated", previous_reason=self.activation_reason)
        self._active = False
        self.activation_time = None
        self.activation_reason = None

    def is_triggered(self) -> bool:
        return self._active

    def get_status(self) -> dict:
        return {
            "active": self._active,
            "activation_time": self.activation_time.isoformat() if self.activation_time else None,
            "reason": self.activation_reason,
        }
