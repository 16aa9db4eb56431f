import logging
import subprocess
from collections.abc import Sequence

logger = logging.getLogger("ServiceManager")


class SupervisorError(Exception):
    """A systemd unit could not be brought into the requested state."""

    def __init__(self, unit: str, message: str) -> None:
        super().__init__(f"{unit}: {message}")
        self.unit = unit
        self.message = message


def unit_name(prefix: str, service: str) -> str:
    return f"{prefix}-{service}.service"


class SystemdSupervisor:
    """Starts, stops and queries the appliance's systemd units.

    Stopping or restarting a unit that is unknown or already in the wanted
    state is never an error; only ``start`` reports failures.
    """

    def __init__(self, systemctl: Sequence[str] = ("sudo", "/bin/systemctl")) -> None:
        self.systemctl = list(systemctl)

    def _run(self, verb: str, unit: str) -> subprocess.CompletedProcess[str]:
        cmd = [*self.systemctl, verb, unit]
        logger.debug(f"CMD: {' '.join(cmd)}")
        return subprocess.run(cmd, capture_output=True, text=True)

    def start(self, unit: str) -> None:
        logger.info(f"Starting {unit}...")
        try:
            result = self._run("start", unit)
        except OSError as e:
            raise SupervisorError(unit, str(e)) from e

        if result.returncode != 0:
            err_msg = (result.stderr or result.stdout or "").strip() or f"exit {result.returncode}"
            logger.error(f"Failed to start {unit}: {err_msg}")
            raise SupervisorError(unit, err_msg)

    def stop(self, unit: str) -> None:
        logger.info(f"Stopping {unit}...")
        try:
            result = self._run("stop", unit)
            if result.returncode != 0:
                logger.debug(f"Stop {unit} returned {result.returncode}: {result.stderr.strip()}")
        except OSError as e:
            logger.error(f"Error stopping {unit}: {e}")

    def restart(self, unit: str) -> None:
        logger.info(f"Restarting {unit}...")
        try:
            result = self._run("restart", unit)
            if result.returncode != 0:
                logger.warning(f"Restart {unit} returned {result.returncode}: {result.stderr.strip()}")
        except OSError as e:
            logger.error(f"Error restarting {unit}: {e}")

    def is_active(self, unit: str) -> bool:
        try:
            result = self._run("is-active", unit)
        except OSError as e:
            logger.error(f"is-active {unit} failed: {e}")
            return False
        return result.stdout.strip() == "active"
