import logging
import os
import re
import tempfile
import threading
from collections.abc import Mapping
from pathlib import Path

from dotenv import dotenv_values

logger = logging.getLogger("Persistence")

# Keys written by the controller
LAST_SOURCE = "LAST_SOURCE"
STREAM_VOLUME = "STREAM_VOLUME"
LINEIN_CAPTURE = "LINEIN_CAPTURE"
SPOTIFY_NAME = "SPOTIFY_NAME"
ALOOP_CAPTURE = "ALOOP_CAPTURE"
MCAST_IP = "MCAST_IP"
MCAST_PORT = "MCAST_PORT"

_ASSIGNMENT = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=")


def sanitize_value(value: object) -> str:
    """Quotes are replaced rather than escaped, line breaks dropped."""
    return str(value).replace('"', "'").replace("\n", "").replace("\r", "")


class ConfigStore:
    """Env-style appliance config file (KEY="value" per line).

    Only keys already present in the file are ever written; comments and
    unrelated lines survive every update.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def read_all(self) -> dict[str, str]:
        if not self.path.exists():
            raise FileNotFoundError(f"Config file not found: {self.path}")
        values = dotenv_values(self.path, interpolate=False)
        return {k: (v or "") for k, v in values.items()}

    def get(self, key: str, default: str = "") -> str:
        return self.read_all().get(key, default)

    def update(self, updates: Mapping[str, object]) -> set[str]:
        """Rewrite the given keys in place. Returns the keys actually written."""
        with self._lock:
            with open(self.path, encoding="utf-8") as f:
                lines = f.readlines()

            written: set[str] = set()
            new_lines = []
            for line in lines:
                match = _ASSIGNMENT.match(line)
                if match:
                    key = match.group(1)
                    if key in updates:
                        line = f'{key}="{sanitize_value(updates[key])}"\n'
                        written.add(key)
                new_lines.append(line)

            missing = set(updates) - written
            if missing:
                logger.warning(f"Ignoring unknown config keys: {sorted(missing)}")

            if written:
                self._write_atomic(new_lines)
                logger.info(f"Config updated: {sorted(written)}")
            return written

    def _write_atomic(self, lines: list[str]) -> None:
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.writelines(lines)
            if self.path.exists():
                os.chmod(tmp_path, self.path.stat().st_mode & 0o777)
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
