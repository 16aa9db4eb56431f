import logging
import os
import platform
import socket
import subprocess
import typing
from pathlib import Path

import psutil

from rtpbridge_controller.service_manager import SystemdSupervisor, unit_name

logger = logging.getLogger("Diagnostics")


def command_output(cmd: list[str]) -> str:
    """stdout of a command, or its error text; never raises."""
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except Exception as e:
        return str(e)
    out = (result.stdout or "").strip()
    err = (result.stderr or "").strip()
    if result.returncode != 0 and not out:
        return f"(exit {result.returncode}) {err}"
    return out or err


def primary_ipv4() -> str:
    try:
        for name, addrs in psutil.net_if_addrs().items():
            if name == "lo":
                continue
            for addr in addrs:
                if addr.family == socket.AF_INET and not addr.address.startswith("127."):
                    return str(addr.address)
    except Exception as e:
        logger.debug(f"Interface lookup failed: {e}")
    return ""


def aloop_loaded(modules_file: Path = Path("/proc/modules")) -> bool:
    try:
        with open(modules_file) as f:
            return any(line.split(" ", 1)[0] == "snd_aloop" for line in f)
    except OSError:
        return False


def collect_system_info(supervisor: SystemdSupervisor, prefix: str) -> dict[str, typing.Any]:
    uname = platform.uname()
    process = psutil.Process(os.getpid())
    return {
        "hostname": socket.gethostname(),
        "ip": primary_ipv4(),
        "uname": " ".join(
            [uname.system, uname.node, uname.release, uname.version, uname.machine]
        ),
        "arecord_l": command_output(["arecord", "-l"]),
        "aplay_l": command_output(["aplay", "-l"]),
        "aloop_loaded": aloop_loaded(),
        "cpu_percent": psutil.cpu_percent(),
        "memory_usage_mb": process.memory_info().rss / 1024 / 1024,
        "services": {
            "spotify_rx": supervisor.is_active(unit_name(prefix, "spotify")),
            "spotify_stream": supervisor.is_active(unit_name(prefix, "stream-spotify")),
            "linein_stream": supervisor.is_active(unit_name(prefix, "stream-linein")),
            "web": True,
        },
    }
