import logging
import re
import subprocess
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from rtpbridge_controller.models import Source
from rtpbridge_controller.persistence import ALOOP_CAPTURE, LINEIN_CAPTURE

logger = logging.getLogger("DeviceManager")

DEFAULT_DEVICE = "default"
AUTO_DEVICE = "auto"
DEFAULT_LOOPBACK_CAPTURE = "hw:Loopback,1,0"

# card 1: Device [USB Audio Device], device 0: USB Audio [USB Audio]
_CARD_LINE = re.compile(r"card (\d+): (.*?) \[(.*?)\], device (\d+):")


@dataclass
class AudioDevice:
    name: str  # e.g. "USB Audio Device"
    card_id: str  # e.g. "1"
    device_id: str  # e.g. "0"

    @property
    def hw_address(self) -> str:
        return f"hw:{self.card_id},{self.device_id}"


def parse_arecord_list(output: str) -> list[AudioDevice]:
    devices = []
    for line in output.splitlines():
        match = _CARD_LINE.search(line)
        if match:
            devices.append(
                AudioDevice(name=match.group(3), card_id=match.group(1), device_id=match.group(4))
            )
    return devices


def scan_devices() -> list[AudioDevice]:
    """List ALSA capture devices via `arecord -l`."""
    try:
        result = subprocess.run(["arecord", "-l"], capture_output=True, text=True)
    except Exception as e:
        logger.error(f"Scan failed: {e}")
        return []

    if result.returncode != 0:
        logger.warning(f"arecord -l exited with {result.returncode}: {result.stderr.strip()}")
    return parse_arecord_list(result.stdout or "")


def resolve_linein_device(
    config: Mapping[str, str],
    lister: Callable[[], list[AudioDevice]] = scan_devices,
) -> str:
    """Concrete capture device for Line-In. Never raises."""
    configured = (config.get(LINEIN_CAPTURE) or AUTO_DEVICE).strip()
    if configured and configured != AUTO_DEVICE:
        return configured

    try:
        devices = lister()
    except Exception as e:
        logger.error(f"Device enumeration failed: {e}")
        devices = []

    if not devices:
        logger.info("No capture card found, using default device")
        return DEFAULT_DEVICE

    # The first card's first PCM, like the Line-In stream itself
    return f"hw:{devices[0].card_id},0"


def resolve_source_device(
    source: Source,
    config: Mapping[str, str],
    lister: Callable[[], list[AudioDevice]] = scan_devices,
    loopback_capture: str = DEFAULT_LOOPBACK_CAPTURE,
) -> str:
    if source is Source.SPOTIFY:
        return (config.get(ALOOP_CAPTURE) or loopback_capture).strip()
    if source is Source.LINEIN:
        return resolve_linein_device(config, lister)
    return ""
