from unittest.mock import MagicMock, patch

import pytest
from rtpbridge_controller.controller import SourceController
from rtpbridge_controller.device_manager import AudioDevice
from rtpbridge_controller.meter import CaptureProcess, LevelMeter
from rtpbridge_controller.persistence import ConfigStore
from rtpbridge_controller.service_manager import SupervisorError

SAMPLE_CONFIG = """\
# MulticastRTPAudioBridge configuration
SPOTIFY_NAME="Gym Audio"

# Fixed multicast destination
MCAST_IP="239.10.10.10"
MCAST_PORT="5004"
MCAST_TTL="1"

# Audio settings
OPUS_BITRATE="128000"     # bps
STREAM_VOLUME="1.0"   # 0.0 - 1.5 (software gain)

# ALSA loopback devices
ALOOP_PLAYBACK="hw:Loopback,0,0"
ALOOP_CAPTURE="hw:Loopback,1,0"

LINEIN_CAPTURE="auto"
LINEIN_RATE="48000"
LINEIN_CHANNELS="2"

# Persisted last selected source: spotify|linein|off
LAST_SOURCE="off"
"""


class FakeSupervisor:
    """In-memory stand-in for systemd, records every call."""

    def __init__(self) -> None:
        self.active: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.fail_start: set[str] = set()

    def start(self, unit: str) -> None:
        self.calls.append(("start", unit))
        if unit in self.fail_start:
            raise SupervisorError(unit, "Job for unit failed")
        self.active.add(unit)

    def stop(self, unit: str) -> None:
        self.calls.append(("stop", unit))
        self.active.discard(unit)

    def restart(self, unit: str) -> None:
        self.calls.append(("restart", unit))
        self.active.add(unit)

    def is_active(self, unit: str) -> bool:
        return unit in self.active


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.env"
    path.write_text(SAMPLE_CONFIG, encoding="utf-8")
    return path


@pytest.fixture
def store(config_file):
    return ConfigStore(config_file)


@pytest.fixture
def supervisor():
    return FakeSupervisor()


@pytest.fixture
def mock_meter():
    meter = MagicMock(spec=LevelMeter)
    meter.target = (None, "")
    return meter


@pytest.fixture
def controller(store, supervisor, mock_meter):
    return SourceController(
        store=store,
        supervisor=supervisor,
        meter=mock_meter,
        device_lister=lambda: [AudioDevice(name="USB Audio Device", card_id="1", device_id="0")],
    )


@pytest.fixture
def mock_popen():
    """Factory for mock capture processes whose stdout is always readable."""

    def _create(chunks=(), returncode=None, stderr_bytes=b""):
        proc = MagicMock()
        proc.pid = 4242
        proc.stdout.read.side_effect = list(chunks) + [b""] * 100
        proc.stderr.read.return_value = stderr_bytes
        proc.poll.return_value = returncode
        return proc

    with patch.object(CaptureProcess, "_wait_readable", return_value=True):
        yield _create
