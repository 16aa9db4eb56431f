"""Live level meter for the active source.

A single `arecord` capture process is owned by the LevelMeter. A background
thread reads raw S16_LE chunks from it and reduces each chunk to a smoothed
0..100 level. Capture problems are never raised; they only show up as
``last_error`` in a snapshot.
"""

import dataclasses
import logging
import select
import subprocess
import threading
import typing
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from rtpbridge_controller.models import Source

logger = logging.getLogger("LevelMeter")


@dataclass
class MeterState:
    level: int = 0
    source: Source = Source.OFF
    device: str = ""
    last_error: str | None = None


def chunk_level(data: bytes, full_scale: float = 16000.0) -> int:
    """RMS of little-endian int16 samples mapped linearly onto 0..100."""
    usable = len(data) - (len(data) % 2)
    if usable <= 0:
        return 0
    samples = np.frombuffer(data[:usable], dtype="<i2").astype(np.float64)
    rms = float(np.sqrt(np.mean(samples**2)))
    return int(min(100.0, rms * 100.0 / full_scale))


def smooth_level(previous: int, instant: int, decay: float = 0.8) -> int:
    """Rise immediately, fall by `decay` per chunk."""
    return max(instant, int(previous * decay))


def capture_command(device: str, sample_rate: int, channels: int) -> list[str]:
    return [
        "arecord",
        "-D",
        device,
        "-f",
        "S16_LE",
        "-r",
        str(sample_rate),
        "-c",
        str(channels),
        "-t",
        "raw",
        "-q",
    ]


class CaptureProcess:
    """Single-owner handle around one capture subprocess."""

    def __init__(self, proc: "subprocess.Popen[bytes]", device: str) -> None:
        self._proc = proc
        self.device = device
        self._error_text: str | None = None

    @classmethod
    def spawn(cls, cmd: Sequence[str], device: str) -> "CaptureProcess":
        proc = subprocess.Popen(
            list(cmd), stdout=subprocess.PIPE, stderr=subprocess.PIPE, bufsize=0
        )
        return cls(proc, device)

    @property
    def pid(self) -> int:
        return self._proc.pid

    def _wait_readable(self, timeout: float) -> bool:
        ready, _, _ = select.select([self._proc.stdout], [], [], timeout)
        return bool(ready)

    def read(self, size: int, timeout: float) -> bytes | None:
        """Up to `size` bytes, b"" at EOF, None if nothing arrived within `timeout`."""
        if self._proc.stdout is None:
            return b""
        if not self._wait_readable(timeout):
            return None
        # Unbuffered pipe: a single read returns whatever is available
        return self._proc.stdout.read(size) or b""

    def has_exited(self) -> bool:
        return self._proc.poll() is not None

    def error_text(self) -> str:
        """Diagnostic output of an exited process, read once."""
        if self._error_text is None:
            raw = b""
            if self._proc.stderr is not None:
                try:
                    raw = self._proc.stderr.read() or b""
                except (OSError, ValueError):
                    raw = b""
            self._error_text = raw.decode("utf-8", errors="ignore").strip()
        return self._error_text

    def close(self, grace_period: float = 0.5) -> None:
        if self._proc.poll() is None:
            self._proc.terminate()
            try:
                self._proc.wait(timeout=grace_period)
            except subprocess.TimeoutExpired:
                logger.warning(f"Capture on {self.device} ignored SIGTERM, killing")
                self._proc.kill()
                self._proc.wait()
        for pipe in (self._proc.stdout, self._proc.stderr):
            if pipe is not None:
                pipe.close()

    def __enter__(self) -> "CaptureProcess":
        return self

    def __exit__(self, *exc: typing.Any) -> None:
        self.close()


class LevelMeter:
    """Continuously sampled loudness of exactly one (source, device) target."""

    def __init__(
        self,
        sample_rate: int = 48000,
        channels: int = 2,
        chunk_bytes: int = 4096,
        full_scale: float = 16000.0,
        decay: float = 0.8,
        grace_period: float = 0.5,
        idle_interval: float = 0.2,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_bytes = chunk_bytes
        self.full_scale = full_scale
        self.decay = decay
        self.grace_period = grace_period
        self.idle_interval = idle_interval

        # Guards _state and _capture; never held across a subprocess call
        self._lock = threading.Lock()
        # Serialises retargets so two captures never run at once
        self._retarget_lock = threading.Lock()

        self._state = MeterState()
        self._capture: CaptureProcess | None = None
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    # --- Query surface ---

    def snapshot(self) -> MeterState:
        with self._lock:
            return dataclasses.replace(self._state)

    @property
    def target(self) -> tuple[Source, str]:
        with self._lock:
            return self._state.source, self._state.device

    @property
    def sampling(self) -> bool:
        with self._lock:
            return self._capture is not None

    # --- Lifecycle ---

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="level-meter", daemon=True)
        self._thread.start()
        logger.info("Level meter loop started.")

    def stop(self) -> None:
        self._stop_event.set()
        with self._retarget_lock:
            with self._lock:
                capture, self._capture = self._capture, None
            if capture:
                capture.close(self.grace_period)
        if self._thread:
            self._thread.join(timeout=2.0)
        logger.info("Level meter stopped.")

    def retarget(self, source: Source, device: str) -> None:
        """Tear down the current capture and follow a new target.

        Always recreates the capture process, even for an unchanged target,
        so buffered audio of the previous device never reaches new readings.
        """
        with self._retarget_lock:
            with self._lock:
                previous, self._capture = self._capture, None

            if previous:
                previous.close(self.grace_period)

            if source is Source.OFF or not device:
                with self._lock:
                    self._state = MeterState(source=source)
                logger.info(f"Meter idle (source={source.value})")
                return

            cmd = capture_command(device, self.sample_rate, self.channels)
            try:
                capture = CaptureProcess.spawn(cmd, device)
            except OSError as e:
                logger.error(f"Capture start failed on {device}: {e}")
                with self._lock:
                    self._state = MeterState(
                        source=source, device=device, last_error=f"arecord start failed: {e}"
                    )
                return

            with self._lock:
                self._capture = capture
                self._state = MeterState(source=source, device=device)
            logger.info(f"Meter following {source.value} on {device} (pid {capture.pid})")

    # --- Background loop ---

    def _is_current(self, capture: CaptureProcess) -> bool:
        with self._lock:
            return self._capture is capture

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._poll_once()

    def _poll_once(self) -> None:
        with self._lock:
            capture = self._capture

        if capture is None:
            self._stop_event.wait(self.idle_interval)
            return

        try:
            data = capture.read(self.chunk_bytes, self.idle_interval)

            if not self._is_current(capture):
                # Superseded by a retarget while reading
                return

            if not data:
                if capture.has_exited():
                    err = capture.error_text() or "capture stopped"
                    with self._lock:
                        if self._capture is capture:
                            if self._state.last_error != err:
                                logger.warning(f"Capture on {capture.device} exited: {err}")
                            self._state.last_error = err
                            self._state.level = 0
                else:
                    # Stall: let the meter fall instead of freezing
                    with self._lock:
                        if self._capture is capture:
                            self._state.level = smooth_level(self._state.level, 0, self.decay)
                if data is not None:
                    # EOF; the select wait did not pause this poll
                    self._stop_event.wait(self.idle_interval)
                return

            instant = chunk_level(data, self.full_scale)
            with self._lock:
                if self._capture is capture:
                    self._state.level = smooth_level(self._state.level, instant, self.decay)
        except Exception as e:
            logger.error(f"Meter read error: {e}")
            with self._lock:
                if self._capture is capture:
                    self._state.last_error = f"meter read error: {e}"
                    self._state.level = 0
            self._stop_event.wait(self.idle_interval)
