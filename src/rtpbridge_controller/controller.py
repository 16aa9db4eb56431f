"""Source Controller.

Keeps at most one stream service running, persists the selection and points
the level meter at whatever is active. A source switch is a fixed sequence of
best-effort steps: a failing step aborts the remaining ones but nothing is
rolled back.
"""

import logging
import math
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from rtpbridge_controller.device_manager import (
    DEFAULT_LOOPBACK_CAPTURE,
    AudioDevice,
    resolve_source_device,
    scan_devices,
)
from rtpbridge_controller.meter import LevelMeter
from rtpbridge_controller.models import Source
from rtpbridge_controller.persistence import (
    LAST_SOURCE,
    LINEIN_CAPTURE,
    MCAST_IP,
    MCAST_PORT,
    SPOTIFY_NAME,
    STREAM_VOLUME,
    ConfigStore,
)
from rtpbridge_controller.service_manager import SystemdSupervisor, unit_name

logger = logging.getLogger("Controller")

VOLUME_MIN = 0.0
VOLUME_MAX = 1.5
SPOTIFY_NAME_MAX = 64
LINEIN_PREFIXES = ("auto", "default", "hw:", "plughw:")

STREAM_SERVICES: dict[Source, str] = {
    Source.SPOTIFY: "stream-spotify",
    Source.LINEIN: "stream-linein",
}
RECEIVER_SERVICE = "spotify"


@dataclass
class StepResult:
    name: str
    ok: bool
    error: str | None = None


@dataclass
class SelectionResult:
    source: Source
    steps: list[StepResult] = field(default_factory=list)


@dataclass
class ControllerStatus:
    spotify_active: bool
    linein_active: bool
    volume: float
    last_source: Source
    linein_device: str
    spotify_name: str
    multicast: str


class ControllerError(Exception):
    kind = "ControllerError"

    def __init__(self, message: str, steps: list[StepResult] | None = None) -> None:
        super().__init__(message)
        self.steps = steps or []


class InvalidArgument(ControllerError):
    kind = "InvalidArgument"


class StartFailed(ControllerError):
    kind = "StartFailed"

    def __init__(
        self, source: Source, cause: BaseException, steps: list[StepResult] | None = None
    ) -> None:
        super().__init__(f"Could not start {source.value}: {cause}", steps)
        self.source = source
        self.cause = cause


class PersistFailed(ControllerError):
    kind = "PersistFailed"

    def __init__(self, cause: BaseException, steps: list[StepResult] | None = None) -> None:
        super().__init__(f"Could not persist settings: {cause}", steps)
        self.cause = cause


def parse_source(value: object) -> Source:
    if isinstance(value, Source):
        return value
    if isinstance(value, str):
        try:
            return Source(value.strip().lower())
        except ValueError:
            pass
    raise InvalidArgument(f"invalid source: {value!r}")


@dataclass
class _Step:
    name: str
    action: Callable[[], None]
    wrap_error: Callable[[BaseException, list[StepResult]], ControllerError]


class SourceController:
    def __init__(
        self,
        store: ConfigStore,
        supervisor: SystemdSupervisor,
        meter: LevelMeter,
        service_prefix: str = "mrab",
        device_lister: Callable[[], list[AudioDevice]] = scan_devices,
        loopback_capture: str = DEFAULT_LOOPBACK_CAPTURE,
    ) -> None:
        self.store = store
        self.supervisor = supervisor
        self.meter = meter
        self.service_prefix = service_prefix
        self.device_lister = device_lister
        self.loopback_capture = loopback_capture
        self._restored = threading.Event()

    def unit(self, service: str) -> str:
        return unit_name(self.service_prefix, service)

    def stream_unit(self, source: Source) -> str:
        return self.unit(STREAM_SERVICES[source])

    # --- Queries ---

    def current_source(self) -> Source:
        """Derived from the supervisor on every call; the config may be stale."""
        if self.supervisor.is_active(self.stream_unit(Source.SPOTIFY)):
            return Source.SPOTIFY
        if self.supervisor.is_active(self.stream_unit(Source.LINEIN)):
            return Source.LINEIN
        return Source.OFF

    def current_status(self) -> ControllerStatus:
        cfg = self._read_config()

        try:
            volume = float(cfg.get(STREAM_VOLUME) or "1.0")
        except ValueError:
            volume = 1.0

        try:
            last_source = parse_source(cfg.get(LAST_SOURCE) or Source.OFF.value)
        except InvalidArgument:
            last_source = Source.OFF

        return ControllerStatus(
            spotify_active=self.supervisor.is_active(self.stream_unit(Source.SPOTIFY)),
            linein_active=self.supervisor.is_active(self.stream_unit(Source.LINEIN)),
            volume=volume,
            last_source=last_source,
            linein_device=cfg.get(LINEIN_CAPTURE) or "auto",
            spotify_name=cfg.get(SPOTIFY_NAME) or "Spotify",
            multicast=f"{cfg.get(MCAST_IP, '')}:{cfg.get(MCAST_PORT, '')}",
        )

    # --- Source selection ---

    def select_source(self, requested: object) -> SelectionResult:
        source = parse_source(requested)
        logger.info(f"Selecting source: {source.value}")

        steps: list[_Step] = [
            _Step(
                "stop",
                self._stop_streams,
                lambda e, log: ControllerError(f"stopping streams failed: {e}", log),
            ),
        ]
        if source is not Source.OFF:
            steps.append(
                _Step(
                    "start",
                    lambda: self.supervisor.start(self.stream_unit(source)),
                    lambda e, log: StartFailed(source, e, log),
                )
            )
        steps.append(
            _Step(
                "persist",
                lambda: self._persist({LAST_SOURCE: source.value}),
                lambda e, log: PersistFailed(e, log),
            )
        )
        steps.append(
            _Step(
                "retarget",
                lambda: self._retarget_meter(source),
                lambda e, log: ControllerError(f"meter retarget failed: {e}", log),
            )
        )

        results: list[StepResult] = []
        for step in steps:
            try:
                step.action()
            except ControllerError as e:
                results.append(StepResult(step.name, ok=False, error=str(e)))
                e.steps = results
                logger.error(f"Source selection aborted at '{step.name}': {e}")
                raise
            except Exception as e:
                results.append(StepResult(step.name, ok=False, error=str(e)))
                logger.error(f"Source selection aborted at '{step.name}': {e}")
                raise step.wrap_error(e, results) from e
            results.append(StepResult(step.name, ok=True))

        return SelectionResult(source=source, steps=results)

    def restore_last_source(self) -> SelectionResult | None:
        """Reselect the persisted source once after boot."""
        if self._restored.is_set():
            logger.debug("Last source already restored, skipping.")
            return None
        self._restored.set()

        try:
            raw = self.store.get(LAST_SOURCE, Source.OFF.value)
        except OSError as e:
            logger.error(f"Could not read last source: {e}")
            raw = Source.OFF.value

        try:
            source = parse_source(raw or Source.OFF.value)
        except InvalidArgument:
            logger.warning(f"Unknown persisted source {raw!r}, falling back to off")
            source = Source.OFF

        logger.info(f"Restoring last source: {source.value}")
        try:
            return self.select_source(source)
        except ControllerError as e:
            logger.error(f"Restore of {source.value} failed: {e}")
            return None

    # --- Parameter changes ---

    def set_volume(self, gain: object) -> float:
        if isinstance(gain, bool) or not isinstance(gain, (int, float, str)):
            raise InvalidArgument(f"volume must be a number, got {gain!r}")
        try:
            value = float(gain)
        except ValueError:
            raise InvalidArgument(f"volume must be a number, got {gain!r}") from None
        if math.isnan(value) or not VOLUME_MIN <= value <= VOLUME_MAX:
            raise InvalidArgument(f"volume out of range ({VOLUME_MIN} - {VOLUME_MAX})")

        self._persist({STREAM_VOLUME: str(value)})

        # Gain is baked into both pipelines
        for source in STREAM_SERVICES:
            unit = self.stream_unit(source)
            if self.supervisor.is_active(unit):
                self.supervisor.restart(unit)

        self._follow_active_source()
        return value

    def set_linein_device(self, device: object) -> str:
        dev = (device if isinstance(device, str) else "").strip()
        if not dev:
            raise InvalidArgument("missing device")
        if not dev.startswith(LINEIN_PREFIXES):
            raise InvalidArgument(f"device not allowed: {dev!r}")

        self._persist({LINEIN_CAPTURE: dev})

        unit = self.stream_unit(Source.LINEIN)
        if self.supervisor.is_active(unit):
            self.supervisor.restart(unit)

        self._follow_active_source()
        return dev

    def set_spotify_name(self, name: object) -> str:
        value = (name if isinstance(name, str) else "").strip()
        if not value:
            raise InvalidArgument("missing name")
        if len(value) > SPOTIFY_NAME_MAX:
            raise InvalidArgument(f"name too long (max {SPOTIFY_NAME_MAX})")

        self._persist({SPOTIFY_NAME: value})

        stream = self.stream_unit(Source.SPOTIFY)
        stream_was_active = self.supervisor.is_active(stream)
        self.supervisor.restart(self.unit(RECEIVER_SERVICE))
        # The stream is bound to the receiver and goes down with it
        if stream_was_active:
            self.supervisor.restart(stream)

        self._follow_active_source()
        return value

    # --- Meter ---

    def meter_target(self, source: Source) -> tuple[Source, str]:
        if source is Source.OFF:
            return source, ""
        return source, resolve_source_device(
            source,
            self._read_config(),
            lister=self.device_lister,
            loopback_capture=self.loopback_capture,
        )

    def sync_meter(self) -> bool:
        """Retarget only if the observed source moved away from the meter's target."""
        target = self.meter_target(self.current_source())
        if self.meter.target == target:
            return False
        logger.info(f"Meter out of sync, following {target[0].value}")
        self.meter.retarget(*target)
        return True

    # --- Internals ---

    def _stop_streams(self) -> None:
        for source in STREAM_SERVICES:
            self.supervisor.stop(self.stream_unit(source))

    def _persist(self, updates: dict[str, str]) -> None:
        try:
            self.store.update(updates)
        except OSError as e:
            logger.error(f"Persist failed: {e}")
            raise PersistFailed(e) from e

    def _read_config(self) -> dict[str, str]:
        try:
            return self.store.read_all()
        except OSError as e:
            logger.warning(f"Config unreadable, using defaults: {e}")
            return {}

    def _retarget_meter(self, source: Source) -> None:
        self.meter.retarget(*self.meter_target(source))

    def _follow_active_source(self) -> None:
        self._retarget_meter(self.current_source())
