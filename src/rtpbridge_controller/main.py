import logging
import logging.handlers
import os
import sys
import typing

import structlog
import uvicorn

from rtpbridge_controller.api import create_app
from rtpbridge_controller.config import Settings, settings
from rtpbridge_controller.controller import SourceController
from rtpbridge_controller.meter import LevelMeter
from rtpbridge_controller.persistence import ConfigStore
from rtpbridge_controller.service_manager import SystemdSupervisor


def setup_logging(log_dir: str) -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Stdlib loggers of the library modules render through the same chain
    pre_chain: list[typing.Any] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=pre_chain,
    )

    handlers: list[logging.Handler] = []
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.TimedRotatingFileHandler(
            os.path.join(log_dir, "controller.log"),
            when="midnight",
            interval=1,
            backupCount=30,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)
    except OSError as e:
        print(f"Failed to setup file logging: {e}", file=sys.stderr)

    logging.basicConfig(level=logging.INFO, handlers=handlers, force=True)


logger = structlog.get_logger("Main")


def build_controller(cfg: Settings) -> SourceController:
    meter = LevelMeter(
        sample_rate=cfg.METER_SAMPLE_RATE,
        channels=cfg.METER_CHANNELS,
        chunk_bytes=cfg.METER_CHUNK_BYTES,
        full_scale=cfg.METER_FULL_SCALE,
        decay=cfg.METER_DECAY,
        grace_period=cfg.METER_GRACE_PERIOD,
        idle_interval=cfg.METER_IDLE_INTERVAL,
    )
    return SourceController(
        store=ConfigStore(cfg.CONFIG_FILE),
        supervisor=SystemdSupervisor(cfg.systemctl_command),
        meter=meter,
        service_prefix=cfg.SERVICE_PREFIX,
        loopback_capture=cfg.LOOPBACK_CAPTURE,
    )


def main() -> None:
    setup_logging(settings.LOG_DIR)
    logger.info("Starting RTP Bridge Controller...", config=settings.model_dump())

    controller = build_controller(settings)
    app = create_app(controller, restore_on_boot=settings.RESTORE_ON_BOOT)

    try:
        uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level="info")
    except Exception as e:
        logger.critical(f"Controller Main Crash: {e}")
        raise


if __name__ == "__main__":
    main()
