from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    RTP Bridge Controller Configuration.
    Reads from environment variables (RTPBRIDGE_ prefix) and optional .env file.
    """

    # Service Configuration
    HOST: str = Field(default="0.0.0.0", description="Host to bind the API to")
    PORT: int = Field(default=8080, description="Port to bind the API to")

    # Appliance Config Store
    CONFIG_FILE: str = Field(
        default="/etc/multicast-rtp-audio-bridge/config.env",
        description="Env-style file holding the persisted appliance settings",
    )

    # Service Supervisor
    SERVICE_PREFIX: str = Field(default="mrab", description="Prefix of the systemd units")
    SYSTEMCTL_PATH: str = Field(default="/bin/systemctl", description="systemctl binary")
    USE_SUDO: bool = Field(default=True, description="Run systemctl through sudo")
    RESTORE_ON_BOOT: bool = Field(
        default=True, description="Reselect the persisted source when the service starts"
    )

    # Level Meter
    METER_SAMPLE_RATE: int = Field(default=48000, description="Capture sample rate in Hz")
    METER_CHANNELS: int = Field(default=2, description="Capture channel count")
    METER_CHUNK_BYTES: int = Field(default=4096, description="Bytes read per meter update")
    METER_FULL_SCALE: float = Field(
        default=16000.0, description="RMS amplitude that maps to a level of 100"
    )
    METER_DECAY: float = Field(default=0.8, description="Per-chunk decay of the displayed level")
    METER_GRACE_PERIOD: float = Field(
        default=0.5, description="Seconds to wait for a capture process to exit before killing it"
    )
    METER_IDLE_INTERVAL: float = Field(
        default=0.2, description="Pause between retries when no audio is available"
    )
    LOOPBACK_CAPTURE: str = Field(
        default="hw:Loopback,1,0", description="Fallback capture side of the ALSA loopback"
    )

    # Paths
    LOG_DIR: str = Field(
        default="/var/log/multicast-rtp-audio-bridge", description="Directory for log files"
    )

    model_config = SettingsConfigDict(
        env_prefix="RTPBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator("METER_GRACE_PERIOD")
    def check_grace_period(cls, v: float) -> float:
        # Source switches must feel immediate on the live meter
        if not 0.0 < v < 1.0:
            raise ValueError("METER_GRACE_PERIOD must be between 0 and 1 second")
        return v

    @field_validator("METER_DECAY")
    def check_decay(cls, v: float) -> float:
        if not 0.0 <= v < 1.0:
            raise ValueError("METER_DECAY must be in [0, 1)")
        return v

    @property
    def systemctl_command(self) -> list[str]:
        if self.USE_SUDO:
            return ["sudo", self.SYSTEMCTL_PATH]
        return [self.SYSTEMCTL_PATH]


# Global settings instance
settings = Settings()
