from enum import Enum

from pydantic import BaseModel, Field


class Source(str, Enum):
    """Logical origin of the outgoing audio."""

    SPOTIFY = "spotify"
    LINEIN = "linein"
    OFF = "off"


class SourceRequest(BaseModel):
    # Plain string so unknown sources reach the controller and fail as InvalidArgument
    source: str = Field(..., description="One of 'spotify', 'linein', 'off'")


class VolumeRequest(BaseModel):
    volume: float = Field(..., description="Software gain, 0.0 - 1.5")


class LineInRequest(BaseModel):
    device: str = Field(..., description="'auto', 'default' or an ALSA hw:/plughw: address")


class SpotifyNameRequest(BaseModel):
    name: str = Field(..., description="Name shown in Spotify Connect")


class StepStatus(BaseModel):
    name: str
    ok: bool
    error: str | None = None


class SelectionResponse(BaseModel):
    ok: bool = True
    source: Source
    steps: list[StepStatus] = Field(default_factory=list)


class StatusResponse(BaseModel):
    """Observed stream activity plus the persisted settings."""

    spotify_on: bool
    linein_on: bool
    volume: float
    last_source: Source
    linein_capture: str
    spotify_name: str
    mcast: str


class MeterResponse(BaseModel):
    level: int = Field(..., ge=0, le=100, description="Smoothed level, 0 - 100")
    source: Source
    device: str
    error: str = Field(default="", description="Last capture error, empty when healthy")
