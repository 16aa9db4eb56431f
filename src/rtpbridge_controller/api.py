import asyncio
import logging
import typing
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from rtpbridge_controller.controller import (
    ControllerError,
    InvalidArgument,
    PersistFailed,
    SourceController,
    StartFailed,
)
from rtpbridge_controller.diagnostics import collect_system_info
from rtpbridge_controller.models import (
    LineInRequest,
    MeterResponse,
    SelectionResponse,
    SourceRequest,
    SpotifyNameRequest,
    StatusResponse,
    StepStatus,
    VolumeRequest,
)

logger = logging.getLogger("ControllerAPI")

ERROR_STATUS: dict[type[ControllerError], int] = {
    InvalidArgument: 400,
    StartFailed: 502,
    PersistFailed: 500,
}


def get_controller(request: Request) -> SourceController:
    return typing.cast(SourceController, request.app.state.controller)


def create_app(controller: SourceController, restore_on_boot: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> typing.AsyncGenerator[None, None]:
        controller.meter.start()
        if restore_on_boot:
            await asyncio.to_thread(controller.restore_last_source)
        yield
        await asyncio.to_thread(controller.meter.stop)

    app = FastAPI(title="RTP Bridge Controller API", lifespan=lifespan)
    app.state.controller = controller

    @app.exception_handler(ControllerError)
    async def controller_error_handler(request: Request, exc: ControllerError) -> JSONResponse:
        status_code = ERROR_STATUS.get(type(exc), 500)
        return JSONResponse(
            status_code=status_code,
            content={
                "ok": False,
                "error": exc.kind,
                "detail": str(exc),
                "steps": [
                    {"name": s.name, "ok": s.ok, "error": s.error} for s in exc.steps
                ],
            },
        )

    @app.post("/api/source", response_model=SelectionResponse)
    def set_source(
        req: SourceRequest, ctrl: SourceController = Depends(get_controller)
    ) -> SelectionResponse:
        result = ctrl.select_source(req.source)
        return SelectionResponse(
            source=result.source,
            steps=[StepStatus(name=s.name, ok=s.ok, error=s.error) for s in result.steps],
        )

    @app.get("/api/status", response_model=StatusResponse)
    def status(ctrl: SourceController = Depends(get_controller)) -> StatusResponse:
        s = ctrl.current_status()
        return StatusResponse(
            spotify_on=s.spotify_active,
            linein_on=s.linein_active,
            volume=s.volume,
            last_source=s.last_source,
            linein_capture=s.linein_device,
            spotify_name=s.spotify_name,
            mcast=s.multicast,
        )

    @app.get("/api/meter", response_model=MeterResponse)
    def meter(ctrl: SourceController = Depends(get_controller)) -> MeterResponse:
        ctrl.sync_meter()
        snap = ctrl.meter.snapshot()
        return MeterResponse(
            level=snap.level,
            source=snap.source,
            device=snap.device,
            error=snap.last_error or "",
        )

    @app.post("/api/volume")
    def set_volume(
        req: VolumeRequest, ctrl: SourceController = Depends(get_controller)
    ) -> dict[str, typing.Any]:
        return {"ok": True, "volume": ctrl.set_volume(req.volume)}

    @app.post("/api/linein")
    def set_linein(
        req: LineInRequest, ctrl: SourceController = Depends(get_controller)
    ) -> dict[str, typing.Any]:
        return {"ok": True, "device": ctrl.set_linein_device(req.device)}

    @app.post("/api/spotify_name")
    def set_spotify_name(
        req: SpotifyNameRequest, ctrl: SourceController = Depends(get_controller)
    ) -> dict[str, typing.Any]:
        return {"ok": True, "name": ctrl.set_spotify_name(req.name)}

    @app.get("/api/diagnostics")
    def diagnostics(ctrl: SourceController = Depends(get_controller)) -> dict[str, typing.Any]:
        return collect_system_info(ctrl.supervisor, ctrl.service_prefix)

    return app
