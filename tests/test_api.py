import threading
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from rtpbridge_controller.api import create_app
from rtpbridge_controller.meter import MeterState
from rtpbridge_controller.models import Source

SPOTIFY_STREAM = "mrab-stream-spotify.service"
LINEIN_STREAM = "mrab-stream-linein.service"


@pytest.fixture
def client(controller):
    with TestClient(create_app(controller, restore_on_boot=False)) as c:
        yield c


def test_lifespan_starts_meter_and_restores(controller, supervisor, store, mock_meter):
    store.update({"LAST_SOURCE": "linein"})

    with TestClient(create_app(controller)):
        mock_meter.start.assert_called_once()
        assert supervisor.is_active(LINEIN_STREAM)

    mock_meter.stop.assert_called_once()


def test_select_source(client, supervisor):
    response = client.post("/api/source", json={"source": "spotify"})

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["source"] == "spotify"
    assert [s["name"] for s in body["steps"]] == ["stop", "start", "persist", "retarget"]
    assert supervisor.is_active(SPOTIFY_STREAM)


def test_select_invalid_source(client, supervisor):
    response = client.post("/api/source", json={"source": "radio"})

    assert response.status_code == 400
    assert response.json()["error"] == "InvalidArgument"
    assert supervisor.calls == []


def test_select_source_start_failed(client, supervisor):
    supervisor.fail_start.add(LINEIN_STREAM)

    response = client.post("/api/source", json={"source": "linein"})

    assert response.status_code == 502
    body = response.json()
    assert body["ok"] is False
    assert body["error"] == "StartFailed"
    assert body["steps"][-1]["name"] == "start"
    assert body["steps"][-1]["ok"] is False


def test_select_source_persist_failed(client, store):
    with patch.object(store, "update", side_effect=OSError("read-only")):
        response = client.post("/api/source", json={"source": "spotify"})

    assert response.status_code == 500
    assert response.json()["error"] == "PersistFailed"


def test_status(client, supervisor):
    supervisor.active = {SPOTIFY_STREAM}

    body = client.get("/api/status").json()

    assert body == {
        "spotify_on": True,
        "linein_on": False,
        "volume": 1.0,
        "last_source": "off",
        "linein_capture": "auto",
        "spotify_name": "Gym Audio",
        "mcast": "239.10.10.10:5004",
    }


def test_meter_snapshot(client, mock_meter):
    mock_meter.target = (Source.OFF, "")
    mock_meter.snapshot.return_value = MeterState(
        level=0, source=Source.OFF, device="", last_error="arecord stopped"
    )

    body = client.get("/api/meter").json()

    assert body == {"level": 0, "source": "off", "device": "", "error": "arecord stopped"}
    mock_meter.retarget.assert_not_called()


def test_meter_resyncs_with_services(client, supervisor, mock_meter):
    supervisor.active = {SPOTIFY_STREAM}
    mock_meter.target = (Source.OFF, "")
    mock_meter.snapshot.return_value = MeterState(
        level=42, source=Source.SPOTIFY, device="hw:Loopback,1,0"
    )

    body = client.get("/api/meter").json()

    mock_meter.retarget.assert_called_once_with(Source.SPOTIFY, "hw:Loopback,1,0")
    assert body["level"] == 42
    assert body["error"] == ""


def test_volume(client, store):
    response = client.post("/api/volume", json={"volume": 1.5})
    assert response.status_code == 200
    assert response.json() == {"ok": True, "volume": 1.5}
    assert store.get("STREAM_VOLUME") == "1.5"

    response = client.post("/api/volume", json={"volume": 1.6})
    assert response.status_code == 400
    assert response.json()["error"] == "InvalidArgument"


def test_volume_requires_number(client):
    assert client.post("/api/volume", json={"volume": "loud"}).status_code == 422


def test_linein(client):
    assert client.post("/api/linein", json={"device": "usb:0"}).status_code == 400

    response = client.post("/api/linein", json={"device": "plughw:1,0"})
    assert response.json() == {"ok": True, "device": "plughw:1,0"}
    assert client.get("/api/status").json()["linein_capture"] == "plughw:1,0"


def test_spotify_name(client):
    response = client.post("/api/spotify_name", json={"name": "x" * 65})
    assert response.status_code == 400

    response = client.post("/api/spotify_name", json={"name": "Palestra"})
    assert response.json() == {"ok": True, "name": "Palestra"}


def test_diagnostics(client):
    fake = {"hostname": "bridge", "services": {"web": True}}
    with patch("rtpbridge_controller.api.collect_system_info", return_value=fake) as mock_collect:
        body = client.get("/api/diagnostics").json()

    assert body == fake
    assert mock_collect.call_args[0][1] == "mrab"


def test_lifespan_stops_meter_off_the_event_loop(controller, mock_meter):
    threads = {}
    mock_meter.start.side_effect = lambda: threads.setdefault("start", threading.current_thread())
    mock_meter.stop.side_effect = lambda: threads.setdefault("stop", threading.current_thread())

    with TestClient(create_app(controller, restore_on_boot=False)):
        pass

    # start runs on the loop thread, stop is handed to a worker
    assert threads["stop"] is not threads["start"]
    mock_meter.stop.assert_called_once()


def test_stop_step_failure_maps_to_server_error(client, supervisor):
    with patch.object(supervisor, "stop", side_effect=RuntimeError("dbus unavailable")):
        response = client.post("/api/source", json={"source": "linein"})

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "ControllerError"
    assert body["steps"] == [{"name": "stop", "ok": False, "error": "dbus unavailable"}]
