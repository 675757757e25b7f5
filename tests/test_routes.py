import asyncio
import json

import pytest
from aiohomekit.protocol.statuscodes import HapStatusCode
from fastapi.testclient import TestClient

from particle_bridge import routes
from particle_bridge.api import ParticleBridgeAPI
from particle_bridge.cloud import TransportError
from particle_bridge.config import parse_config
from particle_bridge.routes import create_app, register_routes, parse_value


CONFIG = {
    "access_token": "tok",
    "devices": [
        {
            "name": "Garage",
            "type": "garage-door",
            "device_id": "dev1",
            "doorOpenCloseFunctionName": "doorCommand",
            "doorOpenSensorVariableName": "doorState",
            "doorStateChangedEventName": "door-state",
            "doorOpensInSeconds": 0.05,
        },
        {"name": "Living Room", "type": "temperature", "currTempUrl": "http://sensor/temp"},
    ],
}


@pytest.fixture
def bridge(gateway):
    bridge_api = ParticleBridgeAPI(parse_config(CONFIG))
    bridge_api.get_gateway = lambda binding: gateway
    bridge_api.build_accessories()
    return bridge_api


@pytest.fixture
def client(bridge, monkeypatch):
    monkeypatch.setattr(routes, 'API_KEYS', set())
    app = create_app()
    register_routes(app, lambda: bridge)
    with TestClient(app) as test_client:
        yield test_client
        # Stop reconcilers on the loop they run on
        test_client.portal.call(bridge.cleanup)


def test_parse_value():
    assert parse_value("1") == 1
    assert parse_value("true") is True
    assert parse_value("21.5") == 21.5
    assert parse_value("open") == "open"


def test_api_info(client):
    response = client.get("/api")
    assert response.status_code == 200
    assert response.json()["service"] == "Particle Bridge"


def test_status(client):
    response = client.get("/status")
    assert response.status_code == 200
    body = response.json()
    assert body["accessories"] == 2
    assert body["devices"][0]["name"] == "Garage"
    assert body["devices"][0]["services"]["GarageDoorOpener"]["phase"] == "idle"


def test_accessories_listing(client):
    response = client.get("/accessories")
    assert response.status_code == 200
    accessories = response.json()["accessories"]
    assert [a["aid"] for a in accessories] == [2, 3]
    assert accessories[0]["services"][1]["type_name"] == "GarageDoorOpener"

    raw = client.get("/accessories/3", params={"enhanced": "false"}).json()["accessory"]
    assert raw["name"] == "Living Room"
    assert client.get("/accessories/42").status_code == 404


def test_read_characteristic_polls_device(client, gateway):
    gateway.variables["doorState"] = 1
    response = client.get("/accessories/2/characteristics/CurrentDoorState")
    assert response.status_code == 200
    assert response.json()["value"] == 0
    assert gateway.count('read') == 1


def test_read_failure_is_not_responding(client, gateway):
    gateway.read_error = TransportError("Timeout after 7.0s")
    response = client.get("/accessories/2/characteristics/CurrentDoorState")
    assert response.status_code == 503
    assert response.json()["detail"]["status"] == HapStatusCode.UNABLE_TO_COMMUNICATE.value


def test_write_characteristic_sends_command(client, gateway):
    response = client.put("/accessories/2/characteristics/TargetDoorState", params={"value": "0"})
    assert response.status_code == 200
    assert response.json()["value"] == 0
    assert ('call', 'dev1', 'doorCommand', 'open') in gateway.calls


def test_write_errors(client, gateway):
    response = client.put("/accessories/2/characteristics/TargetDoorState", params={"value": "5"})
    assert response.status_code == 400
    assert response.json()["detail"]["status"] == HapStatusCode.INVALID_VALUE.value

    response = client.put("/accessories/2/characteristics/CurrentDoorState", params={"value": "0"})
    assert response.status_code == 400
    assert response.json()["detail"]["status"] == HapStatusCode.CANT_WRITE_READ_ONLY.value

    response = client.put("/accessories/2/characteristics/Brightness", params={"value": "0"})
    assert response.status_code == 404

    gateway.call_error = TransportError("HTTP 500", status=500)
    response = client.put("/accessories/2/characteristics/TargetDoorState", params={"value": "1"})
    assert response.status_code == 503
    assert gateway.count('call') == 1


def test_api_keys_are_enforced(client, monkeypatch):
    monkeypatch.setattr(routes, 'API_KEYS', {'secret'})
    assert client.get("/api").status_code == 401
    assert client.get("/api", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/api", headers={"Authorization": "Bearer secret"}).status_code == 200


def test_changes_are_broadcast_to_listeners(bridge):
    queue = asyncio.Queue()
    bridge.event_listeners.append(queue)
    accessory = bridge.get_accessory(2)
    bridge._on_change(accessory, 'CurrentDoorState', 2)

    message = queue.get_nowait()
    assert message.startswith("data: ")
    event = json.loads(message[len("data: "):])
    assert event["type"] == "characteristic"
    assert event["aid"] == 2
    assert event["characteristic"] == "CurrentDoorState"
    assert event["value"] == 2
    assert bridge.changes_published == 1
