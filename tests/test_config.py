import json

import pytest

from particle_bridge.cloud import DEFAULT_BASE_URL
from particle_bridge.config import ConfigurationError, load_config, parse_config


def garage_entry(**overrides):
    entry = {
        "name": "Garage",
        "type": "garage-door",
        "device_id": "dev1",
        "doorOpenCloseFunctionName": "doorCommand",
        "doorOpenSensorVariableName": "doorState",
        "doorStateChangedEventName": "door-state",
        "doorOpensInSeconds": 14,
    }
    entry.update(overrides)
    return entry


def test_legacy_keys_are_accepted():
    config = parse_config({"access_token": "tok", "devices": [garage_entry()]})
    binding = config.devices[0]
    assert binding.kind == 'garage-door'
    assert binding.function_name == 'doorCommand'
    assert binding.variable_name == 'doorState'
    assert binding.event_name == 'door-state'
    assert binding.transit_seconds == 14
    assert binding.access_token == 'tok'
    assert binding.base_url == DEFAULT_BASE_URL
    assert binding.request_timeout == 7
    assert binding.debounce_seconds == 3
    assert binding.poll_interval is None
    assert not binding.rollback_on_failure


def test_missing_transit_falls_back_to_default():
    config = parse_config({"access_token": "tok", "devices": [garage_entry(doorOpensInSeconds=0)]})
    assert config.devices[0].transit_seconds == 20


def test_device_level_overrides():
    entry = garage_entry(access_token="device-token", url="http://localhost:8080/v1", request_timeout=3)
    config = parse_config({"access_token": "tok", "url": "https://example.com/v1/", "devices": [entry]})
    binding = config.devices[0]
    assert binding.access_token == "device-token"
    assert binding.base_url == "http://localhost:8080/v1/"
    assert binding.request_timeout == 3
    assert config.base_url == "https://example.com/v1/"


def test_missing_required_field_names_device_and_field():
    entry = garage_entry()
    del entry["doorOpenSensorVariableName"]
    with pytest.raises(ConfigurationError, match="Garage.*variable_name"):
        parse_config({"access_token": "tok", "devices": [entry]})


def test_missing_token_is_an_error():
    with pytest.raises(ConfigurationError, match="access_token"):
        parse_config({"devices": [garage_entry()]})


def test_duplicate_names_are_rejected():
    with pytest.raises(ConfigurationError, match="Duplicate"):
        parse_config({"access_token": "tok", "devices": [garage_entry(), garage_entry()]})


def test_unknown_type_and_bad_numbers():
    with pytest.raises(ConfigurationError, match="unknown device type"):
        parse_config({"access_token": "tok", "devices": [garage_entry(type="sprinkler")]})
    with pytest.raises(ConfigurationError, match="transit_seconds"):
        parse_config({"access_token": "tok", "devices": [garage_entry(doorOpensInSeconds="soon")]})
    with pytest.raises(ConfigurationError, match="devices"):
        parse_config({"access_token": "tok", "devices": []})


def test_direct_url_devices_need_no_token():
    config = parse_config({"devices": [
        {"name": "Fireplace", "type": "fireplace", "fireplaceUrl": "http://192.168.1.40/toggle"},
        {"name": "Living Room", "type": "temperature", "currTempUrl": "http://192.168.1.41/temp"},
    ]})
    fireplace, temperature = config.devices
    assert fireplace.kind == 'switch'
    assert fireplace.direct_url == "http://192.168.1.40/toggle"
    assert not fireplace.uses_cloud
    assert temperature.result_field == 'currTemp'


def test_direct_url_must_be_http():
    with pytest.raises(ConfigurationError, match="direct_url"):
        parse_config({"devices": [{"name": "Fireplace", "type": "fireplace", "fireplaceUrl": "ftp://x"}]})


def test_door_lock_with_contact_sensor():
    config = parse_config({"access_token": "tok", "devices": [{
        "name": "Front Door",
        "type": "door-lock",
        "device_id": "dev2",
        "function_name": "lockCommand",
        "contact_variable_name": "doorState",
        "rollback_on_failure": True,
        "poll_interval": 60,
    }]})
    binding = config.get_device("Front Door")
    assert binding.kind == 'door-lock'
    assert binding.variable_name is None
    assert binding.contact_variable_name == 'doorState'
    assert binding.rollback_on_failure
    assert binding.poll_interval == 60


def test_load_config_from_file(tmp_path):
    path = tmp_path / "particle-bridge.json"
    path.write_text(json.dumps({"access_token": "tok", "devices": [garage_entry()]}))
    config = load_config(path)
    assert [d.name for d in config.devices] == ["Garage"]


def test_load_config_errors(tmp_path):
    with pytest.raises(ConfigurationError, match="Cannot read"):
        load_config(tmp_path / "missing.json")

    path = tmp_path / "broken.json"
    path.write_text("{not json")
    with pytest.raises(ConfigurationError, match="not valid JSON"):
        load_config(path)
