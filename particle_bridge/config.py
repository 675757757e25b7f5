#
# Copyright 2025 The ParticleBridge and AmpScm contributors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#

"""Bridge configuration.

The configuration file is a JSON platform block:

    {
        "access_token": "...",
        "devices": [
            {
                "name": "Garage",
                "type": "garage-door",
                "device_id": "3a0027...",
                "doorOpenCloseFunctionName": "doorCommand",
                "doorOpenSensorVariableName": "doorState",
                "doorStateChangedEventName": "door-state",
                "doorOpensInSeconds": 14
            }
        ]
    }

Everything is validated at load time; a bad file never yields a running
accessory.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .cloud import ParticleError, DEFAULT_BASE_URL, DEFAULT_REQUEST_TIMEOUT, normalize_base_url
from .state import DEFAULT_DEBOUNCE_SECONDS, DEFAULT_TRANSIT_SECONDS

logger = logging.getLogger(__name__)


class ConfigurationError(ParticleError):
    """The configuration file is missing, unreadable or incomplete."""


# Accessory types and the names they may be given in a config file
DEVICE_TYPES = {
    'garage-door': 'garage-door',
    'garage': 'garage-door',
    'garagedoor': 'garage-door',
    'door-lock': 'door-lock',
    'lock': 'door-lock',
    'doorlock': 'door-lock',
    'switch': 'switch',
    'fireplace': 'switch',
    'temperature': 'temperature',
    'temperature-sensor': 'temperature',
}

# Keys used by the homebridge plugin configs this file format grew out of
KEY_ALIASES = {
    'doorOpenCloseFunctionName': 'function_name',
    'doorOpenSensorVariableName': 'variable_name',
    'doorStateChangedEventName': 'event_name',
    'doorOpensInSeconds': 'transit_seconds',
    'fireplaceUrl': 'direct_url',
    'currTempUrl': 'direct_url',
}

# Default body field of a direct-URL temperature endpoint
DIRECT_TEMPERATURE_FIELD = 'currTemp'


@dataclass(frozen=True)
class DeviceBinding:
    """Everything needed to bridge one configured device."""

    name: str
    kind: str
    device_id: Optional[str] = None
    access_token: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    function_name: Optional[str] = None
    variable_name: Optional[str] = None
    event_name: Optional[str] = None
    result_field: Optional[str] = None
    direct_url: Optional[str] = None
    contact_variable_name: Optional[str] = None
    contact_event_name: Optional[str] = None
    transit_seconds: float = DEFAULT_TRANSIT_SECONDS
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    poll_interval: Optional[float] = None
    rollback_on_failure: bool = False
    manufacturer: Optional[str] = None
    model: Optional[str] = None

    @property
    def uses_cloud(self) -> bool:
        return bool(self.device_id)

    @property
    def gateway_key(self) -> Tuple[str, str, float]:
        return (self.access_token or '', self.base_url, self.request_timeout)


@dataclass(frozen=True)
class BridgeConfig:
    devices: Tuple[DeviceBinding, ...] = field(default_factory=tuple)
    access_token: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS

    def get_device(self, name: str) -> Optional[DeviceBinding]:
        for binding in self.devices:
            if binding.name == name:
                return binding
        return None


def load_config(path) -> BridgeConfig:
    """Read and validate a JSON configuration file."""
    config_path = Path(path).expanduser()
    try:
        text = config_path.read_text(encoding='utf-8')
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {config_path}: {e}") from e

    try:
        raw = json.loads(text)
    except ValueError as e:
        raise ConfigurationError(f"Configuration file {config_path} is not valid JSON: {e}") from e

    config = parse_config(raw)
    logger.info(f"Loaded {len(config.devices)} device(s) from {config_path}")
    return config


def parse_config(raw: Dict[str, Any]) -> BridgeConfig:
    """Validate a decoded platform block and build the device bindings."""
    if not isinstance(raw, dict):
        raise ConfigurationError("Configuration must be a JSON object")

    access_token = raw.get('access_token')
    base_url = normalize_base_url(raw.get('url'))
    request_timeout = _number(raw, 'request_timeout', DEFAULT_REQUEST_TIMEOUT, 'platform')
    debounce_seconds = _number(raw, 'debounce_seconds', DEFAULT_DEBOUNCE_SECONDS, 'platform')

    devices = raw.get('devices', raw.get('accessories'))
    if not isinstance(devices, list) or not devices:
        raise ConfigurationError("Configuration needs a non-empty 'devices' list")

    bindings: List[DeviceBinding] = []
    seen = set()
    for index, entry in enumerate(devices):
        binding = _parse_device(entry, index, access_token, base_url, request_timeout, debounce_seconds)
        if binding.name in seen:
            raise ConfigurationError(f"Duplicate device name '{binding.name}'")
        seen.add(binding.name)
        bindings.append(binding)

    return BridgeConfig(
        devices=tuple(bindings),
        access_token=access_token,
        base_url=base_url,
        request_timeout=request_timeout,
        debounce_seconds=debounce_seconds,
    )


def _apply_aliases(entry: Dict[str, Any]) -> Dict[str, Any]:
    result = {}
    for key, value in entry.items():
        canonical = KEY_ALIASES.get(key, key)
        if canonical in result and key != canonical:
            # Explicit canonical key wins over a legacy alias
            continue
        result[canonical] = value
    return result


def _number(entry: Dict[str, Any], key: str, default, where: str):
    value = entry.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigurationError(f"{where}: '{key}' must be a non-negative number, got {value!r}")
    return float(value)


def _parse_device(entry: Any, index: int, access_token: Optional[str], base_url: str,
                  request_timeout: float, debounce_seconds: float) -> DeviceBinding:
    if not isinstance(entry, dict):
        raise ConfigurationError(f"Device #{index + 1} must be a JSON object")

    entry = _apply_aliases(entry)

    name = entry.get('name')
    if not name or not isinstance(name, str):
        raise ConfigurationError(f"Device #{index + 1} is missing 'name'")

    type_name = str(entry.get('type', '')).strip().lower()
    kind = DEVICE_TYPES.get(type_name)
    if kind is None:
        raise ConfigurationError(f"{name}: unknown device type {entry.get('type')!r}")

    def number(key, default):
        return _number(entry, key, default, name)

    binding = DeviceBinding(
        name=name,
        kind=kind,
        device_id=entry.get('device_id'),
        access_token=entry.get('access_token', access_token),
        base_url=normalize_base_url(entry.get('url') or base_url),
        function_name=entry.get('function_name'),
        variable_name=entry.get('variable_name'),
        event_name=entry.get('event_name'),
        result_field=entry.get('result_field') or _default_result_field(kind, entry),
        direct_url=entry.get('direct_url'),
        contact_variable_name=entry.get('contact_variable_name'),
        contact_event_name=entry.get('contact_event_name'),
        transit_seconds=number('transit_seconds', DEFAULT_TRANSIT_SECONDS) or DEFAULT_TRANSIT_SECONDS,
        debounce_seconds=number('debounce_seconds', debounce_seconds),
        request_timeout=number('request_timeout', request_timeout),
        poll_interval=number('poll_interval', None) or None,
        rollback_on_failure=bool(entry.get('rollback_on_failure', False)),
        manufacturer=entry.get('manufacturer'),
        model=entry.get('model'),
    )
    _validate(binding)
    return binding


def _default_result_field(kind: str, entry: Dict[str, Any]) -> Optional[str]:
    if kind == 'temperature' and entry.get('direct_url') and not entry.get('variable_name'):
        return DIRECT_TEMPERATURE_FIELD
    return None


def _require(binding: DeviceBinding, *fields: str):
    for name in fields:
        if not getattr(binding, name):
            raise ConfigurationError(f"{binding.name}: missing required field '{name}'")


def _validate(binding: DeviceBinding):
    """Per-type required fields."""
    if binding.kind == 'garage-door':
        _require(binding, 'device_id', 'access_token', 'function_name', 'variable_name')

    elif binding.kind == 'door-lock':
        _require(binding, 'device_id', 'access_token', 'function_name')

    elif binding.kind == 'switch':
        if not binding.direct_url:
            _require(binding, 'device_id', 'access_token', 'function_name')

    elif binding.kind == 'temperature':
        if not binding.direct_url:
            _require(binding, 'device_id', 'access_token', 'variable_name')

    if binding.direct_url and not binding.direct_url.startswith(('http://', 'https://')):
        raise ConfigurationError(f"{binding.name}: direct_url must be an http(s) URL")
