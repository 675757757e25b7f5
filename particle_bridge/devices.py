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

"""Per-device-class value vocabularies.

Each profile knows how one kind of device reports its state (variable
values and event payloads), which HomeKit values those map to, and which
function argument requests a given target. Values outside a profile's
vocabulary are rejected instead of being compared loosely.
"""

import enum
import logging
from typing import Any, Dict, Optional, Tuple

from aiohomekit.model.characteristics import CharacteristicsTypes
from aiohomekit.model.services import ServicesTypes

from .cloud import MalformedPayloadError

logger = logging.getLogger(__name__)


class CurrentDoorState(enum.IntEnum):
    OPEN = 0
    CLOSED = 1
    OPENING = 2
    CLOSING = 3
    STOPPED = 4


class TargetDoorState(enum.IntEnum):
    OPEN = 0
    CLOSED = 1


class LockCurrentState(enum.IntEnum):
    UNSECURED = 0
    SECURED = 1
    JAMMED = 2
    UNKNOWN = 3


class LockTargetState(enum.IntEnum):
    UNSECURED = 0
    SECURED = 1


class ContactSensorState(enum.IntEnum):
    CONTACT_DETECTED = 0
    CONTACT_NOT_DETECTED = 1


def normalize_raw(raw: Any) -> Any:
    """Fold the encodings devices use for the same value onto one key.

    Integers stay integers (bools become 0/1), numeric strings become
    integers, other strings are lower-cased and stripped.
    """
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    if isinstance(raw, str):
        text = raw.strip().lower()
        try:
            return int(text)
        except ValueError:
            return text
    return raw


class DeviceProfile:
    """Base class for a device vocabulary.

    Subclasses fill in the class-level tables; the methods here only look
    values up in them.
    """

    kind = 'generic'
    service_type: str = ''
    service_name = ''

    current_characteristic = ''
    current_characteristic_type = ''
    target_characteristic: Optional[str] = None
    target_characteristic_type: Optional[str] = None

    # Default body field of a variable read
    result_field = 'result'

    # raw poll value -> current value
    VALUE_MAP: Dict[Any, Any] = {}
    # event payload -> current value
    EVENT_MAP: Dict[str, Any] = {}
    # current value -> derived target value
    TARGET_FOR: Dict[Any, Any] = {}
    # target value -> current value once the command completed
    CURRENT_FOR_TARGET: Dict[Any, Any] = {}
    # target value -> function argument
    ARGUMENTS: Dict[Any, str] = {}
    # target value -> in-motion current value
    TRANSIT: Dict[Any, Any] = {}

    initial_current: Any = None
    initial_target: Any = None

    @property
    def writable(self) -> bool:
        return self.target_characteristic is not None

    @property
    def has_transit(self) -> bool:
        return bool(self.TRANSIT)

    @property
    def legal_targets(self) -> Tuple[Any, ...]:
        return tuple(self.ARGUMENTS)

    def decode_value(self, raw: Any) -> Any:
        """Map a polled variable value onto the current-state vocabulary.

        Raises:
            MalformedPayloadError: if the value is not part of the vocabulary
        """
        key = normalize_raw(raw)
        try:
            return self.VALUE_MAP[key]
        except (KeyError, TypeError):
            raise MalformedPayloadError(f"Unexpected {self.kind} value: {raw!r}")

    def decode_event(self, payload: Any) -> Optional[Any]:
        """Map an event payload onto the current-state vocabulary.

        Returns None for payloads this device class does not understand;
        several device classes may share one event name.
        """
        if not isinstance(payload, str):
            return None
        return self.EVENT_MAP.get(payload.strip().lower())

    def target_for(self, current: Any) -> Any:
        """Target state consistent with an observed state (None if none is)."""
        return self.TARGET_FOR.get(current)

    def current_for_target(self, target: Any) -> Any:
        return self.CURRENT_FOR_TARGET.get(target, target)

    def transit_state(self, target: Any) -> Optional[Any]:
        return self.TRANSIT.get(target)

    def argument_for(self, target: Any) -> str:
        return self.ARGUMENTS[target]

    def validate_target(self, value: Any) -> Any:
        """Coerce a requested target onto the legal set.

        Raises:
            ValueError: if the device is read-only or the value is not legal
        """
        if not self.writable:
            raise ValueError(f"{self.current_characteristic} is read-only")
        key = normalize_raw(value)
        for legal in self.legal_targets:
            if key == normalize_raw(legal):
                return legal
        raise ValueError(f"Invalid {self.target_characteristic} value: {value!r}")

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


class GarageDoorProfile(DeviceProfile):
    """Garage door opener with a reed switch variable (0 = closed)."""

    kind = 'garage-door'
    service_type = ServicesTypes.GARAGE_DOOR_OPENER
    service_name = 'GarageDoorOpener'

    current_characteristic = 'CurrentDoorState'
    current_characteristic_type = CharacteristicsTypes.DOOR_STATE_CURRENT
    target_characteristic = 'TargetDoorState'
    target_characteristic_type = CharacteristicsTypes.DOOR_STATE_TARGET

    VALUE_MAP = {
        0: CurrentDoorState.CLOSED,
        1: CurrentDoorState.OPEN,
        'closed': CurrentDoorState.CLOSED,
        'open': CurrentDoorState.OPEN,
    }
    EVENT_MAP = {
        'door-opened': CurrentDoorState.OPEN,
        'door-closed': CurrentDoorState.CLOSED,
        'opened': CurrentDoorState.OPEN,
        'closed': CurrentDoorState.CLOSED,
    }
    TARGET_FOR = {
        CurrentDoorState.OPEN: TargetDoorState.OPEN,
        CurrentDoorState.CLOSED: TargetDoorState.CLOSED,
        CurrentDoorState.OPENING: TargetDoorState.OPEN,
        CurrentDoorState.CLOSING: TargetDoorState.CLOSED,
    }
    CURRENT_FOR_TARGET = {
        TargetDoorState.OPEN: CurrentDoorState.OPEN,
        TargetDoorState.CLOSED: CurrentDoorState.CLOSED,
    }
    ARGUMENTS = {
        TargetDoorState.OPEN: 'open',
        TargetDoorState.CLOSED: 'close',
    }
    TRANSIT = {
        TargetDoorState.OPEN: CurrentDoorState.OPENING,
        TargetDoorState.CLOSED: CurrentDoorState.CLOSING,
    }

    initial_current = CurrentDoorState.CLOSED
    initial_target = TargetDoorState.CLOSED


class LockProfile(DeviceProfile):
    """Lock mechanism; the variable reports 1 when locked."""

    kind = 'lock'
    service_type = ServicesTypes.LOCK_MECHANISM
    service_name = 'LockMechanism'

    current_characteristic = 'LockCurrentState'
    current_characteristic_type = CharacteristicsTypes.LOCK_MECHANISM_CURRENT_STATE
    target_characteristic = 'LockTargetState'
    target_characteristic_type = CharacteristicsTypes.LOCK_MECHANISM_TARGET_STATE

    VALUE_MAP = {
        0: LockCurrentState.UNSECURED,
        1: LockCurrentState.SECURED,
        'unlocked': LockCurrentState.UNSECURED,
        'locked': LockCurrentState.SECURED,
    }
    EVENT_MAP = {
        'locked': LockCurrentState.SECURED,
        'unlocked': LockCurrentState.UNSECURED,
    }
    TARGET_FOR = {
        LockCurrentState.SECURED: LockTargetState.SECURED,
        LockCurrentState.UNSECURED: LockTargetState.UNSECURED,
    }
    CURRENT_FOR_TARGET = {
        LockTargetState.SECURED: LockCurrentState.SECURED,
        LockTargetState.UNSECURED: LockCurrentState.UNSECURED,
    }
    ARGUMENTS = {
        LockTargetState.SECURED: 'lock',
        LockTargetState.UNSECURED: 'unlock',
    }

    initial_current = LockCurrentState.UNSECURED
    initial_target = LockTargetState.UNSECURED


class ContactSensorProfile(DeviceProfile):
    """Door contact sensor; the variable reports 0 when closed."""

    kind = 'contact-sensor'
    service_type = ServicesTypes.CONTACT_SENSOR
    service_name = 'ContactSensor'

    current_characteristic = 'ContactSensorState'
    current_characteristic_type = CharacteristicsTypes.CONTACT_STATE

    VALUE_MAP = {
        0: ContactSensorState.CONTACT_DETECTED,
        1: ContactSensorState.CONTACT_NOT_DETECTED,
        'closed': ContactSensorState.CONTACT_DETECTED,
        'open': ContactSensorState.CONTACT_NOT_DETECTED,
    }
    EVENT_MAP = {
        'closed': ContactSensorState.CONTACT_DETECTED,
        'opened': ContactSensorState.CONTACT_NOT_DETECTED,
        'door-closed': ContactSensorState.CONTACT_DETECTED,
        'door-opened': ContactSensorState.CONTACT_NOT_DETECTED,
    }

    initial_current = ContactSensorState.CONTACT_NOT_DETECTED


class SwitchProfile(DeviceProfile):
    """On/off switch (the fireplace relay)."""

    kind = 'switch'
    service_type = ServicesTypes.SWITCH
    service_name = 'Switch'

    current_characteristic = 'On'
    current_characteristic_type = CharacteristicsTypes.ON
    target_characteristic = 'On'
    target_characteristic_type = CharacteristicsTypes.ON

    VALUE_MAP = {
        0: False,
        1: True,
        'off': False,
        'on': True,
        'false': False,
        'true': True,
    }
    EVENT_MAP = {
        'off': False,
        'on': True,
    }
    TARGET_FOR = {False: False, True: True}
    ARGUMENTS = {False: 'off', True: 'on'}

    initial_current = False
    initial_target = False


class TemperatureProfile(DeviceProfile):
    """Read-only temperature sensor reporting degrees Celsius."""

    kind = 'temperature'
    service_type = ServicesTypes.TEMPERATURE_SENSOR
    service_name = 'TemperatureSensor'

    current_characteristic = 'CurrentTemperature'
    current_characteristic_type = CharacteristicsTypes.TEMPERATURE_CURRENT

    # HomeKit's CurrentTemperature range
    MIN_VALUE = -270.0
    MAX_VALUE = 100.0

    def decode_value(self, raw: Any) -> float:
        if isinstance(raw, bool):
            raise MalformedPayloadError(f"Unexpected temperature value: {raw!r}")
        try:
            value = float(raw)
        except (TypeError, ValueError):
            raise MalformedPayloadError(f"Unexpected temperature value: {raw!r}")
        if value != value or not self.MIN_VALUE <= value <= self.MAX_VALUE:
            raise MalformedPayloadError(f"Temperature out of range: {raw!r}")
        return round(value, 1)

    def decode_event(self, payload: Any) -> Optional[float]:
        try:
            return self.decode_value(payload)
        except MalformedPayloadError:
            return None


PROFILES = {
    'garage-door': GarageDoorProfile,
    'lock': LockProfile,
    'contact-sensor': ContactSensorProfile,
    'switch': SwitchProfile,
    'temperature': TemperatureProfile,
}


def get_profile(kind: str) -> DeviceProfile:
    """Return a profile instance for a device kind."""
    try:
        return PROFILES[kind]()
    except KeyError:
        raise ValueError(f"Unknown device kind: {kind}")
