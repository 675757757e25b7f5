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

"""Bridged accessories: HomeKit services backed by Particle devices."""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiohomekit.model.characteristics import CharacteristicsTypes
from aiohomekit.model.services import ServicesTypes
from aiohomekit.protocol.statuscodes import HapStatusCode

from .cloud import ParticleCloudAPI, ParticleError
from .commands import CommandDispatcher
from .config import DeviceBinding
from .devices import (
    DeviceProfile, GarageDoorProfile, LockProfile, ContactSensorProfile,
    SwitchProfile, TemperatureProfile, CurrentDoorState, TargetDoorState,
    LockCurrentState, LockTargetState, ContactSensorState,
)
from .events import EventStreamHub, Subscription

logger = logging.getLogger(__name__)

ChangeCallback = Callable[['ParticleAccessory', str, Any], None]


class ReadOnlyCharacteristicError(ParticleError):
    status = HapStatusCode.CANT_WRITE_READ_ONLY


class UnknownCharacteristicError(ParticleError, KeyError):
    pass


def plain_value(value: Any) -> Any:
    """Enum members as their wire value."""
    if isinstance(value, enum.Enum):
        return value.value
    return value


@dataclass
class Characteristic:
    iid: int
    name: str
    type: str
    format: str
    perms: List[str]
    read: Callable[[], Awaitable[Any]]
    cached: Callable[[], Any]
    write: Optional[Callable[[Any], Awaitable[Any]]] = None
    constraints: Dict[str, Any] = field(default_factory=dict)

    @property
    def writable(self) -> bool:
        return self.write is not None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'type': self.type,
            'iid': self.iid,
            'perms': list(self.perms),
            'format': self.format,
            'value': plain_value(self.cached()),
        }
        data.update(self.constraints)
        return data


@dataclass
class Service:
    iid: int
    type: str
    name: str
    characteristics: List[Characteristic] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'iid': self.iid,
            'characteristics': [c.to_dict() for c in self.characteristics],
        }


def _constant(value):
    async def read():
        return value
    return read


class ParticleAccessory:
    """
    One bridged accessory.

    Holds the HomeKit service/characteristic layout and wires each
    characteristic to its CommandDispatcher. Subclasses only declare
    their services.
    """

    kind = 'generic'
    default_manufacturer = 'Particle.io'
    default_model = 'Photon'

    def __init__(self, binding: DeviceBinding, aid: int, gateway: Optional[ParticleCloudAPI],
                 on_change: Optional[ChangeCallback] = None):
        self.binding = binding
        self.aid = aid
        self.name = binding.name
        self.gateway = gateway
        self.on_change = on_change

        self.services: List[Service] = []
        self.dispatchers: List[CommandDispatcher] = []
        self.subscriptions: List[Subscription] = []
        self._next_iid = 1
        self._by_name: Dict[str, Characteristic] = {}
        self._by_iid: Dict[int, Characteristic] = {}
        self._event_bindings: List[tuple] = []

        self._add_information_service()
        self.build_services()

    def build_services(self):
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Layout helpers
    # ------------------------------------------------------------------

    def _iid(self) -> int:
        iid = self._next_iid
        self._next_iid += 1
        return iid

    def _add_service(self, service_type: str, name: str) -> Service:
        service = Service(self._iid(), service_type, name)
        self.services.append(service)
        return service

    def _add_characteristic(self, service: Service, name: str, char_type: str, fmt: str, perms: List[str],
                            read, cached, write=None, **constraints) -> Characteristic:
        char = Characteristic(self._iid(), name, char_type, fmt, perms, read, cached, write, constraints)
        service.characteristics.append(char)
        # First one wins for names shared between services (Name)
        self._by_name.setdefault(name, char)
        self._by_iid[char.iid] = char
        return char

    def _add_information_service(self):
        b = self.binding
        info = self._add_service(ServicesTypes.ACCESSORY_INFORMATION, 'AccessoryInformation')
        values = [
            ('Manufacturer', CharacteristicsTypes.MANUFACTURER, b.manufacturer or self.default_manufacturer),
            ('Model', CharacteristicsTypes.MODEL, b.model or self.default_model),
            ('SerialNumber', CharacteristicsTypes.SERIAL_NUMBER, b.device_id or b.name),
            ('Name', CharacteristicsTypes.NAME, b.name),
        ]
        for name, char_type, value in values:
            self._add_characteristic(info, name, char_type, 'string', ['pr'],
                                     _constant(value), lambda value=value: value)

    def _dispatcher(self, profile: DeviceProfile, name: Optional[str] = None, **kwargs) -> CommandDispatcher:
        b = self.binding
        options = dict(
            device_id=b.device_id,
            function_name=b.function_name,
            variable_name=b.variable_name,
            result_field=b.result_field,
            direct_url=b.direct_url,
            debounce_seconds=b.debounce_seconds,
            transit_seconds=b.transit_seconds,
            rollback_on_failure=b.rollback_on_failure,
        )
        options.update(kwargs)
        dispatcher = CommandDispatcher(
            name or b.name,
            profile,
            self.gateway,
            on_update=self._on_update,
            **options
        )
        self.dispatchers.append(dispatcher)
        return dispatcher

    def _add_dispatched_service(self, dispatcher: CommandDispatcher, fmt: str,
                                event_name: Optional[str] = None, **constraints) -> Service:
        """Add the profile's service with its current and target characteristics."""
        profile = dispatcher.profile
        reconciler = dispatcher.reconciler
        service = self._add_service(profile.service_type, profile.service_name)

        self._add_characteristic(service, 'Name', CharacteristicsTypes.NAME, 'string', ['pr'],
                                 _constant(dispatcher.name), lambda: dispatcher.name)

        if profile.target_characteristic == profile.current_characteristic:
            # Single read/write characteristic (On)
            self._add_characteristic(
                service, profile.current_characteristic, profile.current_characteristic_type, fmt,
                ['pr', 'pw', 'ev'], dispatcher.get_current, lambda: reconciler.observed,
                dispatcher.set_target, **constraints
            )
        else:
            current_constraints = constraints.get('current', constraints if not profile.writable else {})
            self._add_characteristic(
                service, profile.current_characteristic, profile.current_characteristic_type, fmt,
                ['pr', 'ev'], dispatcher.get_current, lambda: reconciler.observed,
                **current_constraints
            )
            if profile.writable:
                async def read_target():
                    return dispatcher.get_target()

                self._add_characteristic(
                    service, profile.target_characteristic, profile.target_characteristic_type, fmt,
                    ['pr', 'pw', 'ev'], read_target, lambda: reconciler.target,
                    dispatcher.set_target, **constraints.get('target', {})
                )

        if event_name:
            self._event_bindings.append((event_name, dispatcher))
        return service

    # ------------------------------------------------------------------
    # Characteristic access
    # ------------------------------------------------------------------

    def find_characteristic(self, key) -> Characteristic:
        """Look a characteristic up by name or iid."""
        char = None
        if isinstance(key, int) or (isinstance(key, str) and key.isdigit()):
            char = self._by_iid.get(int(key))
        if char is None:
            char = self._by_name.get(key)
        if char is None:
            raise UnknownCharacteristicError(f"{self.name} has no characteristic {key!r}")
        return char

    async def get_characteristic(self, key) -> Any:
        """Run the characteristic's get handler (may poll the device)."""
        char = self.find_characteristic(key)
        return plain_value(await char.read())

    async def set_characteristic(self, key, value) -> Any:
        """Run the characteristic's set handler.

        Raises:
            ReadOnlyCharacteristicError: characteristic has no set handler
            ValueError: value not legal for the characteristic
            CommunicationFailure / CommandSupersededError: from the dispatcher
        """
        char = self.find_characteristic(key)
        if not char.writable:
            raise ReadOnlyCharacteristicError(f"{char.name} of {self.name} is read-only")
        logger.info(f"[{self.name}] Set {char.name} -> {value!r}")
        return plain_value(await char.write(value))

    def _on_update(self, characteristic: str, value: Any):
        logger.debug(f"[{self.name}] {characteristic} = {value!r}")
        if self.on_change:
            self.on_change(self, characteristic, plain_value(value))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, event_hub: Optional[EventStreamHub] = None):
        """Subscribe to events, establish the baseline and start polling."""
        b = self.binding
        if event_hub is not None and b.uses_cloud:
            for event_name, dispatcher in self._event_bindings:
                subscription = event_hub.subscribe(
                    b.base_url, b.access_token, event_name,
                    dispatcher.handle_event, self._on_stream_error
                )
                self.subscriptions.append(subscription)

        for dispatcher in self.dispatchers:
            dispatcher.reconciler.start()

        await asyncio.gather(*(d.refresh() for d in self.dispatchers))

        if b.poll_interval:
            for dispatcher in self.dispatchers:
                dispatcher.start_polling(b.poll_interval)

    def _on_stream_error(self, error: Exception):
        logger.warning(f"[{self.name}] Event stream error: {error}")

    async def stop(self):
        for subscription in self.subscriptions:
            await subscription.close()
        self.subscriptions.clear()
        for dispatcher in self.dispatchers:
            await dispatcher.stop()

    def status(self) -> Dict[str, Any]:
        return {
            'aid': self.aid,
            'name': self.name,
            'kind': self.kind,
            'services': {
                d.profile.service_name: dict(d.reconciler.snapshot(),
                                             observed=plain_value(d.reconciler.observed),
                                             target=plain_value(d.reconciler.target))
                for d in self.dispatchers
            },
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'aid': self.aid,
            'name': self.name,
            'kind': self.kind,
            'services': [s.to_dict() for s in self.services],
        }


class GarageDoorAccessory(ParticleAccessory):
    """Garage door opener: reed switch variable, open/close function, state events."""

    kind = 'garage-door'

    def build_services(self):
        self.door = self._dispatcher(GarageDoorProfile())
        service = self._add_dispatched_service(
            self.door, 'uint8', event_name=self.binding.event_name,
            current={'minValue': 0, 'maxValue': 4, 'validValues': [s.value for s in CurrentDoorState]},
            target={'minValue': 0, 'maxValue': 1, 'validValues': [s.value for s in TargetDoorState]},
        )
        self._add_characteristic(service, 'ObstructionDetected', CharacteristicsTypes.OBSTRUCTION_DETECTED,
                                 'bool', ['pr', 'ev'], _constant(False), lambda: False)


class DoorLockAccessory(ParticleAccessory):
    """Lock mechanism, plus a contact sensor for the door when one is configured."""

    kind = 'door-lock'

    def build_services(self):
        b = self.binding
        self.lock = self._dispatcher(LockProfile())
        self._add_dispatched_service(
            self.lock, 'uint8', event_name=b.event_name,
            current={'minValue': 0, 'maxValue': 3, 'validValues': [s.value for s in LockCurrentState]},
            target={'minValue': 0, 'maxValue': 1, 'validValues': [s.value for s in LockTargetState]},
        )

        self.contact = None
        if b.contact_variable_name or b.contact_event_name:
            self.contact = self._dispatcher(
                ContactSensorProfile(), name=f"{b.name} Door",
                function_name=None, variable_name=b.contact_variable_name, direct_url=None,
            )
            self._add_dispatched_service(
                self.contact, 'uint8', event_name=b.contact_event_name,
                minValue=0, maxValue=1, validValues=[s.value for s in ContactSensorState],
            )


class SwitchAccessory(ParticleAccessory):
    """On/off relay, either a Particle function or a legacy toggle URL."""

    kind = 'switch'
    default_manufacturer = 'NodeMCU'
    default_model = 'Fireplace'

    def build_services(self):
        self.switch = self._dispatcher(SwitchProfile())
        self._add_dispatched_service(self.switch, 'bool', event_name=self.binding.event_name)


class TemperatureAccessory(ParticleAccessory):
    """Read-only temperature sensor."""

    kind = 'temperature'
    default_model = 'Temperature Sensor'

    def build_services(self):
        self.sensor = self._dispatcher(TemperatureProfile(), function_name=None)
        self._add_dispatched_service(
            self.sensor, 'float', event_name=self.binding.event_name,
            unit='celsius', minValue=TemperatureProfile.MIN_VALUE,
            maxValue=TemperatureProfile.MAX_VALUE, minStep=0.1,
        )


ACCESSORY_TYPES = {
    'garage-door': GarageDoorAccessory,
    'door-lock': DoorLockAccessory,
    'switch': SwitchAccessory,
    'temperature': TemperatureAccessory,
}


def create_accessory(binding: DeviceBinding, aid: int, gateway: Optional[ParticleCloudAPI],
                     on_change: Optional[ChangeCallback] = None) -> ParticleAccessory:
    """Build the accessory class for a binding's kind."""
    try:
        accessory_class = ACCESSORY_TYPES[binding.kind]
    except KeyError:
        raise ValueError(f"Unsupported accessory kind: {binding.kind}")
    return accessory_class(binding, aid, gateway, on_change)
