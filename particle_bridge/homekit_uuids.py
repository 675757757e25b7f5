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

"""
HomeKit UUID mappings for the services and characteristics the bridge exposes.

These convert HomeKit type UUIDs to readable names (and numeric values to
labels) for the accessory JSON view.
"""

from aiohomekit.model.characteristics import CharacteristicsTypes
from aiohomekit.model.services import ServicesTypes

HOMEKIT_SERVICES = {
    ServicesTypes.ACCESSORY_INFORMATION: "AccessoryInformation",
    ServicesTypes.GARAGE_DOOR_OPENER: "GarageDoorOpener",
    ServicesTypes.LOCK_MECHANISM: "LockMechanism",
    ServicesTypes.CONTACT_SENSOR: "ContactSensor",
    ServicesTypes.SWITCH: "Switch",
    ServicesTypes.TEMPERATURE_SENSOR: "TemperatureSensor",
}

HOMEKIT_CHARACTERISTICS = {
    # Accessory information
    CharacteristicsTypes.NAME: "Name",
    CharacteristicsTypes.MANUFACTURER: "Manufacturer",
    CharacteristicsTypes.MODEL: "Model",
    CharacteristicsTypes.SERIAL_NUMBER: "SerialNumber",

    # Garage door
    CharacteristicsTypes.DOOR_STATE_CURRENT: "CurrentDoorState",
    CharacteristicsTypes.DOOR_STATE_TARGET: "TargetDoorState",
    CharacteristicsTypes.OBSTRUCTION_DETECTED: "ObstructionDetected",

    # Lock
    CharacteristicsTypes.LOCK_MECHANISM_CURRENT_STATE: "LockCurrentState",
    CharacteristicsTypes.LOCK_MECHANISM_TARGET_STATE: "LockTargetState",

    # Sensors and switches
    CharacteristicsTypes.CONTACT_STATE: "ContactSensorState",
    CharacteristicsTypes.ON: "On",
    CharacteristicsTypes.TEMPERATURE_CURRENT: "CurrentTemperature",
}

# Human-readable value mappings
HOMEKIT_VALUES = {
    "CurrentDoorState": {
        0: "Open",
        1: "Closed",
        2: "Opening",
        3: "Closing",
        4: "Stopped"
    },
    "TargetDoorState": {
        0: "Open",
        1: "Closed"
    },
    "LockCurrentState": {
        0: "Unsecured",
        1: "Secured",
        2: "Jammed",
        3: "Unknown"
    },
    "LockTargetState": {
        0: "Unsecured",
        1: "Secured"
    },
    "ContactSensorState": {
        0: "Contact Detected",
        1: "Contact Not Detected"
    },
    "ObstructionDetected": {
        False: "No Obstruction",
        True: "Obstruction Detected"
    },
    "On": {
        False: "Off",
        True: "On"
    },
}

_SERVICES_UPPER = {uuid.upper(): name for uuid, name in HOMEKIT_SERVICES.items()}
_CHARACTERISTICS_UPPER = {uuid.upper(): name for uuid, name in HOMEKIT_CHARACTERISTICS.items()}


def get_service_name(uuid: str) -> str:
    """Convert HomeKit service UUID to human-readable name."""
    return _SERVICES_UPPER.get(uuid.upper(), uuid)


def get_characteristic_name(uuid: str) -> str:
    """Convert HomeKit characteristic UUID to human-readable name."""
    return _CHARACTERISTICS_UPPER.get(uuid.upper(), uuid)


def get_characteristic_value_name(characteristic_name: str, value) -> str:
    """Convert HomeKit characteristic value to human-readable name."""
    values = HOMEKIT_VALUES.get(characteristic_name)
    if values is not None:
        try:
            if value in values:
                return values[value]
        except TypeError:
            pass
    return str(value)


def enhance_accessory_data(accessories):
    """
    Add readable type names and value labels to accessory dicts.

    Args:
        accessories: List of accessory dicts as produced by ParticleAccessory.to_dict()

    Returns:
        New list; the input is not modified
    """
    enhanced = []

    for accessory in accessories:
        enhanced_accessory = {
            "aid": accessory.get("aid"),
            "name": accessory.get("name"),
            "kind": accessory.get("kind"),
            "services": []
        }

        for service in accessory.get("services", []):
            service_uuid = service.get("type", "")
            enhanced_service = {
                "type": service_uuid,
                "type_name": get_service_name(service_uuid),
                "iid": service.get("iid"),
                "characteristics": []
            }

            for char in service.get("characteristics", []):
                char_uuid = char.get("type", "")
                char_name = get_characteristic_name(char_uuid)

                enhanced_char = dict(char)
                enhanced_char["type_name"] = char_name
                if "value" in char:
                    enhanced_char["value_name"] = get_characteristic_value_name(char_name, char["value"])

                if char_name == "CurrentTemperature" and isinstance(char.get("value"), (int, float)):
                    enhanced_char["temperature_celsius"] = char["value"]
                    enhanced_char["temperature_fahrenheit"] = round((char["value"] * 9/5) + 32, 1)

                enhanced_service["characteristics"].append(enhanced_char)

            enhanced_accessory["services"].append(enhanced_service)

        enhanced.append(enhanced_accessory)

    return enhanced
