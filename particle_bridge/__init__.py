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
"""Particle Bridge - HomeKit-style accessories for Particle cloud devices."""

from .__version__ import __version__

__author__ = "Particle Bridge Contributors"
__description__ = "HomeKit-style accessories for Particle cloud devices"

from .cloud import ParticleCloudAPI, ParticleError, TransportError, MalformedPayloadError
from .events import ParticleEventStream, EventStreamHub, SSEDecoder
from .devices import get_profile
from .state import DeviceStateReconciler, Phase
from .commands import CommandDispatcher, CommunicationFailure, CommandSupersededError
from .config import BridgeConfig, DeviceBinding, ConfigurationError, load_config, parse_config
from .accessories import create_accessory
from .api import ParticleBridgeAPI
from . import homekit_uuids

__all__ = [
    "__version__",
    "ParticleCloudAPI",
    "ParticleError",
    "TransportError",
    "MalformedPayloadError",
    "ParticleEventStream",
    "EventStreamHub",
    "SSEDecoder",
    "get_profile",
    "DeviceStateReconciler",
    "Phase",
    "CommandDispatcher",
    "CommunicationFailure",
    "CommandSupersededError",
    "BridgeConfig",
    "DeviceBinding",
    "ConfigurationError",
    "load_config",
    "parse_config",
    "create_accessory",
    "ParticleBridgeAPI",
    "homekit_uuids",
]
