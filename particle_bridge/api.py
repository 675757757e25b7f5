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

"""Particle Bridge API - owns the accessories, their cloud clients and the SSE fan-out."""

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from .accessories import ParticleAccessory, create_accessory
from .cloud import ParticleCloudAPI
from .config import BridgeConfig, DeviceBinding
from .events import EventStreamHub

# Configure logging
logger = logging.getLogger('particle-bridge')


class ParticleBridgeAPI:
    """Bridge host: one accessory per configured device."""
    accessories: Dict[int, ParticleAccessory]
    gateways: Dict[Tuple[str, str, float], ParticleCloudAPI]

    def __init__(self, config: BridgeConfig, event_hub: Optional[EventStreamHub] = None):
        self.config = config
        self.accessories = {}
        self.gateways = {}
        self.event_hub = event_hub if event_hub is not None else EventStreamHub()
        self.event_listeners: List[asyncio.Queue] = []
        self.started_at: Optional[float] = None
        self.last_update: Optional[float] = None
        self.changes_published = 0
        self.is_initializing = False
        self.is_shutting_down = False

    def get_gateway(self, binding: DeviceBinding) -> ParticleCloudAPI:
        """Shared client per (token, base URL, timeout)."""
        key = binding.gateway_key
        gateway = self.gateways.get(key)
        if gateway is None:
            gateway = ParticleCloudAPI(binding.access_token or '', binding.base_url, binding.request_timeout)
            self.gateways[key] = gateway
        return gateway

    def build_accessories(self):
        """Create (but do not start) an accessory for every configured device."""
        self.accessories = {}
        for aid, binding in enumerate(self.config.devices, start=2):
            # aid 1 is the bridge itself
            accessory = create_accessory(binding, aid, self.get_gateway(binding), self._on_change)
            self.accessories[aid] = accessory
            logger.info(f"Configured {accessory.kind} '{binding.name}' as accessory {aid}")
        return self.accessories

    async def initialize(self):
        """Build the accessories, subscribe to their events and poll each once."""
        self.is_initializing = True
        if not self.accessories:
            self.build_accessories()

        await asyncio.gather(*(a.start(self.event_hub) for a in self.accessories.values()))
        self.is_initializing = False
        self.started_at = time.time()
        logger.info(f"Particle Bridge API initialized with {len(self.accessories)} accessories")

    async def cleanup(self):
        """Stop accessories, close event streams and HTTP sessions."""
        logger.info("Starting cleanup...")
        self.is_shutting_down = True

        for accessory in self.accessories.values():
            try:
                await accessory.stop()
            except Exception as e:
                logger.warning(f"Error stopping {accessory.name}: {e}")

        await self.event_hub.close()

        for gateway in self.gateways.values():
            await gateway.close()

        if self.event_listeners:
            logger.info(f"Closing {len(self.event_listeners)} event listener queues")
            for queue in self.event_listeners:
                # Signal end of stream
                queue.put_nowait(None)
            self.event_listeners.clear()

        logger.info("Cleanup complete")

    def get_accessory(self, aid: int) -> Optional[ParticleAccessory]:
        return self.accessories.get(aid)

    def _on_change(self, accessory: ParticleAccessory, characteristic: str, value: Any):
        """Reconciler update for one characteristic; pushed to SSE clients."""
        self.last_update = time.time()
        if not self.is_initializing:
            logger.info(f"[{accessory.name}] {characteristic}: {value}")
        self.changes_published += 1
        self.broadcast_event({
            'type': 'characteristic',
            'aid': accessory.aid,
            'name': accessory.name,
            'characteristic': characteristic,
            'value': value,
            'timestamp': self.last_update,
        })

    def broadcast_event(self, event_data: Dict[str, Any]):
        """Broadcast change event to all connected SSE clients."""
        event_message = f"data: {json.dumps(event_data)}\n\n"
        for listener in list(self.event_listeners):
            try:
                listener.put_nowait(event_message)
            except asyncio.QueueFull:
                logger.warning("SSE client is not keeping up, dropping it")
                self.event_listeners.remove(listener)

    def status(self) -> Dict[str, Any]:
        return {
            'accessories': len(self.accessories),
            'active_listeners': len(self.event_listeners),
            'event_streams': {
                name: stream.connected
                for (_, _, name), stream in self.event_hub.streams.items()
            },
            'requests_sent': sum(g.requests_sent for g in self.gateways.values()),
            'requests_failed': sum(g.requests_failed for g in self.gateways.values()),
            'changes_published': self.changes_published,
            'last_update': self.last_update,
            'uptime': time.time() - self.started_at if self.started_at else 0,
            'devices': [a.status() for a in self.accessories.values()],
        }
