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

"""Translate get/set requests into cloud calls for one accessory service."""

import asyncio
import logging
from typing import Any, Optional

from aiohomekit.protocol.statuscodes import HapStatusCode

from .cloud import ParticleCloudAPI, ParticleError, MalformedPayloadError
from .devices import DeviceProfile
from .state import DeviceStateReconciler, Phase, UpdateCallback, DEFAULT_DEBOUNCE_SECONDS, DEFAULT_TRANSIT_SECONDS

logger = logging.getLogger(__name__)


class CommunicationFailure(ParticleError):
    """The accessory did not respond; shown as 'Not Responding'."""

    status = HapStatusCode.UNABLE_TO_COMMUNICATE


class CommandSupersededError(ParticleError):
    """A newer command for the same accessory replaced this one."""

    status = HapStatusCode.RESOURCE_BUSY


class CommandDispatcher:
    """
    Get/set handlers for one accessory service.

    A service is either backed by a Particle device (function to invoke,
    variable to poll) or by a plain URL (a toggle endpoint or a JSON
    sensor endpoint). The dispatcher owns the service's reconciler.
    """

    def __init__(
        self,
        name: str,
        profile: DeviceProfile,
        gateway: Optional[ParticleCloudAPI],
        device_id: Optional[str] = None,
        function_name: Optional[str] = None,
        variable_name: Optional[str] = None,
        result_field: Optional[str] = None,
        direct_url: Optional[str] = None,
        on_update: Optional[UpdateCallback] = None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        transit_seconds: float = DEFAULT_TRANSIT_SECONDS,
        rollback_on_failure: bool = False
    ):
        self.name = name
        self.profile = profile
        self.gateway = gateway
        self.device_id = device_id
        self.function_name = function_name
        self.variable_name = variable_name
        self.result_field = result_field or profile.result_field
        self.direct_url = direct_url

        self.reconciler = DeviceStateReconciler(
            name,
            profile,
            poll=self.poll if self.can_poll else None,
            on_update=on_update,
            debounce_seconds=debounce_seconds,
            transit_seconds=transit_seconds,
            rollback_on_failure=rollback_on_failure,
        )

        self._poll_task: Optional[asyncio.Task] = None
        self._invoke_task: Optional[asyncio.Task] = None
        self._periodic_task: Optional[asyncio.Task] = None

    @property
    def can_poll(self) -> bool:
        if self.variable_name:
            return True
        # A direct URL is a sensor endpoint unless it is the switch's toggle
        return bool(self.direct_url) and not self.profile.writable

    @property
    def is_toggle(self) -> bool:
        """Legacy URL switch: every request flips the relay."""
        return bool(self.direct_url) and self.profile.writable and not self.function_name

    # ------------------------------------------------------------------
    # Remote calls
    # ------------------------------------------------------------------

    async def poll(self) -> Any:
        """Read and decode the device's current state.

        Raises:
            TransportError: the request failed or timed out
            MalformedPayloadError: the value is not in the device's vocabulary
        """
        if self.variable_name:
            raw = await self.gateway.read_variable(self.device_id, self.variable_name, self.result_field)
        elif self.direct_url:
            body = await self.gateway.fetch_json(self.direct_url)
            if not isinstance(body, dict) or self.result_field not in body:
                raise MalformedPayloadError(f"No '{self.result_field}' in response from {self.direct_url}")
            raw = body[self.result_field]
        else:
            raise RuntimeError(f"{self.name} has nothing to poll")

        value = self.profile.decode_value(raw)
        logger.debug(f"[{self.name}] current state: {raw!r} -> {value!r}")
        return value

    async def _poll_and_report(self) -> Any:
        value = await self.poll()
        self.reconciler.poll_completed(value)
        return value

    async def _invoke(self, target: Any):
        if self.function_name:
            await self.gateway.call_function(self.device_id, self.function_name, self.profile.argument_for(target))
        elif self.is_toggle:
            await self.gateway.trigger_url(self.direct_url)
        else:
            raise RuntimeError(f"{self.name} has no way to send commands")

    # ------------------------------------------------------------------
    # Presentation-facing operations
    # ------------------------------------------------------------------

    def get_target(self) -> Any:
        """In-memory target state; never touches the network."""
        logger.debug(f"[{self.name}] get target -> {self.reconciler.target!r}")
        return self.reconciler.target

    async def get_current(self) -> Any:
        """
        Poll the device and return its state.

        Concurrent callers share one in-flight request. Services without a
        poll source answer from memory.

        Raises:
            CommunicationFailure: the poll failed; no stale value is returned
        """
        if not self.can_poll:
            return self.reconciler.observed

        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_and_report())
        task = self._poll_task

        try:
            return await asyncio.shield(task)
        except ParticleError as e:
            logger.error(f"[{self.name}] Cannot get {self.profile.current_characteristic}: {e}")
            raise CommunicationFailure(str(e)) from e

    async def set_target(self, value: Any) -> Any:
        """
        Request a new target state.

        Returns once the cloud accepted the command, not when the device
        finished moving.

        Raises:
            ValueError: value is not legal for this service
            CommunicationFailure: the cloud call failed or timed out
            CommandSupersededError: a newer command replaced this one
        """
        target = self.profile.validate_target(value)
        logger.debug(f"[{self.name}] set target -> {target!r}")

        if self.is_toggle and self.reconciler.phase is Phase.IDLE and self.reconciler.observed == target:
            # Toggling now would flip it the wrong way
            logger.debug(f"[{self.name}] Already {target!r}, not toggling")
            return target

        generation = await self.reconciler.begin_command(target)

        previous = self._invoke_task
        if previous is not None and not previous.done():
            logger.info(f"[{self.name}] Command #{generation} supersedes an in-flight command")
            previous.cancel()

        task = asyncio.create_task(self._invoke(target))
        self._invoke_task = task
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and not (current and current.cancelling()):
                raise CommandSupersededError(f"Command #{generation} for {self.name} was superseded")
            # The caller went away; close the cycle
            self.reconciler.command_finished(
                generation, ParticleError(f"Command #{generation} for {self.name} was cancelled"))
            raise
        except ParticleError as e:
            self.reconciler.command_finished(generation, e)
            raise CommunicationFailure(str(e)) from e

        self.reconciler.command_finished(generation)
        return target

    # ------------------------------------------------------------------
    # Background refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> Optional[Any]:
        """Poll once and reconcile; failures are logged and swallowed."""
        if not self.can_poll:
            return None
        try:
            return await self.get_current()
        except CommunicationFailure as e:
            logger.warning(f"[{self.name}] Refresh failed: {e}")
            return None

    def start_polling(self, interval: float):
        """Start a background poll every interval seconds."""
        if not self.can_poll or not interval:
            return
        if self._periodic_task and not self._periodic_task.done():
            return
        self._periodic_task = asyncio.create_task(self._polling_loop(interval))
        logger.info(f"[{self.name}] Polling every {interval}s")

    async def _polling_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            await self.refresh()

    def handle_event(self, source_id: str, payload: Any):
        """Event stream listener; drops events of other devices."""
        if source_id != self.device_id:
            return
        self.reconciler.event_received(payload)

    async def stop(self):
        tasks = [t for t in (self._periodic_task, self._poll_task, self._invoke_task) if t and not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.reconciler.stop()
