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

"""Device state reconciliation.

One DeviceStateReconciler owns the believed state of one accessory
service. Its inputs arrive from three places:

- poll results (the initial/periodic refresh, a caller's GET, or the
  deferred confirmation poll scheduled after a command)
- push events from the device's event stream
- commands issued by the user

All of them are turned into messages on a single mailbox and applied by
one consumer task, in the order they were posted. Timers (the debounce
window and delayed events) only post messages, so nothing outside the
consumer ever mutates state.

Phases:

    IDLE --command--> COMMAND_PENDING --invoke ok--> TRANSITIONING
      ^                     |                             |
      +----invoke failed----+                             |
      +----------deferred poll / matching event-----------+

Every command bumps a generation counter. Invoke results, debounce
expiries and deferred polls carry the generation they were started
under and are discarded once a newer command has begun.
"""

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .cloud import ParticleError
from .devices import DeviceProfile

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 3.0
DEFAULT_TRANSIT_SECONDS = 20.0


class Phase(enum.Enum):
    IDLE = 'idle'
    COMMAND_PENDING = 'command-pending'
    TRANSITIONING = 'transitioning'


# Mailbox messages

@dataclass
class CommandStarted:
    target: Any
    reply: asyncio.Future


@dataclass
class InvokeCompleted:
    generation: int
    error: Optional[BaseException] = None


@dataclass
class PollCompleted:
    value: Any = None
    error: Optional[BaseException] = None
    # None for polls not tied to a command (refresh, caller GET)
    generation: Optional[int] = None


@dataclass
class EventReceived:
    payload: Any
    delayed: bool = False
    received_at: float = field(default_factory=time.monotonic)


@dataclass
class DebounceExpired:
    generation: int


UpdateCallback = Callable[[str, Any], None]
PollFunction = Callable[[], Awaitable[Any]]


class DeviceStateReconciler:
    """Single-owner state machine for one accessory service."""

    def __init__(
        self,
        name: str,
        profile: DeviceProfile,
        poll: Optional[PollFunction] = None,
        on_update: Optional[UpdateCallback] = None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        transit_seconds: float = DEFAULT_TRANSIT_SECONDS,
        rollback_on_failure: bool = False
    ):
        self.name = name
        self.profile = profile
        self.poll = poll
        self.on_update = on_update
        self.debounce_seconds = debounce_seconds
        self.transit_seconds = transit_seconds
        self.rollback_on_failure = rollback_on_failure

        self.observed: Any = profile.initial_current
        self.target: Any = profile.initial_target
        self.phase = Phase.IDLE
        self.generation = 0
        self.debounce_open = False

        # Last observed value that came from the device itself
        self._known_good: Any = profile.initial_current
        self._synced = False

        self._emitted: Dict[str, Any] = {}
        self._mailbox: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._timers: Set[asyncio.TimerHandle] = set()
        self._deferred_polls: Set[asyncio.Task] = set()

        # Counters for the status endpoint
        self.events_applied = 0
        self.events_delayed = 0
        self.polls_applied = 0
        self.stale_discarded = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def motion(self) -> bool:
        """True while a command is outstanding or its debounce window is open."""
        return self.phase is Phase.COMMAND_PENDING or self.debounce_open

    @property
    def synced(self) -> bool:
        """True once any poll or event has reported the device's state."""
        return self._synced

    def start(self):
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name=f"reconciler-{self.name}")

    async def stop(self):
        """Cancel timers, pending deferred polls and the consumer task."""
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()

        tasks = list(self._deferred_polls)
        if self._task and not self._task.done():
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._deferred_polls.clear()
        self._task = None

    async def drain(self):
        """Wait until every message posted so far has been applied."""
        await self._mailbox.join()

    def snapshot(self) -> Dict[str, Any]:
        return {
            'observed': self.observed,
            'target': self.target,
            'phase': self.phase.value,
            'generation': self.generation,
            'motion': self.motion,
            'synced': self._synced,
        }

    # ------------------------------------------------------------------
    # Inputs (may be called from any task on the loop)
    # ------------------------------------------------------------------

    def _post(self, message):
        self.start()
        self._mailbox.put_nowait(message)

    async def begin_command(self, target: Any) -> int:
        """Enter COMMAND_PENDING for a target; returns the command generation."""
        reply = asyncio.get_running_loop().create_future()
        self._post(CommandStarted(target, reply))
        try:
            return await asyncio.shield(reply)
        except asyncio.CancelledError:
            # The consumer still opens the cycle; close it once it has
            reply.add_done_callback(self._abandon_command)
            raise

    def _abandon_command(self, reply: asyncio.Future):
        if reply.cancelled() or reply.exception() is not None:
            return
        generation = reply.result()
        self.command_finished(generation, ParticleError(f"Command #{generation} was abandoned"))

    def command_finished(self, generation: int, error: Optional[BaseException] = None):
        self._post(InvokeCompleted(generation, error))

    def poll_completed(self, value: Any = None, error: Optional[BaseException] = None,
                       generation: Optional[int] = None):
        self._post(PollCompleted(value, error, generation))

    def event_received(self, payload: Any):
        self._post(EventReceived(payload))

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    async def _run(self):
        while True:
            message = await self._mailbox.get()
            try:
                self._handle(message)
            except Exception as e:
                logger.error(f"[{self.name}] Error applying {type(message).__name__}: {e}", exc_info=True)
                if isinstance(message, CommandStarted) and not message.reply.done():
                    message.reply.set_exception(e)
            finally:
                self._mailbox.task_done()

    def _handle(self, message):
        if isinstance(message, CommandStarted):
            self._on_command_started(message)
        elif isinstance(message, InvokeCompleted):
            self._on_invoke_completed(message)
        elif isinstance(message, PollCompleted):
            self._on_poll_completed(message)
        elif isinstance(message, EventReceived):
            self._on_event(message)
        elif isinstance(message, DebounceExpired):
            self._on_debounce_expired(message)
        else:
            logger.warning(f"[{self.name}] Unknown message {message!r}")

    def _schedule(self, delay: float, message):
        loop = asyncio.get_running_loop()

        def fire():
            self._timers.discard(handle)
            self._mailbox.put_nowait(message)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    def _on_command_started(self, message: CommandStarted):
        self.generation += 1
        self.target = message.target
        self.phase = Phase.COMMAND_PENDING
        self.debounce_open = False

        transit = self.profile.transit_state(message.target)
        if transit is not None:
            self.observed = transit
            logger.debug(f"[{self.name}] Setting {self.profile.current_characteristic} to {transit!r}")

        logger.debug(f"[{self.name}] Command #{self.generation}: target={message.target!r}")
        self._emit()
        if not message.reply.done():
            message.reply.set_result(self.generation)

    def _on_invoke_completed(self, message: InvokeCompleted):
        if message.generation != self.generation:
            self.stale_discarded += 1
            logger.debug(f"[{self.name}] Ignoring result of superseded command #{message.generation}")
            return

        if message.error is not None:
            # The optimistic in-motion value is not something the device reported
            self.observed = self._known_good
            if self.rollback_on_failure:
                derived = self.profile.target_for(self.observed)
                if derived is not None:
                    self.target = derived
            self.phase = Phase.IDLE
            logger.warning(f"[{self.name}] Command #{message.generation} failed: {message.error}")
            self._emit()
            return

        if self.poll is None:
            # Nothing to confirm with; trust the accepted command
            self._apply_observed(self.profile.current_for_target(self.target), derive_target=False)
            logger.debug(f"[{self.name}] Command #{message.generation} accepted, no confirmation source")
            self._emit()
            return

        self.phase = Phase.TRANSITIONING
        self.debounce_open = True
        self._schedule(self.debounce_seconds, DebounceExpired(message.generation))

        task = asyncio.create_task(self._deferred_poll(message.generation))
        self._deferred_polls.add(task)
        task.add_done_callback(self._deferred_polls.discard)
        logger.debug(f"[{self.name}] Command #{message.generation} accepted, "
                     f"confirming in {self.transit_seconds}s")

    async def _deferred_poll(self, generation: int):
        await asyncio.sleep(self.transit_seconds)
        if generation != self.generation:
            logger.debug(f"[{self.name}] Skipping confirmation poll of superseded command #{generation}")
            return
        try:
            value = await self.poll()
        except ParticleError as e:
            self._mailbox.put_nowait(PollCompleted(error=e, generation=generation))
        except Exception as e:
            # The cycle must still close
            logger.error(f"[{self.name}] Confirmation poll raised {type(e).__name__}: {e}", exc_info=True)
            self._mailbox.put_nowait(PollCompleted(error=e, generation=generation))
        else:
            self._mailbox.put_nowait(PollCompleted(value=value, generation=generation))

    def _on_poll_completed(self, message: PollCompleted):
        deferred = message.generation is not None

        if deferred and message.generation != self.generation:
            self.stale_discarded += 1
            logger.info(f"[{self.name}] Discarding stale confirmation poll of command #{message.generation}")
            return

        if message.error is not None:
            logger.warning(f"[{self.name}] Poll failed: {message.error}")
            if deferred and self.phase is Phase.TRANSITIONING:
                # Leave the last value in place; the next poll or event settles it
                self.phase = Phase.IDLE
                self.debounce_open = False
            return

        if not deferred and self.phase is not Phase.IDLE:
            logger.debug(f"[{self.name}] Not applying poll result {message.value!r} during {self.phase.value}")
            return

        self.polls_applied += 1
        self._apply_observed(message.value)
        self._emit()

    def _on_event(self, message: EventReceived):
        value = self.profile.decode_event(message.payload)
        if value is None:
            logger.debug(f"[{self.name}] Ignoring event payload {message.payload!r}")
            return

        if not message.delayed and self.motion:
            self.events_delayed += 1
            logger.debug(f"[{self.name}] Delaying event {message.payload!r} by {self.debounce_seconds}s (in motion)")
            self._schedule(self.debounce_seconds, EventReceived(message.payload, delayed=True,
                                                                 received_at=message.received_at))
            return

        logger.debug(f"[{self.name}] Event: {message.payload}")
        self.events_applied += 1
        self._apply_observed(value)
        self._emit()

    def _on_debounce_expired(self, message: DebounceExpired):
        if message.generation == self.generation:
            self.debounce_open = False

    def _apply_observed(self, value: Any, derive_target: bool = True):
        """Set the observed value reported by the device and return to IDLE."""
        self.observed = value
        self._known_good = value
        self._synced = True
        if derive_target:
            derived = self.profile.target_for(value)
            if derived is not None:
                self.target = derived
        self.phase = Phase.IDLE
        self.debounce_open = False

    def _emit(self):
        """Push characteristic values that changed since the last push."""
        values = {self.profile.current_characteristic: self.observed}
        target_char = self.profile.target_characteristic
        if target_char and target_char != self.profile.current_characteristic:
            values[target_char] = self.target

        for characteristic, value in values.items():
            if characteristic in self._emitted and self._emitted[characteristic] == value:
                continue
            self._emitted[characteristic] = value
            if self.on_update:
                try:
                    self.on_update(characteristic, value)
                except Exception as e:
                    logger.error(f"[{self.name}] Update callback failed for {characteristic}: {e}")
