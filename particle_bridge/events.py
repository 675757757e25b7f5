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

"""Particle event stream subscription (Server-Sent Events).

Particle publishes device events on GET {base}events/{name} as an SSE
stream. Each frame looks like:

    event: door-state
    data: {"data":"door-opened","ttl":60,"published_at":"...","coreid":"3a00..."}

The stream reconnects on its own after any transport error; callers only
ever see (coreid, data) pairs and informational errors.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from .cloud import TransportError, normalize_base_url

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, Any], None]
ErrorCallback = Callable[[Exception], None]

DEFAULT_RECONNECT_DELAY = 5.0
MAX_RECONNECT_DELAY = 300.0


@dataclass
class ServerSentEvent:
    event: str = 'message'
    data: str = ''
    id: Optional[str] = None


class SSEDecoder:
    """Line-oriented Server-Sent Events parser."""

    def __init__(self):
        self._event = ''
        self._data: List[str] = []
        self._id: Optional[str] = None

    def feed(self, line: str) -> Optional[ServerSentEvent]:
        """Feed one line (without its line terminator).

        Returns a complete event when the line is the blank dispatch line.
        """
        if not line:
            if not self._data:
                self._event = ''
                return None
            event = ServerSentEvent(
                event=self._event or 'message',
                data='\n'.join(self._data),
                id=self._id,
            )
            self._event = ''
            self._data = []
            return event

        if line.startswith(':'):
            # Comment / keepalive (Particle sends ":ok")
            return None

        name, sep, value = line.partition(':')
        if sep and value.startswith(' '):
            value = value[1:]

        if name == 'event':
            self._event = value
        elif name == 'data':
            self._data.append(value)
        elif name == 'id':
            self._id = value
        # 'retry' and unknown fields are ignored
        return None


class ParticleEventStream:
    """
    One long-lived subscription to a named Particle event.

    Listeners receive (coreid, data) for every well-formed event. Transport
    errors are reported to the listeners' error callbacks and followed by a
    reconnect with exponential backoff; they never end the subscription.
    """

    def __init__(
        self,
        base_url: str,
        access_token: str,
        event_name: str,
        session: Optional[aiohttp.ClientSession] = None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        max_reconnect_delay: float = MAX_RECONNECT_DELAY,
        connect_timeout: float = 30.0,
        read_timeout: Optional[float] = None
    ):
        self.base_url = normalize_base_url(base_url)
        self.access_token = access_token
        self.event_name = event_name
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout

        self._session = session
        self._owns_session = session is None
        self._listeners: List[Tuple[EventCallback, Optional[ErrorCallback]]] = []
        self._task: Optional[asyncio.Task] = None

        self.connected = False
        self.events_received = 0
        self.reconnects = 0
        self._received_since_connect = False

    @property
    def url(self) -> str:
        return f"{self.base_url}events/{self.event_name}"

    def add_listener(self, on_event: EventCallback, on_error: Optional[ErrorCallback] = None):
        self._listeners.append((on_event, on_error))

    def remove_listener(self, on_event: EventCallback):
        self._listeners = [(cb, err) for cb, err in self._listeners if cb != on_event]

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def start(self):
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name=f"events-{self.event_name}")
        logger.debug(f"registering event: {self.url}")

    async def stop(self):
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self.connected = False
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _run(self):
        delay = self.reconnect_delay
        while True:
            try:
                await self._consume()
                raise TransportError("Event stream closed by server")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Anything that ends the connection (oversized lines included) means reconnect
                error = e if isinstance(e, TransportError) else TransportError(f"Event stream error: {type(e).__name__}: {e}")
                self.connected = False
                if self._received_since_connect:
                    delay = self.reconnect_delay
                logger.warning(f"Event stream {self.event_name}: {error}; reconnecting in {delay:.0f}s")
                self._notify_error(error)

            await asyncio.sleep(delay)
            self.reconnects += 1
            delay = min(delay * 2, self.max_reconnect_delay)

    async def _consume(self):
        """Connect once and dispatch events until the stream ends."""
        self._received_since_connect = False
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.connect_timeout, sock_read=self.read_timeout)
        headers = {
            'Authorization': f'Bearer {self.access_token}',
            'Accept': 'text/event-stream',
        }
        async with self._get_session().get(self.url, headers=headers, timeout=timeout) as resp:
            if resp.status != 200:
                raise TransportError(f"Event stream request failed with status {resp.status}", status=resp.status)

            self.connected = True
            # A successful connect counts as progress for the backoff
            self._received_since_connect = True
            logger.info(f"Subscribed to Particle event '{self.event_name}'")

            decoder = SSEDecoder()
            async for raw_line in resp.content:
                line = raw_line.decode('utf-8', errors='replace').rstrip('\r\n')
                event = decoder.feed(line)
                if event is not None:
                    self._dispatch(event)

    def _dispatch(self, event: ServerSentEvent):
        # The cloud matches subscriptions by event name prefix
        if event.event != 'message' and not event.event.startswith(self.event_name):
            logger.debug(f"Ignoring event '{event.event}' on stream '{self.event_name}'")
            return

        try:
            body = json.loads(event.data)
        except ValueError:
            logger.warning(f"Malformed event data on '{self.event_name}': {event.data[:100]!r}")
            return

        if not isinstance(body, dict) or 'coreid' not in body or 'data' not in body:
            logger.warning(f"Unexpected event shape on '{self.event_name}': {event.data[:100]!r}")
            return

        self.events_received += 1
        coreid = body['coreid']
        payload = body['data']
        logger.debug(f"Event {self.event_name} from {coreid}: {payload!r}")

        for on_event, _ in list(self._listeners):
            try:
                on_event(coreid, payload)
            except Exception as e:
                logger.error(f"Event listener for '{self.event_name}' failed: {e}", exc_info=True)

    def _notify_error(self, error: Exception):
        for _, on_error in list(self._listeners):
            if on_error is None:
                continue
            try:
                on_error(error)
            except Exception as e:
                logger.error(f"Error listener for '{self.event_name}' failed: {e}")


class Subscription:
    """Handle returned by EventStreamHub.subscribe()."""

    def __init__(self, hub: 'EventStreamHub', key: Tuple[str, str, str], on_event: EventCallback):
        self._hub = hub
        self._key = key
        self._on_event = on_event
        self.active = True

    @property
    def event_name(self) -> str:
        return self._key[2]

    async def close(self):
        if self.active:
            self.active = False
            await self._hub._release(self._key, self._on_event)


class EventStreamHub:
    """Shares one ParticleEventStream per (base URL, token, event name)."""

    def __init__(self, session: Optional[aiohttp.ClientSession] = None, stream_factory=ParticleEventStream,
                 **stream_options):
        self._session = session
        self._stream_factory = stream_factory
        self._stream_options = stream_options
        self.streams: Dict[Tuple[str, str, str], ParticleEventStream] = {}

    def subscribe(self, base_url: str, access_token: str, event_name: str,
                  on_event: EventCallback, on_error: Optional[ErrorCallback] = None) -> Subscription:
        key = (normalize_base_url(base_url), access_token, event_name)
        stream = self.streams.get(key)
        if stream is None:
            stream = self._stream_factory(
                key[0], access_token, event_name, session=self._session, **self._stream_options
            )
            self.streams[key] = stream
        stream.add_listener(on_event, on_error)
        stream.start()
        return Subscription(self, key, on_event)

    async def _release(self, key: Tuple[str, str, str], on_event: EventCallback):
        stream = self.streams.get(key)
        if stream is None:
            return
        stream.remove_listener(on_event)
        if stream.listener_count == 0:
            del self.streams[key]
            await stream.stop()

    async def close(self):
        streams = list(self.streams.values())
        self.streams.clear()
        for stream in streams:
            await stream.stop()
