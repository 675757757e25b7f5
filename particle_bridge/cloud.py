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

"""Particle Cloud API client for device variables and functions.

Request Strategy:
=================

- Every request carries an explicit timeout (7s unless configured).
- A timeout aborts the underlying HTTP request and surfaces as a
  TransportError. Nothing is retried here; the caller decides what a
  failure means for its accessory.
- Success is decided by the HTTP status alone. A function call returning
  200 only means the cloud accepted it, not that the door has moved.

Wire contract:
--------------
- Variable read:   GET  {base}devices/{device_id}/{variable}?access_token=...
- Function invoke: POST {base}devices/{device_id}/{function}
                   form body: access_token=...&args=...
"""

import asyncio
import json
import logging
from typing import Optional, Dict, Any

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.particle.io/v1/"
DEFAULT_REQUEST_TIMEOUT = 7.0


class ParticleError(Exception):
    """Base class for all Particle Bridge errors."""


class TransportError(ParticleError):
    """Timeout, connection failure or non-success HTTP status."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class MalformedPayloadError(ParticleError):
    """A response or event did not have the expected shape or vocabulary."""


def normalize_base_url(url: Optional[str]) -> str:
    """Return the base URL with exactly one trailing slash."""
    if not url:
        return DEFAULT_BASE_URL
    return url.rstrip('/') + '/'


class ParticleCloudAPI:
    """
    Bounded-timeout client for the Particle device cloud.

    One instance per access token/base URL pair. The aiohttp session is
    created lazily on first use and must be released with close().
    """

    def __init__(
        self,
        access_token: str,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.access_token = access_token
        self.base_url = normalize_base_url(base_url)
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

        # Counters for the status endpoint
        self.requests_sent = 0
        self.requests_failed = 0

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self):
        """Close the HTTP session if we created it."""
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def device_url(self, device_id: str, name: str) -> str:
        return f"{self.base_url}devices/{device_id}/{name}"

    async def _request(self, method: str, url: str, what: str, **kwargs) -> Any:
        """
        Perform one HTTP request and return the decoded JSON body.

        Args:
            method: HTTP verb
            url: Absolute URL
            what: Short description for log messages

        Returns:
            Decoded JSON body, or None when the body is empty

        Raises:
            TransportError: on timeout, connection error or non-2xx status
            MalformedPayloadError: when a non-empty body is not JSON
        """
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        self.requests_sent += 1
        try:
            async with self._get_session().request(method, url, timeout=timeout, **kwargs) as resp:
                raw = await resp.read()
                if resp.status < 200 or resp.status >= 300:
                    self.requests_failed += 1
                    logger.error(f"{what} failed: HTTP {resp.status} - {raw[:200].decode('utf-8', errors='replace')}")
                    raise TransportError(f"Request failed with status {resp.status}", status=resp.status)
        except asyncio.TimeoutError:
            self.requests_failed += 1
            logger.error(f"{what} timed out after {self.timeout}s")
            raise TransportError(f"Timeout after {self.timeout}s while requesting {what}")
        except aiohttp.ClientError as e:
            self.requests_failed += 1
            logger.error(f"{what} failed: {e}")
            raise TransportError(f"{what} failed: {e}") from e

        try:
            text = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MalformedPayloadError(f"{what} returned a body that is not UTF-8: {raw[:100]!r}") from e

        if not text.strip():
            return None
        try:
            return json.loads(text)
        except ValueError as e:
            raise MalformedPayloadError(f"{what} returned a non-JSON body: {text[:100]!r}") from e

    async def read_variable(self, device_id: str, variable_name: str, field: str = 'result') -> Any:
        """
        Read a cloud variable from a device.

        Args:
            device_id: Particle device ID
            variable_name: Name of the exposed variable
            field: Body field holding the value ('result' for the Particle API)

        Returns:
            The raw value exactly as reported (int, float, str or bool)
        """
        url = self.device_url(device_id, variable_name)
        body = await self._request(
            'GET', url, f"read {variable_name}",
            params={'access_token': self.access_token}
        )
        if not isinstance(body, dict) or field not in body:
            raise MalformedPayloadError(f"Cannot get {variable_name}: no '{field}' in response")

        value = body[field]
        logger.debug(f"Read {device_id}/{variable_name}: {value!r}")
        return value

    async def call_function(self, device_id: str, function_name: str, argument: str) -> Optional[Dict[str, Any]]:
        """
        Invoke a cloud function on a device.

        Returns once the cloud reports success; does not wait for the
        physical effect.

        Returns:
            The response body (usually {'id', 'connected', 'return_value'})
        """
        url = self.device_url(device_id, function_name)
        body = await self._request(
            'POST', url, f"call {function_name}({argument})",
            data={'access_token': self.access_token, 'args': argument}
        )
        logger.debug(f"Called {device_id}/{function_name}({argument}): {body}")
        return body if isinstance(body, dict) else None

    async def fetch_json(self, url: str) -> Any:
        """GET an arbitrary JSON URL (direct-URL sensors)."""
        return await self._request('GET', url, f"fetch {url}")

    async def trigger_url(self, url: str) -> None:
        """GET an arbitrary URL for its side effect; the body is ignored."""
        try:
            await self._request('GET', url, f"trigger {url}")
        except MalformedPayloadError:
            # Toggle endpoints often answer with plain text
            pass
