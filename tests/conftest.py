import asyncio

import pytest

from particle_bridge.cloud import TransportError


class FakeGateway:
    """Stands in for ParticleCloudAPI; records every call."""

    def __init__(self):
        self.calls = []
        self.variables = {}
        self.urls = {}
        self.read_error = None
        self.call_error = None
        self.read_delay = 0
        self.call_delays = []
        self.requests_sent = 0
        self.requests_failed = 0

    async def read_variable(self, device_id, variable_name, field='result'):
        self.calls.append(('read', device_id, variable_name))
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        if self.read_error:
            raise self.read_error
        return self.variables[variable_name]

    async def call_function(self, device_id, function_name, argument):
        self.calls.append(('call', device_id, function_name, argument))
        if self.call_delays:
            await asyncio.sleep(self.call_delays.pop(0))
        if self.call_error:
            raise self.call_error
        return {'id': device_id, 'connected': True, 'return_value': 1}

    async def fetch_json(self, url):
        self.calls.append(('fetch', url))
        if self.read_error:
            raise self.read_error
        return self.urls[url]

    async def trigger_url(self, url):
        self.calls.append(('trigger', url))
        if self.call_error:
            raise self.call_error

    async def close(self):
        pass

    def count(self, kind):
        return sum(1 for call in self.calls if call[0] == kind)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def transport_error():
    return TransportError("Timeout after 7.0s while requesting read doorState")
