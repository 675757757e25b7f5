import asyncio

import pytest
from aiohttp import web
from aiohttp import test_utils

from particle_bridge.cloud import (
    ParticleCloudAPI, TransportError, MalformedPayloadError, normalize_base_url, DEFAULT_BASE_URL,
)


async def _run_against(app, scenario, timeout=1.0):
    """Start an aiohttp test server, run scenario(api), always clean up."""
    server = test_utils.TestServer(app)
    await server.start_server()
    api = ParticleCloudAPI('token-123', str(server.make_url('/v1/')), timeout=timeout)
    try:
        return await scenario(api)
    finally:
        await api.close()
        await server.close()


def test_normalize_base_url():
    assert normalize_base_url(None) == DEFAULT_BASE_URL
    assert normalize_base_url("http://localhost:8080/v1") == "http://localhost:8080/v1/"
    assert normalize_base_url("http://localhost:8080/v1//") == "http://localhost:8080/v1/"


def test_read_variable_wire_format():
    seen = {}

    async def handler(request):
        seen['path'] = request.path
        seen['token'] = request.query.get('access_token')
        return web.json_response({'cmd': 'VarReturn', 'name': 'doorState', 'result': 1})

    app = web.Application()
    app.router.add_get('/v1/devices/{device}/{var}', handler)

    async def scenario(api):
        return await api.read_variable('dev1', 'doorState')

    assert asyncio.run(_run_against(app, scenario)) == 1
    assert seen == {'path': '/v1/devices/dev1/doorState', 'token': 'token-123'}


def test_read_variable_missing_field_is_malformed():
    async def handler(request):
        return web.json_response({'error': 'Variable not found'})

    app = web.Application()
    app.router.add_get('/v1/devices/{device}/{var}', handler)

    async def scenario(api):
        with pytest.raises(MalformedPayloadError):
            await api.read_variable('dev1', 'doorState')

    asyncio.run(_run_against(app, scenario))


def test_non_utf8_body_is_malformed():
    async def handler(request):
        return web.Response(body=b'{"result": "\xff\xfe"}', content_type='application/json')

    app = web.Application()
    app.router.add_get('/v1/devices/{device}/{var}', handler)

    async def scenario(api):
        with pytest.raises(MalformedPayloadError, match="not UTF-8"):
            await api.read_variable('dev1', 'doorState')

    asyncio.run(_run_against(app, scenario))


def test_call_function_posts_form_body():
    seen = {}

    async def handler(request):
        form = await request.post()
        seen['path'] = request.path
        seen['form'] = dict(form)
        return web.json_response({'id': 'dev1', 'connected': True, 'return_value': 1})

    app = web.Application()
    app.router.add_post('/v1/devices/{device}/{fn}', handler)

    async def scenario(api):
        return await api.call_function('dev1', 'doorCommand', 'open')

    body = asyncio.run(_run_against(app, scenario))
    assert body['return_value'] == 1
    assert seen['path'] == '/v1/devices/dev1/doorCommand'
    assert seen['form'] == {'access_token': 'token-123', 'args': 'open'}


def test_http_error_status_becomes_transport_error():
    async def handler(request):
        return web.json_response({'error': 'Timed out.'}, status=408)

    app = web.Application()
    app.router.add_post('/v1/devices/{device}/{fn}', handler)

    async def scenario(api):
        with pytest.raises(TransportError) as excinfo:
            await api.call_function('dev1', 'doorCommand', 'close')
        return excinfo.value, api.requests_failed

    error, failed = asyncio.run(_run_against(app, scenario))
    assert error.status == 408
    assert failed == 1


def test_timeout_becomes_transport_error():
    async def handler(request):
        await asyncio.sleep(1)
        return web.json_response({'result': 0})

    app = web.Application()
    app.router.add_get('/v1/devices/{device}/{var}', handler)

    async def scenario(api):
        with pytest.raises(TransportError, match="Timeout"):
            await api.read_variable('dev1', 'doorState')

    asyncio.run(_run_against(app, scenario, timeout=0.2))


def test_connection_refused_becomes_transport_error():
    async def scenario():
        api = ParticleCloudAPI('token', 'http://127.0.0.1:9/v1/', timeout=1.0)
        try:
            with pytest.raises(TransportError):
                await api.read_variable('dev1', 'doorState')
        finally:
            await api.close()

    asyncio.run(scenario())


def test_fetch_json_and_trigger_url():
    hits = []

    async def temperature(request):
        return web.json_response({'currTemp': 21.5})

    async def toggle(request):
        hits.append(request.path)
        return web.Response(text="OK")

    app = web.Application()
    app.router.add_get('/temp', temperature)
    app.router.add_get('/toggle', toggle)

    async def scenario(api):
        base = api.base_url.replace('/v1/', '')
        body = await api.fetch_json(f"{base}/temp")
        await api.trigger_url(f"{base}/toggle")
        with pytest.raises(MalformedPayloadError):
            await api.fetch_json(f"{base}/toggle")
        return body

    assert asyncio.run(_run_against(app, scenario)) == {'currTemp': 21.5}
    assert hits == ['/toggle', '/toggle']
