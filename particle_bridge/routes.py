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

"""FastAPI route handlers for Particle Bridge."""

import asyncio
import json
import logging
import os
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, status
from fastapi.responses import StreamingResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from aiohomekit.protocol.statuscodes import HapStatusCode

from .__version__ import __version__
from .accessories import ReadOnlyCharacteristicError, UnknownCharacteristicError
from .commands import CommunicationFailure, CommandSupersededError
from .homekit_uuids import enhance_accessory_data

# Configure logging
logger = logging.getLogger(__name__)

# Security
security = HTTPBearer(auto_error=False)

KEEPALIVE_INTERVAL = 90
LISTENER_QUEUE_SIZE = 256


def load_api_keys() -> set:
    """Space-separated keys from PARTICLE_BRIDGE_API_KEYS (empty = no auth)."""
    raw = os.environ.get('PARTICLE_BRIDGE_API_KEYS', '').strip()
    return set(key.strip() for key in raw.split() if key.strip())


API_KEYS = load_api_keys()


def get_api_key(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> Optional[str]:
    """
    Validate API key from Authorization header.

    Authentication is disabled when no keys are configured.

    Raises:
        HTTPException 401 if authentication fails
    """
    if not API_KEYS:
        return None

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if credentials.credentials not in API_KEYS:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return credentials.credentials


def parse_value(raw: str):
    """Query string value to JSON scalar ('1' -> 1, 'true' -> True, '21.5' -> 21.5)."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def hap_error(status_code: int, hap_status: HapStatusCode, detail: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"status": hap_status.value, "hap_status": hap_status.name, "message": detail},
    )


def create_app():
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Particle Bridge",
        description="HomeKit-style REST API for Particle cloud devices",
        version=__version__
    )

    if API_KEYS:
        logger.info(f"API authentication enabled ({len(API_KEYS)} key(s) configured)")
    else:
        logger.info("API authentication disabled (no PARTICLE_BRIDGE_API_KEYS configured)")

    return app


def register_routes(app: FastAPI, get_bridge_api):
    """Register all API routes.

    Args:
        app: FastAPI application instance
        get_bridge_api: Callable that returns the current ParticleBridgeAPI instance
    """

    def require_accessory(aid: int):
        bridge_api = get_bridge_api()
        if not bridge_api:
            raise HTTPException(status_code=503, detail="Bridge not initialized")
        accessory = bridge_api.get_accessory(aid)
        if accessory is None:
            raise HTTPException(status_code=404, detail=f"Accessory {aid} not found")
        return accessory

    @app.get("/api", tags=["Info"])
    async def api_info(api_key: Optional[str] = Depends(get_api_key)):
        """API root with navigation."""
        return {
            "service": "Particle Bridge",
            "description": "HomeKit-style REST API for Particle cloud devices",
            "version": __version__,
            "documentation": "/docs",
            "endpoints": {
                "status": "/status",
                "accessories": "/accessories",
                "characteristic": "/accessories/{aid}/characteristics/{name}",
                "events": "/events"
            }
        }

    @app.get("/status", tags=["Status"])
    async def get_status(api_key: Optional[str] = Depends(get_api_key)):
        """Get overall bridge status."""
        bridge_api = get_bridge_api()
        if not bridge_api:
            raise HTTPException(status_code=503, detail="Bridge not initialized")
        return {"status": "running", "version": __version__} | bridge_api.status()

    @app.get("/accessories", tags=["HomeKit"])
    async def get_accessories(enhanced: bool = True, api_key: Optional[str] = Depends(get_api_key)):
        """
        All bridged accessories with their last known characteristic values.

        Args:
            enhanced: If True, include human-readable names for UUIDs (default: True)
        """
        bridge_api = get_bridge_api()
        if not bridge_api:
            raise HTTPException(status_code=503, detail="Bridge not initialized")
        accessories = [a.to_dict() for a in bridge_api.accessories.values()]

        if enhanced:
            return {"accessories": enhance_accessory_data(accessories), "enhanced": True}
        return {"accessories": accessories, "enhanced": False}

    @app.get("/accessories/{aid}", tags=["HomeKit"])
    async def get_accessory(aid: int, enhanced: bool = True, api_key: Optional[str] = Depends(get_api_key)):
        """Get one accessory by HomeKit accessory ID."""
        accessory = require_accessory(aid).to_dict()
        if enhanced:
            return {"accessory": enhance_accessory_data([accessory])[0], "enhanced": True}
        return {"accessory": accessory, "enhanced": False}

    @app.get("/accessories/{aid}/characteristics/{name}", tags=["HomeKit"])
    async def read_characteristic(aid: int, name: str, api_key: Optional[str] = Depends(get_api_key)):
        """
        Run a characteristic's get handler.

        Current-state characteristics poll the device; a failed poll is
        reported as 503 with HAP status UNABLE_TO_COMMUNICATE rather than
        a stale value.
        """
        accessory = require_accessory(aid)
        try:
            value = await accessory.get_characteristic(name)
        except UnknownCharacteristicError as e:
            raise HTTPException(status_code=404, detail=str(e).strip("'\""))
        except CommunicationFailure as e:
            raise hap_error(503, e.status, str(e))

        return {"aid": aid, "characteristic": name, "value": value}

    @app.put("/accessories/{aid}/characteristics/{name}", tags=["HomeKit"])
    async def write_characteristic(aid: int, name: str, value: str, api_key: Optional[str] = Depends(get_api_key)):
        """
        Run a characteristic's set handler.

        Returns once the cloud accepted the command; progress is reported
        on /events.
        """
        accessory = require_accessory(aid)
        try:
            result = await accessory.set_characteristic(name, parse_value(value))
        except UnknownCharacteristicError as e:
            raise HTTPException(status_code=404, detail=str(e).strip("'\""))
        except ReadOnlyCharacteristicError as e:
            raise hap_error(400, HapStatusCode.CANT_WRITE_READ_ONLY, str(e))
        except CommandSupersededError as e:
            raise hap_error(409, e.status, str(e))
        except CommunicationFailure as e:
            raise hap_error(503, e.status, str(e))
        except ValueError as e:
            raise hap_error(400, HapStatusCode.INVALID_VALUE, str(e))

        return {"aid": aid, "characteristic": name, "value": result, "success": True}

    @app.get("/events", tags=["Events"])
    async def get_events(api_key: Optional[str] = Depends(get_api_key)):
        """
        Server-Sent Events (SSE) stream of characteristic changes.

        Event Types:

        1. Characteristic change:
           {
               "type": "characteristic",
               "aid": 2,
               "name": "Garage",
               "characteristic": "CurrentDoorState",
               "value": 2,
               "timestamp": 1730477890.123
           }

        2. Keepalive (every 90 seconds without changes):
           {
               "type": "keepalive",
               "timestamp": 1730477890.123
           }
        """
        bridge_api = get_bridge_api()
        if not bridge_api:
            raise HTTPException(status_code=503, detail="Bridge not initialized")

        async def event_publisher():
            client_queue = asyncio.Queue(maxsize=LISTENER_QUEUE_SIZE)
            bridge_api.event_listeners.append(client_queue)
            last_keepalive = time.time()

            try:
                while True:
                    timeout = max(1, KEEPALIVE_INTERVAL - (time.time() - last_keepalive))
                    try:
                        event_data = await asyncio.wait_for(client_queue.get(), timeout=timeout)

                        if event_data is None:
                            logger.debug("SSE stream received shutdown signal")
                            break

                        yield event_data
                    except asyncio.TimeoutError:
                        keepalive_obj = {'type': 'keepalive', 'timestamp': time.time()}
                        yield f"data: {json.dumps(keepalive_obj)}\n\n"
                    last_keepalive = time.time()

            except asyncio.CancelledError:
                logger.debug("SSE stream cancelled")
            finally:
                if client_queue in bridge_api.event_listeners:
                    bridge_api.event_listeners.remove(client_queue)

        return StreamingResponse(
            event_publisher(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Content-Type": "text/event-stream"
            }
        )

    return app
