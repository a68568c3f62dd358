"""REST API routes for the signaling server."""

import logging

from fastapi import APIRouter, HTTPException, Request

from config import APP_ID

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


@router.get("/health")
async def health(request: Request):
    hub = request.app.state.hub
    return {"status": "ok", "app_id": APP_ID, "clients": hub.client_count}


@router.get("/devices")
async def list_devices(request: Request):
    """Every registered device with its derived status."""
    devices = await request.app.state.registry.list_devices()
    return {"devices": [d.model_dump(mode="json") for d in devices]}


@router.get("/devices/online")
async def list_online_devices(request: Request):
    devices = await request.app.state.registry.list_online()
    return {"devices": [d.model_dump(mode="json") for d in devices]}


@router.get("/devices/{device_id}")
async def get_device(device_id: str, request: Request):
    device = await request.app.state.registry.get(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return device.model_dump(mode="json")
