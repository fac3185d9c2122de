import logging
from typing import Any, Callable

from fastapi import APIRouter, Body, Depends
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response

from .auth import require
from .errors import POSError, error_envelope
from .schemas import NotificationRequest
from .settings import Settings, get_settings
from .whatsapp import WhatsAppGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/whatsapp", tags=["WhatsApp"])


def get_gateway(settings: Settings = Depends(get_settings)) -> WhatsAppGateway:
    return WhatsAppGateway(settings)


async def envelope(call: Callable[..., Any], *args) -> Any:
    """Run a blocking provider call and wrap its outcome as {success, data|error}."""
    try:
        data = await run_in_threadpool(call, *args)
    except POSError as e:
        return error_envelope(e)
    return {"success": True, "data": data}


@router.get("/session/status", dependencies=[Depends(require("whatsapp:read"))])
async def session_status(gateway: WhatsAppGateway = Depends(get_gateway)):
    return await envelope(gateway.get_session_status)


@router.get("/session/start", dependencies=[Depends(require("whatsapp:manage"))])
async def session_start(gateway: WhatsAppGateway = Depends(get_gateway)):
    return await envelope(gateway.start_session)


@router.get("/session/stop", dependencies=[Depends(require("whatsapp:manage"))])
async def session_stop(gateway: WhatsAppGateway = Depends(get_gateway)):
    return await envelope(gateway.stop_session)


@router.get("/session/restart", dependencies=[Depends(require("whatsapp:manage"))])
async def session_restart(gateway: WhatsAppGateway = Depends(get_gateway)):
    return await envelope(gateway.restart_session)


@router.get("/session/qr", dependencies=[Depends(require("whatsapp:manage"))])
async def session_qr(gateway: WhatsAppGateway = Depends(get_gateway)):
    return await envelope(gateway.get_qr_code)


@router.get("/session/qr/image", dependencies=[Depends(require("whatsapp:manage"))])
async def session_qr_image(gateway: WhatsAppGateway = Depends(get_gateway)):
    try:
        content = await run_in_threadpool(gateway.get_qr_code_image)
    except POSError as e:
        return error_envelope(e)
    return Response(content=content, media_type="image/png")


@router.post("/session/requestPairingCode", dependencies=[Depends(require("whatsapp:manage"))])
async def request_pairing_code(body: dict = Body(default={}), gateway: WhatsAppGateway = Depends(get_gateway)):
    return await envelope(gateway.request_pairing_code, body)


@router.post("/send-notification", dependencies=[Depends(require("whatsapp:send"))])
async def send_notification(payload: NotificationRequest, gateway: WhatsAppGateway = Depends(get_gateway)):
    logger.info("Sending notification to %s", payload.phone_number)
    return await envelope(gateway.send_message, payload.phone_number, payload.message)


@router.get("/ping")
async def ping(gateway: WhatsAppGateway = Depends(get_gateway)):
    return await envelope(gateway.ping)
