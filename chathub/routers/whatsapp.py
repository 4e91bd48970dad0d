import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from chathub.auth import get_current_user_id
from chathub.container import Container
from chathub.database import get_db
from chathub.dependencies import get_container
from chathub.errors import AccountNotConnected, ConversationNotFound, PlatformError, PlatformMismatch, PlatformSendError
from chathub.logging_config import get_logger
from chathub.routers.telegram import connect_error, send_error_detail
from chathub.schemas.chat import (
    ConnectWhatsAppRequest,
    ConnectWhatsAppResponse,
    MessageOut,
    ReplyRequest,
    TestSendRequest,
    TestSendResponse,
)
from chathub.services.account_service import WHATSAPP, connect_whatsapp_account
from chathub.services.webhook_service import verify_whatsapp_signature, verify_whatsapp_subscription

logger = get_logger("whatsapp_router")

router = APIRouter(tags=["whatsapp"])


@router.get("/webhooks/whatsapp", response_class=PlainTextResponse)
async def verify_webhook(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    container: Container = Depends(get_container),
):
    """Meta subscription handshake."""
    challenge = verify_whatsapp_subscription(
        hub_mode, hub_verify_token, hub_challenge, container.settings.whatsapp_verify_token
    )
    if challenge is None:
        logger.warning("WhatsApp webhook verification failed")
        raise HTTPException(status_code=403, detail="Verification failed")
    return PlainTextResponse(challenge)


@router.post("/webhooks/whatsapp")
async def handle_whatsapp_webhook(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    try:
        raw_body = await request.body()
        app_secret = container.settings.whatsapp_app_secret
        if app_secret and not verify_whatsapp_signature(app_secret, raw_body, x_hub_signature_256):
            logger.warning("WhatsApp webhook signature mismatch, payload discarded")
            return {"status": "ok"}

        payload = json.loads(raw_body or b"{}")
        if isinstance(payload, dict):
            await container.whatsapp_webhook.handle(db, payload)
    except Exception as e:
        logger.error(f"WhatsApp webhook error: {e}", exc_info=True)
    return {"status": "ok"}


@router.post("/whatsapp/connect", response_model=ConnectWhatsAppResponse)
async def connect_number(
    request: ConnectWhatsAppRequest,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    try:
        await connect_whatsapp_account(db, container.whatsapp, user_id, request.access_token, request.phone_number_id)
    except PlatformError as e:
        logger.warning(f"WhatsApp connect rejected: {e}", extra={"context": {"user_id": user_id}})
        raise connect_error(e, "Invalid WhatsApp credentials") from e
    return ConnectWhatsAppResponse(connected=True)


@router.post("/whatsapp/reply", response_model=MessageOut)
async def reply(
    request: ReplyRequest,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    try:
        message = await container.replies.send_manual_reply(
            db, user_id, request.conversation_id, request.text, WHATSAPP
        )
    except ConversationNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except PlatformMismatch as e:
        raise HTTPException(status_code=403, detail=str(e)) from e
    except PlatformSendError as e:
        raise HTTPException(status_code=502, detail=send_error_detail(e)) from e
    return MessageOut.model_validate(message)


@router.post("/whatsapp/test-send", response_model=TestSendResponse)
async def test_send(
    request: TestSendRequest,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    try:
        await container.replies.send_test_message(db, user_id, WHATSAPP, request.to, request.text)
    except AccountNotConnected as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except PlatformSendError as e:
        raise HTTPException(status_code=502, detail=send_error_detail(e)) from e
    return TestSendResponse(sent=True)
