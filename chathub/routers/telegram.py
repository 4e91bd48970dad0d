import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from chathub.auth import get_current_user_id
from chathub.container import Container
from chathub.database import get_db
from chathub.dependencies import get_container
from chathub.errors import (
    ConversationNotFound,
    PlatformError,
    PlatformMismatch,
    PlatformSendError,
    WebhookRegistrationError,
)
from chathub.logging_config import get_logger
from chathub.schemas.chat import (
    ConnectBotRequest,
    ConversationOut,
    MessageOut,
    PlatformAccountOut,
    ReplyRequest,
    WebhookAck,
)
from chathub.services.account_service import TELEGRAM, connect_telegram_bot
from chathub.services.conversation_service import list_conversations

logger = get_logger("telegram_router")

router = APIRouter(prefix="/telegram", tags=["telegram"])

SECRET_HEADERS = ("x-telegram-bot-api-secret-token", "x-platform-secret-token")
PLATFORM_NAMES = {"telegram": "Telegram", "whatsapp": "WhatsApp"}


async def parse_telegram_update(request: Request) -> Optional[dict]:
    """
    Parse Telegram update with tolerant decoding to avoid utf-8 crashes.
    Returns dict or None.
    """
    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            data = json.loads(raw.decode(enc, errors="replace"))
            return data if isinstance(data, dict) else None
        except ValueError:
            continue

    logger.error("Failed to decode Telegram webhook payload")
    return None


def send_error_detail(e: PlatformSendError) -> dict:
    return {"message": "Failed to send message", "status": e.status_code, "body": (e.body or "")[:1000]}


def connect_error(e: PlatformError, invalid_detail: str) -> HTTPException:
    """400 when the platform refused the credential, 502 when it could not be reached or failed."""
    if isinstance(e, WebhookRegistrationError):
        return HTTPException(status_code=502, detail=f"Webhook registration failed: {e}")
    if e.is_rejection:
        return HTTPException(status_code=400, detail=invalid_detail)
    return HTTPException(status_code=502, detail=f"{PLATFORM_NAMES.get(e.platform, e.platform)} API unavailable")


@router.post("/webhook/{bot_id}", response_model=WebhookAck)
async def handle_telegram_webhook(
    bot_id: str,
    request: Request,
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    """Inbound updates for one connected bot. Always acknowledged so Telegram does not retry."""
    try:
        body = await parse_telegram_update(request)
        if body is None:
            return WebhookAck()

        presented_secret = next((request.headers[h] for h in SECRET_HEADERS if h in request.headers), None)
        await container.telegram_webhook.handle(db, bot_id, body, presented_secret)
    except Exception as e:
        logger.error(f"Telegram webhook error: {e}", exc_info=True)
    return WebhookAck()


@router.post("/connect", response_model=PlatformAccountOut)
async def connect_bot(
    request: ConnectBotRequest,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    try:
        account = await connect_telegram_bot(
            db,
            container.telegram,
            user_id,
            request.bot_token,
            register_webhook=not container.settings.skip_webhook_registration,
        )
    except PlatformError as e:
        logger.warning(f"Telegram connect rejected: {e}", extra={"context": {"user_id": user_id}})
        raise connect_error(e, "Invalid Telegram bot token") from e
    return PlatformAccountOut.from_account(account)


@router.get("/conversations", response_model=list[ConversationOut])
async def get_telegram_conversations(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return [ConversationOut.model_validate(c) for c in list_conversations(db, user_id, platform=TELEGRAM)]


@router.post("/reply", response_model=MessageOut)
async def reply(
    request: ReplyRequest,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    try:
        message = await container.replies.send_manual_reply(
            db, user_id, request.conversation_id, request.text, TELEGRAM
        )
    except ConversationNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except PlatformMismatch as e:
        raise HTTPException(status_code=403, detail=str(e)) from e
    except PlatformSendError as e:
        raise HTTPException(status_code=502, detail=send_error_detail(e)) from e
    return MessageOut.model_validate(message)
