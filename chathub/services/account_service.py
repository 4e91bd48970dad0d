import secrets
from typing import Optional

from sqlalchemy.orm import Session

from chathub.errors import PlatformError, WebhookRegistrationError
from chathub.gateways import TelegramGateway, WhatsAppGateway
from chathub.logging_config import get_logger
from chathub.models import PlatformAccount

logger = get_logger("account_service")

TELEGRAM = "telegram"
WHATSAPP = "whatsapp"


def get_account_by_external_id(db: Session, platform: str, external_app_id: str) -> Optional[PlatformAccount]:
    """First (oldest) account registered for the platform-side id."""
    return (
        db.query(PlatformAccount)
        .filter(PlatformAccount.platform == platform, PlatformAccount.external_app_id == str(external_app_id))
        .order_by(PlatformAccount.id.asc())
        .first()
    )


def list_accounts(db: Session, user_id: int) -> list[PlatformAccount]:
    return (
        db.query(PlatformAccount)
        .filter(PlatformAccount.user_id == user_id)
        .order_by(PlatformAccount.id.asc())
        .all()
    )


def list_platform_accounts(db: Session, platform: str) -> list[PlatformAccount]:
    return db.query(PlatformAccount).filter(PlatformAccount.platform == platform).order_by(PlatformAccount.id).all()


def first_user_account(db: Session, user_id: int, platform: str) -> Optional[PlatformAccount]:
    return (
        db.query(PlatformAccount)
        .filter(PlatformAccount.user_id == user_id, PlatformAccount.platform == platform)
        .order_by(PlatformAccount.id.asc())
        .first()
    )


async def connect_telegram_bot(
    db: Session,
    gateway: TelegramGateway,
    user_id: int,
    bot_token: str,
    register_webhook: bool = True,
) -> PlatformAccount:
    """Validate a bot token, point its webhook here and store the account.

    Upserts by (user, telegram, bot id). A fresh webhook secret is generated on
    every connect.
    """
    info = await gateway.validate_credential(bot_token)
    webhook_secret = secrets.token_hex(32)

    if register_webhook:
        try:
            await gateway.register_webhook(bot_token, info.external_app_id, webhook_secret)
        except PlatformError as e:
            raise WebhookRegistrationError(e.platform, str(e), status_code=e.status_code, body=e.body) from e
    else:
        logger.info("Webhook registration skipped", extra={"context": {"bot_id": info.external_app_id}})

    settings = {**info.extra, "webhookSecret": webhook_secret}
    account = (
        db.query(PlatformAccount)
        .filter(
            PlatformAccount.user_id == user_id,
            PlatformAccount.platform == TELEGRAM,
            PlatformAccount.external_app_id == info.external_app_id,
        )
        .first()
    )
    if account is None:
        account = PlatformAccount(
            user_id=user_id,
            platform=TELEGRAM,
            external_app_id=info.external_app_id,
            access_token=bot_token,
            settings=settings,
        )
        db.add(account)
    else:
        account.access_token = bot_token
        account.settings = settings

    db.commit()
    db.refresh(account)
    logger.info("Telegram bot connected", extra={"context": {"account_id": account.id, "user_id": user_id}})
    return account


async def connect_whatsapp_account(
    db: Session,
    gateway: WhatsAppGateway,
    user_id: int,
    access_token: str,
    phone_number_id: str,
) -> PlatformAccount:
    """Validate and store a WhatsApp Cloud API number.

    Upserts by phone number id; an existing row moves to the connecting user.
    """
    info = await gateway.validate_credential(access_token, phone_number_id)

    account = (
        db.query(PlatformAccount)
        .filter(PlatformAccount.platform == WHATSAPP, PlatformAccount.external_app_id == info.external_app_id)
        .first()
    )
    if account is None:
        account = PlatformAccount(
            user_id=user_id,
            platform=WHATSAPP,
            external_app_id=info.external_app_id,
            access_token=access_token,
            settings=dict(info.extra),
        )
        db.add(account)
    else:
        account.user_id = user_id
        account.access_token = access_token
        account.settings = dict(info.extra)

    db.commit()
    db.refresh(account)
    logger.info("WhatsApp number connected", extra={"context": {"account_id": account.id, "user_id": user_id}})
    return account
