import asyncio
from typing import Callable, Optional

from sqlalchemy.orm import Session

from chathub.gateways import TelegramGateway
from chathub.logging_config import LoggerAdapter, get_logger
from chathub.models import PlatformAccount
from chathub.services.account_service import TELEGRAM, list_platform_accounts
from chathub.services.webhook_service import TelegramWebhookHandler

logger = get_logger("polling_service")


class TelegramPoller:
    """getUpdates loop for deployments that cannot receive webhooks.

    Offsets live in memory, keyed by bot token, so a restart re-reads whatever
    Telegram still holds.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: TelegramGateway,
        handler: TelegramWebhookHandler,
        interval_seconds: float = 2.0,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.handler = handler
        self.interval_seconds = max(interval_seconds, 0.1)
        self.offsets: dict[str, int] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="telegram-poller")
        logger.info("Telegram polling started", extra={"context": {"interval_seconds": self.interval_seconds}})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Telegram polling stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Polling cycle failed: {e}", exc_info=True)

    async def poll_once(self) -> None:
        db = self.session_factory()
        try:
            accounts = list_platform_accounts(db, TELEGRAM)
            if not accounts:
                return
        finally:
            db.close()
        await asyncio.gather(*(self._poll_bot(account) for account in accounts))

    async def _poll_bot(self, account: PlatformAccount) -> None:
        bot_logger = LoggerAdapter(logger, {"account_id": account.id, "bot_id": account.external_app_id})
        token = account.access_token
        try:
            updates = await self.gateway.get_updates(token, self.offsets.get(token, 0))
        except Exception as e:
            bot_logger.warning(f"getUpdates failed: {e}")
            return

        db = self.session_factory()
        try:
            for update in updates:
                try:
                    await self.handler.handle(db, account.external_app_id, update, account.webhook_secret)
                except Exception as e:
                    bot_logger.error(f"Update handling failed: {e}", context={"update_id": update.get("update_id")})
                finally:
                    update_id = update.get("update_id")
                    if isinstance(update_id, int):
                        self.offsets[token] = update_id + 1
        finally:
            db.close()
