import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Hashable, Optional

from sqlalchemy.orm import Session

from chathub.gateways.base import Contact
from chathub.logging_config import get_logger
from chathub.models import Conversation, Message, PlatformAccount
from chathub.models.message import SENDER_CLIENT
from chathub.services.conversation_service import find_or_create_conversation
from chathub.services.message_service import append_message

logger = get_logger("ingestion_service")


@dataclass
class RuntimeState:
    """Process-wide toggles changed at runtime through the API."""

    auto_reply_enabled: bool = False


@dataclass
class IngestResult:
    conversation: Conversation
    message: Message
    is_new: bool
    auto_reply_scheduled: bool = False


class KeyedLocks:
    """One asyncio.Lock per key, discarded when nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._holders: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def conversation_key(account_id: int, external_chat_id: str) -> tuple[int, str]:
    return account_id, str(external_chat_id)


class TaskRunner:
    """Tracks detached background tasks and logs their failures."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def submit(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc}", exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every submitted task (and any they submit) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()


AutoReplyCallable = Callable[[int, int, str], Awaitable[None]]


class IngestionPipeline:
    """Persist an inbound message, announce it, and maybe schedule an auto-reply."""

    def __init__(
        self,
        broadcaster,
        runtime_state: RuntimeState,
        task_runner: TaskRunner,
        locks: KeyedLocks,
        auto_reply: Optional[AutoReplyCallable] = None,
    ):
        self.broadcaster = broadcaster
        self.runtime_state = runtime_state
        self.task_runner = task_runner
        self.locks = locks
        self.auto_reply = auto_reply

    async def ingest(
        self,
        db: Session,
        account: PlatformAccount,
        contact: Contact,
        text: str,
        occurred_at: datetime,
        external_message_id: Optional[str] = None,
    ) -> IngestResult:
        async with self.locks.hold(conversation_key(account.id, contact.external_chat_id)):
            try:
                conversation, is_new = find_or_create_conversation(db, account, contact)
                message = append_message(
                    db,
                    conversation_id=conversation.id,
                    sender_type=SENDER_CLIENT,
                    text=text,
                    platform=account.platform,
                    timestamp=occurred_at,
                    external_message_id=external_message_id,
                )
                db.commit()
            except Exception:
                db.rollback()
                raise

            logger.info(
                "Inbound message stored",
                extra={
                    "context": {
                        "account_id": account.id,
                        "conversation_id": conversation.id,
                        "message_id": message.id,
                        "new_conversation": is_new,
                    }
                },
            )

            await self.broadcaster.emit_new_message(account.user_id, message)
            if is_new:
                await self.broadcaster.emit_new_conversation(account.user_id, conversation)

        result = IngestResult(conversation=conversation, message=message, is_new=is_new)
        if self.runtime_state.auto_reply_enabled and text and self.auto_reply is not None:
            self.task_runner.submit(
                self.auto_reply(account.id, conversation.id, text),
                name=f"auto-reply:{conversation.id}",
            )
            result.auto_reply_scheduled = True
        return result
