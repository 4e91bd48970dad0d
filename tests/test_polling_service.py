import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from conftest import make_account, telegram_update

from chathub.gateways import TelegramGateway
from chathub.models import Message
from chathub.services.ingestion_service import IngestionPipeline, KeyedLocks, RuntimeState, TaskRunner
from chathub.services.polling_service import TelegramPoller
from chathub.services.webhook_service import TelegramWebhookHandler


def make_gateway(updates_by_token):
    gateway = Mock(spec=TelegramGateway)

    async def get_updates(token, offset):
        result = updates_by_token[token]
        if isinstance(result, Exception):
            raise result
        return result

    gateway.get_updates = AsyncMock(side_effect=get_updates)
    return gateway


class TestPollOnce:
    @pytest.mark.asyncio
    async def test_offset_advances_past_failed_update(self, db, session_factory):
        make_account(db, external_app_id="99", token="99:AAA")
        gateway = make_gateway({"99:AAA": [{"update_id": 5}, {"update_id": 6}, {"update_id": 7}]})
        handler = Mock()

        async def handle(db, bot_id, update, secret):
            if update["update_id"] == 6:
                raise RuntimeError("bad update")
            return 1

        handler.handle = AsyncMock(side_effect=handle)
        poller = TelegramPoller(session_factory, gateway, handler)

        await poller.poll_once()

        assert poller.offsets["99:AAA"] == 8
        assert handler.handle.await_count == 3
        gateway.get_updates.assert_awaited_once_with("99:AAA", 0)

    @pytest.mark.asyncio
    async def test_next_poll_uses_stored_offset(self, db, session_factory):
        make_account(db, external_app_id="99", token="99:AAA")
        gateway = make_gateway({"99:AAA": [{"update_id": 5}]})
        handler = Mock()
        handler.handle = AsyncMock(return_value=1)
        poller = TelegramPoller(session_factory, gateway, handler)

        await poller.poll_once()
        gateway.get_updates.side_effect = None
        gateway.get_updates.return_value = []
        await poller.poll_once()

        assert gateway.get_updates.await_args_list[-1].args == ("99:AAA", 6)
        assert poller.offsets["99:AAA"] == 6

    @pytest.mark.asyncio
    async def test_fetch_failure_does_not_affect_other_bots(self, db, session_factory):
        make_account(db, external_app_id="99", token="99:AAA")
        make_account(db, external_app_id="100", token="100:BBB")
        gateway = make_gateway({"99:AAA": RuntimeError("network down"), "100:BBB": [{"update_id": 1}]})
        handler = Mock()
        handler.handle = AsyncMock(return_value=1)
        poller = TelegramPoller(session_factory, gateway, handler)

        await poller.poll_once()

        assert "99:AAA" not in poller.offsets
        assert poller.offsets["100:BBB"] == 2
        handler.handle.assert_awaited_once()
        assert handler.handle.await_args.args[1] == "100"

    @pytest.mark.asyncio
    async def test_no_accounts_is_noop(self, session_factory):
        gateway = make_gateway({})
        poller = TelegramPoller(session_factory, gateway, Mock())

        await poller.poll_once()

        gateway.get_updates.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_whatsapp_accounts_are_not_polled(self, db, session_factory):
        make_account(db, platform="whatsapp", external_app_id="555", secret=None)
        gateway = make_gateway({})
        poller = TelegramPoller(session_factory, gateway, Mock())

        await poller.poll_once()

        gateway.get_updates.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_polled_update_is_ingested_with_stored_secret(self, db, session_factory, mock_broadcaster):
        make_account(db, external_app_id="99", token="99:AAA", secret="s3cret")
        gateway = make_gateway({"99:AAA": [telegram_update(update_id=3, text="Hello")]})
        gateway.normalize_update = TelegramGateway().normalize_update
        pipeline = IngestionPipeline(mock_broadcaster, RuntimeState(), TaskRunner(), KeyedLocks())
        handler = TelegramWebhookHandler(pipeline, gateway)
        poller = TelegramPoller(session_factory, gateway, handler)

        await poller.poll_once()

        assert db.query(Message).one().text == "Hello"
        assert poller.offsets["99:AAA"] == 4


class TestPollerLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, session_factory):
        poller = TelegramPoller(session_factory, make_gateway({}), Mock(), interval_seconds=0.1)

        poller.start()
        assert poller.running is True
        await asyncio.sleep(0)
        await poller.stop()

        assert poller.running is False
