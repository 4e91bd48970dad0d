from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from chathub.config import Settings
from chathub.gateways import GatewayRegistry, TelegramGateway, WhatsAppGateway
from chathub.services.ai_service import AiAssistant
from chathub.services.auto_reply_service import AutoReplyOrchestrator
from chathub.services.ingestion_service import IngestionPipeline, KeyedLocks, RuntimeState, TaskRunner
from chathub.services.knowledge_service import KnowledgeBaseClient
from chathub.services.llm import LLMProvider, OpenAIProvider
from chathub.services.polling_service import TelegramPoller
from chathub.services.realtime_service import ConnectionManager
from chathub.services.reply_service import ReplyService
from chathub.services.webhook_service import TelegramWebhookHandler, WhatsAppWebhookHandler


@dataclass
class Container:
    settings: Settings
    session_factory: Callable[[], Session]
    broadcaster: ConnectionManager
    telegram: TelegramGateway
    whatsapp: WhatsAppGateway
    gateways: GatewayRegistry
    llm: LLMProvider
    knowledge: KnowledgeBaseClient
    assistant: AiAssistant
    runtime_state: RuntimeState
    task_runner: TaskRunner
    locks: KeyedLocks
    orchestrator: AutoReplyOrchestrator
    pipeline: IngestionPipeline
    replies: ReplyService
    telegram_webhook: TelegramWebhookHandler
    whatsapp_webhook: WhatsAppWebhookHandler
    poller: TelegramPoller


def build_container(settings: Settings, session_factory: Callable[[], Session], llm: LLMProvider = None) -> Container:
    """Wire the application graph leaf-first."""
    broadcaster = ConnectionManager()

    telegram = TelegramGateway(
        api_base=settings.telegram_api_base,
        app_url=settings.app_url,
        timeout_seconds=settings.platform_timeout_seconds,
        poll_timeout_seconds=settings.telegram_poll_timeout_seconds,
        poll_limit=settings.telegram_poll_limit,
    )
    whatsapp = WhatsAppGateway(api_base=settings.whatsapp_api_base, timeout_seconds=settings.platform_timeout_seconds)
    gateways = GatewayRegistry([telegram, whatsapp])

    llm = llm or OpenAIProvider(
        api_key=settings.openai_api_key,
        default_model=settings.llm_model,
        base_url=settings.llm_base_url,
        timeout_seconds=settings.llm_timeout_seconds,
    )
    knowledge = KnowledgeBaseClient(
        llm,
        qdrant_host=settings.qdrant_host,
        collection=settings.qdrant_collection,
        embedding_url=settings.embedding_url,
        api_key=settings.qdrant_api_key,
        top_k=settings.knowledge_top_k,
        max_tokens=settings.llm_max_tokens,
    )
    assistant = AiAssistant(
        llm,
        knowledge,
        system_prompt=settings.assistant_system_prompt,
        history_limit=settings.history_limit,
        max_tokens=settings.llm_max_tokens,
    )

    runtime_state = RuntimeState()
    task_runner = TaskRunner()
    locks = KeyedLocks()
    orchestrator = AutoReplyOrchestrator(session_factory, assistant, gateways, broadcaster, locks)
    pipeline = IngestionPipeline(broadcaster, runtime_state, task_runner, locks, auto_reply=orchestrator.auto_reply)
    replies = ReplyService(gateways, broadcaster, locks)

    telegram_webhook = TelegramWebhookHandler(pipeline, telegram)
    whatsapp_webhook = WhatsAppWebhookHandler(pipeline, whatsapp)
    poller = TelegramPoller(
        session_factory,
        telegram,
        telegram_webhook,
        interval_seconds=settings.telegram_poll_interval_seconds,
    )

    return Container(
        settings=settings,
        session_factory=session_factory,
        broadcaster=broadcaster,
        telegram=telegram,
        whatsapp=whatsapp,
        gateways=gateways,
        llm=llm,
        knowledge=knowledge,
        assistant=assistant,
        runtime_state=runtime_state,
        task_runner=task_runner,
        locks=locks,
        orchestrator=orchestrator,
        pipeline=pipeline,
        replies=replies,
        telegram_webhook=telegram_webhook,
        whatsapp_webhook=whatsapp_webhook,
        poller=poller,
    )
