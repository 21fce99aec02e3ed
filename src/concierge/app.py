"""Application facade: one object exposing the Concierge operations.

Built once per process from a config, an open connection and the chosen
providers. It wires the repositories and services together and owns
inbound routing: a provider message is sent to the tenant whose channel
number received it, into that sender's ``whatsapp`` session, and the reply
goes out under the key ``reply:<message_sid>`` so a redelivered callback
never produces a second reply. The chat turn is keyed by the message sid
too, so retrying a failed receipt resumes where it stopped without counting
the user message twice or regenerating a stored answer. A reply that never
reached the gateway goes out on the retry.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field

from concierge.catalog.extraction import CatalogExtraction, CatalogExtractor
from concierge.catalog.store import CatalogStore
from concierge.chat.service import ChatService, ChatTurnResult, NewSession
from concierge.chat.sessions import AppendResult, SessionStore
from concierge.config import ConciergeConfig
from concierge.db.models import (
    CatalogItem,
    ChatSession,
    InboundReceipt,
    KnowledgeChunk,
    KnowledgeDocument,
    Lead,
)
from concierge.db.repository import KnowledgeRepository
from concierge.db.vectors import ensure_vec_table, model_to_slug
from concierge.errors import TenantNotFoundError
from concierge.ingest.extract import KnowledgeSource
from concierge.ingest.pipeline import IngestionPipeline
from concierge.messaging.gateway import MessageGateway
from concierge.messaging.service import (
    InboundOutcome,
    MessagingService,
    OutboundPayload,
    SendResult,
    StatusCallback,
)
from concierge.messaging.store import InboundPayload, MessagingStore
from concierge.providers import EmbeddingProvider, GenerationProvider
from concierge.rag.prompts import build_answer_prompt
from concierge.rag.retriever import ContextSource, Retriever

logger = logging.getLogger(__name__)

NO_KNOWLEDGE_ANSWER = (
    "I don't have enough information yet. Add more knowledge about your business!"
)
_PREVIEW_CHUNKS = 3
MEDIA_ONLY_TEXT = "(The customer sent {count} attachment(s) without a message.)"


@dataclass
class DocumentView:
    document: KnowledgeDocument
    preview_chunks: list[KnowledgeChunk] = field(default_factory=list)


@dataclass
class AnswerResult:
    answer: str
    chunk_count: int
    sources: list[ContextSource] = field(default_factory=list)


class Concierge:
    """Multi-tenant knowledge base, RAG chat and messaging over one database."""

    def __init__(
        self,
        config: ConciergeConfig,
        conn: sqlite3.Connection,
        embedder: EmbeddingProvider,
        generator: GenerationProvider,
        gateway: MessageGateway,
    ) -> None:
        self.config = config
        self.conn = conn
        vec_table = ensure_vec_table(
            conn, model_to_slug(config.embedding.model), embedder.dimensions
        )
        self.repo = KnowledgeRepository(conn, vec_table)
        self.sessions = SessionStore(conn)
        self.messages = MessagingStore(conn)
        self.retriever = Retriever(
            self.repo, embedder, config.retrieval, timeout=config.embedding.timeout
        )
        self.pipeline = IngestionPipeline(self.repo, embedder, config, vision=generator)
        self.chat = ChatService(self.repo, self.sessions, self.retriever, generator, config)
        self.catalog = CatalogStore(conn)
        self.catalog_extractor = CatalogExtractor(self.repo, self.catalog, generator, config)
        self.messaging = MessagingService(self.messages, gateway, config.messaging.from_number)
        self._generator = generator

    # ------------------------------------------------------------------
    # Knowledge
    # ------------------------------------------------------------------

    def ingest_knowledge_source(
        self, tenant_id: str, source: KnowledgeSource, deadline: float | None = None
    ) -> str:
        return self.pipeline.ingest(tenant_id, source, deadline)

    def reingest_document(
        self, tenant_id: str, document_id: str, deadline: float | None = None
    ) -> str:
        return self.pipeline.reingest(tenant_id, document_id, deadline)

    def list_knowledge_documents(self, tenant_id: str) -> list[DocumentView]:
        """Documents newest first, each with its first few chunks."""
        return [
            DocumentView(doc, self.repo.list_chunks(doc.id, limit=_PREVIEW_CHUNKS))
            for doc in self.repo.list_documents(tenant_id)
        ]

    def set_document_status(
        self,
        tenant_id: str,
        document_id: str,
        status: str,
        on_commit: Callable[[int, int], None] | None = None,
    ) -> int:
        return self.repo.set_document_status(
            tenant_id,
            document_id,
            status,
            self.config.ingestion.max_ops_per_commit,
            on_commit,
        )

    def retrieve_answer(self, tenant_id: str, question: str) -> AnswerResult:
        """Owner preview: answer *question* strictly from the tenant's knowledge."""
        retrieval = self.retriever.retrieve(tenant_id, question)
        if not retrieval.has_context:
            return AnswerResult(answer=NO_KNOWLEDGE_ANSWER, chunk_count=0)
        answer = self._generator.generate(
            build_answer_prompt(retrieval.context_text, question),
            timeout=self.config.generation.timeout,
        )
        return AnswerResult(
            answer=answer, chunk_count=len(retrieval.sources), sources=retrieval.sources
        )

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def extract_catalog_items(
        self, tenant_id: str, document_ids: list[str] | None = None
    ) -> CatalogExtraction:
        return self.catalog_extractor.extract(tenant_id, document_ids)

    def list_catalog_items(
        self, tenant_id: str, include_inactive: bool = False
    ) -> list[CatalogItem]:
        return self.catalog.list_items(tenant_id, include_inactive=include_inactive)

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    def create_chat_session(
        self, tenant_id: str, caller_id: str, anonymous: bool = True
    ) -> NewSession:
        return self.chat.create_session(tenant_id, caller_id, anonymous)

    def list_chat_sessions(
        self, tenant_id: str, kind: str | None = None, limit: int | None = None
    ) -> list[ChatSession]:
        """Sessions of *tenant_id*, most recently active first."""
        return self.chat.list_sessions(tenant_id, kind, limit)

    def append_user_message(
        self, tenant_id: str, session_id: str, caller_id: str, text: str
    ) -> AppendResult:
        return self.sessions.append_user_message(
            tenant_id, session_id, caller_id, text, self.config.limits.max_messages_per_session
        )

    def process_chat_message(
        self, tenant_id: str, session_id: str, caller_id: str, text: str
    ) -> ChatTurnResult:
        return self.chat.process_message(tenant_id, session_id, caller_id, text)

    def capture_lead(self, tenant_id: str, session_id: str, caller_id: str, lead: Lead) -> str:
        return self.chat.capture_lead(tenant_id, session_id, caller_id, lead)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    def handle_inbound_provider_callback(
        self, message_sid: str, payload: InboundPayload
    ) -> InboundOutcome:
        return self.messaging.handle_inbound_callback(message_sid, payload, self._answer_inbound)

    def retry_inbound(self, message_sid: str) -> InboundOutcome:
        return self.messaging.retry_failed(message_sid, self._answer_inbound)

    def send_outbound_message(
        self, idempotency_key: str | None, payload: OutboundPayload
    ) -> SendResult:
        return self.messaging.send_outbound_message(idempotency_key, payload)

    def handle_status_callback(self, callback: StatusCallback) -> bool:
        return self.messaging.handle_status_callback(callback)

    def _answer_inbound(self, receipt: InboundReceipt) -> str:
        tenant = self.repo.get_tenant_by_channel(receipt.to_e164 or "")
        if tenant is None:
            raise TenantNotFoundError(f"No tenant owns channel number '{receipt.to_e164}'.")
        caller_id = f"wa:{receipt.from_e164}"
        session = self.sessions.get_or_create_session(tenant.id, "whatsapp", user_id=caller_id)
        text = receipt.body
        if not text.strip() and receipt.media_list:
            text = MEDIA_ONLY_TEXT.format(count=len(receipt.media_list))
        turn = self.chat.process_message(
            tenant.id, session.id, caller_id, text, turn_id=receipt.message_sid
        )
        self.messaging.send_outbound_message(
            f"reply:{receipt.message_sid}",
            OutboundPayload(
                to_e164=receipt.from_e164,
                body=turn.text,
                correlation_id=session.id,
            ),
            resume=True,
        )
        logger.info(
            "Inbound message answered",
            extra={
                "tenant_id": tenant.id,
                "session_id": session.id,
                "message_sid": receipt.message_sid,
            },
        )
        return session.id
