"""Chat turn orchestration: cap → retrieve → prompt → generate → store."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from concierge.chat.sessions import SessionStore
from concierge.config import ConciergeConfig
from concierge.db.models import ChatMessage, ChatSession, Lead, Tenant
from concierge.db.repository import KnowledgeRepository
from concierge.errors import AccessDeniedError, SessionNotFoundError, TenantNotFoundError
from concierge.providers import GenerationProvider
from concierge.rag.prompts import BusinessContext, build_prompt_with_context, build_system_prompt
from concierge.rag.retriever import ContextSource, Retriever

logger = logging.getLogger(__name__)

LIMIT_NOTICE = (
    "You've reached the message limit for this session. "
    "Please leave your contact information and we'll get back to you!"
)
LEAD_NUDGE = "\n\nWould you like to leave your contact details so we can follow up with you?"


@dataclass
class ChatTurnResult:
    text: str
    message_count: int
    limit_reached: bool = False
    sources: list[ContextSource] = field(default_factory=list)
    latency_ms: int = 0
    replayed: bool = False


@dataclass
class NewSession:
    session: ChatSession
    greeting: str


class ChatService:
    """Runs one chat turn for a session.

    A generation or embedding failure surfaces as ``ProviderError``; no
    assistant message is stored for that turn.
    """

    def __init__(
        self,
        repo: KnowledgeRepository,
        sessions: SessionStore,
        retriever: Retriever,
        generator: GenerationProvider,
        config: ConciergeConfig,
    ) -> None:
        self._repo = repo
        self._sessions = sessions
        self._retriever = retriever
        self._generator = generator
        self._config = config

    def create_session(self, tenant_id: str, caller_id: str, anonymous: bool = True) -> NewSession:
        tenant = self._tenant(tenant_id)
        session = self._sessions.create_session(
            tenant_id,
            "public",
            anon_uid=caller_id if anonymous else None,
            user_id=None if anonymous else caller_id,
        )
        greeting = f"Hello! I'm the assistant for {tenant.name}. How can I help you today?"
        return NewSession(session=session, greeting=greeting)

    def list_sessions(
        self, tenant_id: str, kind: str | None = None, limit: int | None = None
    ) -> list[ChatSession]:
        self._tenant(tenant_id)
        return self._sessions.list_sessions(tenant_id, kind, limit)

    def process_message(
        self,
        tenant_id: str,
        session_id: str,
        caller_id: str,
        text: str,
        turn_id: str | None = None,
    ) -> ChatTurnResult:
        """Append the user's message under the cap and answer it.

        *turn_id* makes the turn resumable: the user and assistant messages
        get ids derived from it, so running the same turn again neither
        counts the user message twice nor generates a second answer once
        one is stored.
        """
        started = time.monotonic()
        cap = self._config.limits.max_messages_per_session
        user_message_id = reply_id = None
        if turn_id is not None:
            user_message_id, reply_id = f"{turn_id}:user", f"{turn_id}:assistant"
            stored = self._sessions.get_message(tenant_id, session_id, reply_id)
            if stored is not None:
                return self._replay(tenant_id, session_id, caller_id, stored, cap, started)

        appended = self._sessions.append_user_message(
            tenant_id, session_id, caller_id, text, cap, message_id=user_message_id
        )

        if not appended.allowed:
            self._sessions.append_assistant_message(
                tenant_id, session_id, LIMIT_NOTICE, message_id=reply_id
            )
            return ChatTurnResult(
                text=LIMIT_NOTICE,
                message_count=appended.new_count,
                limit_reached=True,
                latency_ms=_elapsed_ms(started),
            )

        tenant = self._tenant(tenant_id)
        business = BusinessContext(
            name=tenant.name,
            category=tenant.category,
            description=tenant.description,
            location=tenant.location,
        )
        retrieval = self._retriever.retrieve(tenant_id, text)
        prompt = build_prompt_with_context(
            build_system_prompt(business), retrieval.context_text, text, business
        )

        generate_started = time.monotonic()
        answer = self._generator.generate(prompt, timeout=self._config.generation.timeout)
        generate_ms = _elapsed_ms(generate_started)

        session = self._sessions.get_session(tenant_id, session_id)
        if session is None:
            raise SessionNotFoundError(f"Session '{session_id}' not found.")
        low_confidence = not retrieval.has_context or "don't have" in answer.lower()
        if low_confidence and not session.lead_captured:
            answer += LEAD_NUDGE

        self._sessions.append_assistant_message(
            tenant_id,
            session_id,
            answer,
            sources=[s.to_dict() for s in retrieval.sources],
            meta={"model": getattr(self._generator, "model", None), "latency_ms": generate_ms},
            message_id=reply_id,
        )
        logger.info(
            "Chat turn answered",
            extra={
                "tenant_id": tenant_id,
                "session_id": session_id,
                "chunk_count": len(retrieval.sources),
                "latency_ms": _elapsed_ms(started),
            },
        )
        return ChatTurnResult(
            text=answer,
            message_count=appended.new_count,
            limit_reached=appended.new_count >= cap,
            sources=retrieval.sources,
            latency_ms=_elapsed_ms(started),
        )

    def capture_lead(self, tenant_id: str, session_id: str, caller_id: str, lead: Lead) -> str:
        return self._sessions.capture_lead(tenant_id, session_id, caller_id, lead)

    def _replay(
        self,
        tenant_id: str,
        session_id: str,
        caller_id: str,
        reply: ChatMessage,
        cap: int,
        started: float,
    ) -> ChatTurnResult:
        session = self._sessions.get_session(tenant_id, session_id)
        if session is None:
            raise SessionNotFoundError(f"Session '{session_id}' not found.")
        if session.owner != caller_id:
            raise AccessDeniedError("Session access denied.")
        logger.info(
            "Chat turn already answered",
            extra={"tenant_id": tenant_id, "session_id": session_id},
        )
        return ChatTurnResult(
            text=reply.text,
            message_count=session.message_count,
            limit_reached=session.message_count >= cap,
            sources=[ContextSource(**s) for s in reply.sources_list],
            latency_ms=_elapsed_ms(started),
            replayed=True,
        )

    def _tenant(self, tenant_id: str) -> Tenant:
        tenant = self._repo.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"Tenant '{tenant_id}' not found.")
        return tenant


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
