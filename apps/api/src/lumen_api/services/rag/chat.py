from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from lumen_api.errors import EmbeddingFailure, InvalidInput, SourceNotFound, StoreFailure
from lumen_api.llm import LLMClient
from lumen_api.services.rag.query import Retriever
from lumen_api.services.rag.store import SqlSourceStore
from lumen_api.services.rag.types import EMPTY_RETRIEVAL, RetrievalResult, SourceRef

logger = logging.getLogger(__name__)

ASSISTANT_PERSONA = "You are a helpful research assistant."

CONTEXT_INSTRUCTIONS = (
    "Use the context below to answer the user's question and prefer it over "
    "anything else you know. If the context does not answer the question, say "
    "so briefly and then answer from your general knowledge."
)

NO_CONTEXT_INSTRUCTIONS = (
    "No retrieved context is available for this question. Answer from your "
    "general knowledge. Be concise, accurate, and helpful."
)


def build_system_prompt(context: str) -> str:
    if not context.strip():
        return f"{ASSISTANT_PERSONA} {NO_CONTEXT_INSTRUCTIONS}"
    return f"{ASSISTANT_PERSONA} {CONTEXT_INSTRUCTIONS}\n\nContext:\n{context}"


@dataclass(frozen=True)
class ChatTurn:
    conversation_id: int
    answer: str
    retrieval: RetrievalResult
    model: str
    used_fallback: bool


class ChatService:
    def __init__(
        self,
        *,
        store: SqlSourceStore,
        retriever: Retriever,
        llm_client: LLMClient,
    ) -> None:
        self._store = store
        self._retriever = retriever
        self._llm_client = llm_client

    def answer(
        self,
        message: str,
        *,
        scope: SourceRef | None = None,
        conversation_id: int | None = None,
    ) -> ChatTurn:
        question = message.strip()
        if not question:
            raise InvalidInput("message must not be empty")

        if conversation_id is None:
            title = f"Conversation {datetime.now(timezone.utc):%Y-%m-%d %H:%M}"
            conversation_id = self._store.create_conversation(title)
        elif not self._store.conversation_exists(conversation_id):
            raise SourceNotFound("conversation", conversation_id)

        self._store.add_message(conversation_id, "user", question)

        retrieval = self._retrieve(question, scope)
        result = self._llm_client.complete(
            system_prompt=build_system_prompt(retrieval.context),
            user_prompt=question,
        )

        self._store.add_message(conversation_id, "assistant", result.answer)
        return ChatTurn(
            conversation_id=conversation_id,
            answer=result.answer,
            retrieval=retrieval,
            model=result.model,
            used_fallback=result.used_fallback,
        )

    def _retrieve(self, question: str, scope: SourceRef | None) -> RetrievalResult:
        try:
            return self._retriever.retrieve(question, scope)
        except (EmbeddingFailure, StoreFailure) as exc:
            logger.warning("retrieval failed, answering without context: %s", exc)
            return EMPTY_RETRIEVAL
