import logging

from parley.budget import estimate, estimate_all, estimate_message
from parley.client import CompletionClient
from parley.config import ChatConfig
from parley.knowledge import fence, filter_snippets
from parley.prompts import KNOWLEDGE_LABEL, Prompts
from parley.retrieval import Retriever, Snippet
from parley.sessions.schema import Message, Session, synthetic
from parley.sessions.store import SessionStore

logger = logging.getLogger(__name__)


class ContextAssembler:
    """Builds the ordered message list submitted for one user turn."""

    def __init__(
        self,
        config: ChatConfig,
        client: CompletionClient,
        *,
        retriever: Retriever | None = None,
        prompts: Prompts | None = None,
    ):
        self.config = config
        self.client = client
        self.retriever = retriever
        self.prompts = prompts or Prompts()

    def memory_prompt(self, session: Session) -> Message:
        return synthetic("system", self.prompts.recap_for(session.memory_summary))

    def recent_messages(self, session: Session) -> list[Message]:
        messages = [m for m in session.messages if not m.errored]
        n = len(messages)

        context = list(session.context)
        if session.send_memory and session.memory_summary:
            context.append(self.memory_prompt(session))

        short_term_start = max(0, n - self.config.history_message_count)
        oldest_index = max(short_term_start, session.last_summarized_index)
        threshold = self.config.compress_message_length_threshold

        reversed_recent: list[Message] = []
        count = 0
        i = n - 1
        while i >= oldest_index and count < threshold:
            message = messages[i]
            count += estimate_message(message)
            reversed_recent.append(message)
            i -= 1

        return context + list(reversed(reversed_recent))

    async def _condense(self, snippet: Snippet) -> str | None:
        if estimate(snippet.text) <= self.config.knowledge_snippet_max_len:
            return snippet.text
        request = [
            synthetic("user", self.prompts.snippet_summary),
            synthetic("assistant", snippet.text),
        ]
        try:
            summary = await self.client.send_chat(request, self.config.summary_llm())
        except Exception as e:
            logger.warning(f"Failed to condense retrieved snippet: {e}")
            return None
        return summary or None

    async def inject_knowledge(
        self,
        store: SessionStore,
        session: Session,
        query: str,
        recent: list[Message],
    ) -> list[Message]:
        if self.retriever is None:
            return []

        snippets = await self.retriever.lookup(query)
        fresh = filter_snippets(recent, snippets)
        logger.debug(
            f"Session {session.id}: {len(snippets)} snippets retrieved, {len(fresh)} not yet in context"
        )

        injected: list[Message] = []
        for snippet in fresh:
            text = await self._condense(snippet)
            if text is not None:
                injected.append(synthetic("assistant", fence(text)))
            store.append_message(
                session,
                "assistant",
                KNOWLEDGE_LABEL + snippet.text,
                deletable=False,
                source=snippet.source or "retrieval",
            )
        return injected

    def _guard_budget(self, messages: list[Message]) -> list[Message]:
        total = estimate_all(messages)
        if total + self.config.llm.max_tokens <= self.config.context_ceiling:
            return messages
        kept = [
            m
            for m in messages
            if m.role != "assistant" or estimate_message(m) <= self.config.large_message_len
        ]
        logger.debug(
            f"Context of {total} exceeds ceiling, dropped {len(messages) - len(kept)} large assistant messages"
        )
        return kept

    async def assemble(
        self,
        store: SessionStore,
        session: Session,
        user_message: Message,
        recent: list[Message] | None = None,
    ) -> list[Message]:
        if recent is None:
            recent = self.recent_messages(session)
        if not self.config.send_bot_messages:
            recent = [m for m in recent if m.role != "assistant"]

        if session.retrieval and self.retriever is not None:
            injected = await self.inject_knowledge(store, session, user_message.content, recent)
            outgoing = (
                [synthetic("system", self.prompts.persona)]
                + recent
                + [synthetic("user", self.prompts.retrieval_instruction)]
                + injected
                + [user_message]
            )
        else:
            outgoing = recent + [user_message]

        return self._guard_budget(outgoing)
