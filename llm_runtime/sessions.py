"""
Session Manager

Owns the conversational session of the active model: creation on top of a
fresh context, hydration from a conversation thread, and replacement after a
failed generation.
"""

from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from .errors import ModelNotLoadedError
from .interfaces import ChatSession, ConversationStore, EngineContext, EngineModel, InferenceEngine
from .types import ActiveModelEntry


def message_to_history_item(message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    role = message.get("role")
    content = message.get("content") or ""
    if role == "user":
        return {"type": "user", "text": content}
    if role == "assistant":
        return {"type": "model", "response": [content]}
    if role == "system":
        return {"type": "system", "text": content}
    return None


def build_history(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Completed messages as session history, without a trailing unanswered prompt."""
    history = []
    for message in messages:
        if message.get("status") != "completed":
            continue
        item = message_to_history_item(message)
        if item is not None:
            history.append(item)
    while history and history[-1]["type"] == "user":
        history.pop()
    return history


class SessionManager:
    def __init__(self, engine: InferenceEngine, conversations: ConversationStore, slot):
        self.engine = engine
        self.conversations = conversations
        self.slot = slot

    async def create_session(
        self,
        model: EngineModel,
        context_size: int,
        batch_size: int,
        threads: int,
    ) -> Tuple[EngineContext, ChatSession]:
        context = await model.create_context(context_size, batch_size, threads)
        try:
            session = self.engine.create_chat_session(context.get_sequence())
        except Exception:
            await context.dispose()
            raise
        return context, session

    async def populate_session_with_history(self, session: ChatSession, thread_id: str):
        session.set_chat_history([])
        await self.conversations.load()
        messages = await self.conversations.get_thread_messages(thread_id)
        history = build_history(messages)
        session.set_chat_history(history)
        logger.debug(f"Session hydrated from thread {thread_id} with {len(history)} entries")

    async def update_session_history(self, id_or_name: str, thread_id: str):
        """Re-hydrate the active session from ``thread_id``; no-op if the model is not loaded."""
        entry = self.slot.find(id_or_name)
        if entry is None:
            return
        await self.populate_session_with_history(entry.session, thread_id)
        entry.thread_id = thread_id

    async def recreate_session(self, id_or_name: str, thread_id: Optional[str] = None) -> ChatSession:
        """Replace the active session and context with fresh ones of the same size."""
        entry = self.slot.find(id_or_name)
        if entry is None:
            raise ModelNotLoadedError(id_or_name)

        context_size = entry.context.context_size
        batch_size = entry.context.batch_size
        threads = entry.context.threads

        await self._dispose_session(entry.session, entry.context)
        context, session = await self.create_session(entry.model, context_size, batch_size, threads)
        self.slot.replace_session(entry.model_id, context, session, thread_id or entry.thread_id)

        if thread_id:
            await self.populate_session_with_history(session, thread_id)
        logger.info(f"Recreated session for {entry.descriptor.name}")
        return session

    async def dispose(self, entry: ActiveModelEntry):
        await self._dispose_session(entry.session, entry.context)
        await entry.model.dispose()

    async def _dispose_session(self, session: ChatSession, context: EngineContext):
        try:
            await session.dispose()
        finally:
            await context.dispose()
