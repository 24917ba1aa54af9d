from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from advisor.core import ids
from advisor.core.errors import PersistenceFailure, SessionNotFound, UpstreamFailure, WriteFailure
from advisor.core.memory import SessionStore
from advisor.core.models import ChatResult, Part, Session, SystemInstruction, Turn
from advisor.llm import LLMClient


logger = logging.getLogger(__name__)


class _SessionLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.holders = 0


def _is_prefix(stored: List[Turn], submitted: List[Turn]) -> bool:
    return len(stored) <= len(submitted) and submitted[: len(stored)] == stored


class ConversationOrchestrator:
    """Runs one chat exchange: load, ask the model, append, save.

    Exchanges on the same session id are serialised with a per-id lock that
    only exists while a request holds or waits on it. Inside the lock the
    stored history is the base whenever the submitted history does not
    extend it, so an exchange never overwrites turns saved by another.
    """

    def __init__(self, store: SessionStore, llm: LLMClient) -> None:
        self.store = store
        self.llm = llm
        self._locks: Dict[str, _SessionLock] = {}

    @asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(session_id)
        if entry is None:
            entry = self._locks[session_id] = _SessionLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[session_id]

    async def create_session(self) -> Session:
        session = Session(session_id=ids.generate(), conversation_history=[])
        await asyncio.to_thread(self.store.create, session.session_id, session)
        return session

    async def load_session(self, session_id: str) -> Session:
        session = await asyncio.to_thread(self.store.load, session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def interact(
        self,
        session_id: str,
        current_history: List[Turn],
        new_user_parts: Optional[List[Part]],
        system_instruction: SystemInstruction,
    ) -> ChatResult:
        # Unknown ids never get a lock entry.
        await self.load_session(session_id)

        async with self._session_lock(session_id):
            session = await self.load_session(session_id)

            submitted = list(current_history or [])
            stored = session.conversation_history
            if _is_prefix(stored, submitted):
                outgoing = submitted
            else:
                logger.warning(
                    "Submitted history for session %s does not extend the stored one "
                    "(submitted_turns=%s stored_turns=%s); continuing from stored history",
                    session_id,
                    len(submitted),
                    len(stored),
                )
                outgoing = list(stored)
            if new_user_parts:
                outgoing.append(Turn(role="user", parts=list(new_user_parts)))

            logger.info(
                "Calling LLM: session=%s stored_turns=%s outgoing_turns=%s",
                session_id,
                len(stored),
                len(outgoing),
            )
            try:
                reply = await self.llm.generate(outgoing, system_instruction)
            except UpstreamFailure:
                raise
            except Exception as exc:
                raise UpstreamFailure(f"LLM call failed: {exc.__class__.__name__}") from exc

            updated = outgoing + [Turn(role="model", parts=[Part(text=reply)])]
            session.conversation_history = updated
            try:
                await asyncio.to_thread(self.store.save, session_id, session)
            except WriteFailure as exc:
                raise PersistenceFailure(
                    f"Reply for session {session_id} was not saved",
                    ai_response=reply,
                    conversation_history=updated,
                ) from exc

        return ChatResult(ai_response=reply, updated_conversation_history=updated)
