"""Failures raised by the session store, the orchestrator and the LLM client.

Callers wrap lower-level exceptions with ``raise ... from exc`` so the original
cause stays reachable through ``__cause__``.
"""

from __future__ import annotations

from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from advisor.core.models import Turn


class AdvisorError(Exception):
    code = "internal_error"


class StoreError(AdvisorError):
    pass


class ReadFailure(StoreError):
    code = "read_failure"


class WriteFailure(StoreError):
    code = "write_failure"


class SessionNotFound(AdvisorError):
    code = "session_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class MalformedRequest(AdvisorError):
    code = "malformed_request"


class UpstreamFailure(AdvisorError):
    code = "upstream_failure"


class PersistenceFailure(AdvisorError):
    """The model replied but the updated session could not be saved."""

    code = "persistence_failure"

    def __init__(
        self,
        message: str,
        ai_response: str,
        conversation_history: Optional[List["Turn"]] = None,
    ) -> None:
        super().__init__(message)
        self.ai_response = ai_response
        self.conversation_history = list(conversation_history or [])
