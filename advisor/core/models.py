from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


ROLE_ALIASES = {
    "user": "user",
    "human": "user",
    "model": "model",
    "assistant": "model",
    "ai": "model",
    "bot": "model",
}


class Part(BaseModel):
    # Extra keys on a fragment are kept so stored turns round-trip verbatim.
    model_config = ConfigDict(extra="allow")

    text: Optional[str] = None


class Turn(BaseModel):
    role: Literal["user", "model"]
    parts: List[Part] = Field(default_factory=list)

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value):
        if isinstance(value, str):
            return ROLE_ALIASES.get(value.strip().lower(), value)
        return value

    @property
    def first_text(self) -> Optional[str]:
        if not self.parts:
            return None
        return self.parts[0].text

    def texts(self) -> List[str]:
        return [p.text for p in self.parts if p.text]


class Session(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    conversation_history: List[Turn] = Field(default_factory=list, alias="conversationHistory")

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ChatResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ai_response: str = Field(..., alias="aiResponse")
    updated_conversation_history: List[Turn] = Field(
        default_factory=list, alias="updatedConversationHistory"
    )


class SystemInstruction(BaseModel):
    """Persona and policy handed to the model alongside every conversation."""

    model_config = ConfigDict(frozen=True)

    name: str
    parts: List[str]

    def as_text(self) -> str:
        return "\n".join(self.parts)
