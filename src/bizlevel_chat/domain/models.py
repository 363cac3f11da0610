"""Domain models for the chat pipeline."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel


class Role(str, Enum):
    """Author of a message. SYSTEM is only sent upstream, never persisted."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Message(BaseModel):
    """Message model.

    ``timestamp`` is either the authoritative server time (a datetime read
    back from the store), a client datetime assigned for immediate display,
    or a bare numeric epoch value. ``id`` is only set once the store has
    persisted the message.
    """

    role: Role
    content: str
    timestamp: Optional[Union[datetime, float]] = None
    id: Optional[str] = None

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content, timestamp=datetime.now(timezone.utc))

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role=Role.ASSISTANT, content=content, timestamp=datetime.now(timezone.utc))

    @property
    def is_transient(self) -> bool:
        return self.id is None

    def effective_time(self) -> Optional[float]:
        """Timestamp as epoch seconds, or None when the message has none."""
        value = self.timestamp
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value.timestamp()
        if isinstance(value, (int, float)):
            return float(value)
        return None

    def to_turn(self) -> "ChatTurn":
        return ChatTurn(role=self.role.value, content=self.content)


class ChatTurn(BaseModel):
    """Role and content pair as exchanged with the proxy endpoint."""

    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """Body of ``POST /api/chat``."""

    messages: List[ChatTurn]


class ChatResponse(BaseModel):
    """Body returned by ``POST /api/chat`` on success and on failure."""

    message: ChatTurn
    error: Optional[str] = None


class UpstreamMessage(BaseModel):
    """Message handed to the completion client, system instruction included."""

    role: Role
    content: str


SYSTEM_PROMPT = """You are an AI assistant for BizLevel, a platform that helps entrepreneurs improve their business skills through short videos, tests, and practical artifacts (templates, checklists, etc.).

Key information about BizLevel:
- BizLevel is a gamified learning platform with progressive level unlocking
- Each level contains short videos (2-4 minutes), interactive tests, and downloadable artifacts
- The platform focuses on business, entrepreneurship, and management topics
- Users progress through 10 levels, unlocking new content as they complete levels

As the BizLevel assistant, please:
- Introduce yourself as the BizLevel AI assistant when starting conversations
- Focus on business, entrepreneurship, and management topics
- Provide concise, practical advice that entrepreneurs can implement
- Refer to the level structure when relevant (Levels 1-10)
- Be friendly, professional, and encouraging
"""

PLACEHOLDER_REPLY = "..."


def build_upstream_messages(turns: List[ChatTurn], history_limit: int) -> List[UpstreamMessage]:
    """Keep the last ``history_limit`` turns and prepend the system instruction."""
    recent = turns[-history_limit:] if history_limit else []
    upstream = [UpstreamMessage(role=Role.SYSTEM, content=SYSTEM_PROMPT)]
    upstream.extend(UpstreamMessage(role=Role(t.role), content=t.content) for t in recent)
    return upstream
