"""AgentRoom — Pydantic models."""

import re
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

# Must stay within what an @mention can spell (see mentions.MENTION_RE).
NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")


def _check_agent_name(value: str) -> str:
    value = (value or "").strip()
    if len(value) < 2:
        raise ValueError("Agent name must be at least 2 characters")
    if not NAME_RE.match(value):
        raise ValueError("Agent name can only contain letters, numbers, and underscores")
    return value


class AgentIn(BaseModel):
    model_config = {"extra": "forbid"}

    name: str
    description: str
    system_instructions: str
    capability: Literal["general", "research"] = "general"
    model: Optional[str] = Field(default=None, max_length=200)

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        return _check_agent_name(value)

    @field_validator("description", "system_instructions")
    @classmethod
    def _required_text(cls, value: str) -> str:
        if not (value or "").strip():
            raise ValueError("This field is required")
        return value.strip()


class AgentUpdateIn(BaseModel):
    model_config = {"extra": "forbid"}

    name: Optional[str] = None
    description: Optional[str] = None
    system_instructions: Optional[str] = None
    capability: Optional[Literal["general", "research"]] = None
    model: Optional[str] = Field(default=None, max_length=200)

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return _check_agent_name(value)


class AgentOut(BaseModel):
    id: str
    name: str
    description: str
    system_instructions: str
    capability: str
    model: Optional[str] = None
    created_at: str


class ChannelIn(BaseModel):
    name: str
    created_by: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        value = (value or "").strip()
        if len(value) < 2:
            raise ValueError("Channel name must be at least 2 characters")
        return value


class MemberInviteIn(BaseModel):
    member_type: Literal["user", "agent"]
    member_id: str = Field(..., min_length=1, max_length=200)
    invited_by: Optional[str] = None


class MessageIn(BaseModel):
    content: str
    author_id: str = Field(..., min_length=1, max_length=200)
    id: Optional[str] = Field(default=None, max_length=200)
    created_at: Optional[datetime] = None

    @field_validator("content")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not (value or "").strip():
            raise ValueError("Message content is required")
        return value.strip()

    @field_validator("created_at")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            raise ValueError("created_at must include a timezone offset")
        return value


class MessageOut(BaseModel):
    id: str
    channel_id: str
    author_type: str
    author_id: str
    content: str
    created_at: str
    updated_at: Optional[str] = None


class DelegationIn(BaseModel):
    channel_id: str
    agent_id: str
    placeholder_message_id: str
    triggering_text: str
    triggering_username: Optional[str] = None
    depth: int = Field(default=0, ge=0)
    trigger_message_id: Optional[str] = None


class WSMessage(BaseModel):
    content: str
    author_id: str
    id: Optional[str] = None
