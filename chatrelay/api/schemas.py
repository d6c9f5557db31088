from __future__ import annotations

import re
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

MAX_MESSAGE_LENGTH = 32_000
# base64 of roughly 15 MB of image data
MAX_IMAGE_LENGTH = 20_000_000

_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "unauthorized",
        "forbidden",
        "not_found",
        "conflict",
        "rate_limited",
        "server_error",
        "upstream_error",
        "service_unavailable",
    }
)

_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class ApiModel(BaseModel):
    """Base for request and response bodies exchanged with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RateLimitBody(BaseModel):
    error: str


class ChatRequest(ApiModel):
    message: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)
    model: Optional[str] = Field(default=None, max_length=200)
    conversation_id: Optional[str] = Field(default=None, max_length=64)
    image: Optional[str] = Field(
        default=None,
        max_length=MAX_IMAGE_LENGTH,
        description="Base64 image data, with or without a data URI prefix.",
    )

    @field_validator("message")
    @classmethod
    def _reject_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be blank")
        return value

    @field_validator("model", "conversation_id", "image")
    @classmethod
    def _empty_as_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value


class ChatResponse(ApiModel):
    content: str
    conversation_id: str
    message_id: str


class CredentialsRequest(ApiModel):
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=8, max_length=256)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        value = value.strip()
        if not _USERNAME_PATTERN.match(value):
            raise ValueError("username may only contain letters, digits, '.', '_' and '-'")
        return value


class TokenResponse(ApiModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    user_id: str
    username: str


class ModelResponse(ApiModel):
    id: str
    name: str
    free: bool
    supports_vision: bool


class MessageResponse(ApiModel):
    id: str
    role: str
    content: str
    model: Optional[str] = None
    image_url: Optional[str] = None
    created_at: datetime


class ConversationSummary(ApiModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime


class ConversationDetail(ConversationSummary):
    messages: List[MessageResponse] = Field(default_factory=list)


class ConversationListResponse(ApiModel):
    items: List[ConversationSummary]
    total_count: int
    page: int
    size: int
    has_next: bool


class MessageListResponse(ApiModel):
    items: List[MessageResponse]
    total_count: int
    page: int
    size: int
    has_next: bool
