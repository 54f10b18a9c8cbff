"""Request/response Pydantic models for the gateway endpoints.

``ChatCompletionRequest.from_body`` normalizes whatever JSON the caller sent
into the payload forwarded upstream: unusable messages are dropped, numeric
parameters are kept only when they are real numbers (otherwise defaulted or
omitted), and unset optional fields are stripped before serialization.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any

from pydantic import BaseModel, Field, field_validator

from nutriai_gateway.core.errors import InvalidRequestError
from nutriai_gateway.security.input_validators import is_number, sanitize_string


class HealthResponse(BaseModel):
    """Response model for GET /api/health."""

    status: str
    timestamp: str
    service: str
    version: str
    circuits: list[dict[str, Any]] = Field(default_factory=list)


class MisconfiguredResponse(BaseModel):
    status: str = "misconfigured"
    message: str
    timestamp: str


# ── Chat completions ────────────────────────────────────────────────────


class ChatMessage(BaseModel):
    role: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)

    @field_validator("role", "content", mode="before")
    @classmethod
    def sanitize(cls, v: Any) -> Any:
        if isinstance(v, str):
            return sanitize_string(v)
        return v


def sanitize_messages(messages: Any) -> list[ChatMessage]:
    """Keep entries that carry both a non-empty string role and content."""
    if not isinstance(messages, list):
        return []
    sanitized: list[ChatMessage] = []
    for message in messages:
        if not isinstance(message, dict):
            continue
        role = message.get("role")
        content = message.get("content")
        if not isinstance(role, str) or not isinstance(content, str):
            continue
        role = sanitize_string(role)
        content = sanitize_string(content)
        if not role or not content:
            continue
        sanitized.append(ChatMessage(role=role, content=content))
    return sanitized


def _number_or(value: Any, default: float | int | None) -> float | int | None:
    return value if is_number(value) else default


class ChatCompletionRequest(BaseModel):
    """Sanitized payload for the upstream chat-completions API."""

    model: str
    messages: list[ChatMessage] = Field(..., min_length=1)
    temperature: float | int
    max_tokens: int | float
    top_p: float | int | None = None
    presence_penalty: float | int | None = None
    frequency_penalty: float | int | None = None
    response_format: dict[str, Any] | None = None

    @classmethod
    def from_body(
        cls,
        body: Any,
        *,
        default_model: str,
        default_temperature: float = 0.3,
        default_max_tokens: int = 2000,
    ) -> "ChatCompletionRequest":
        """Build the upstream payload from a decoded request body.

        Raises:
            InvalidRequestError: Body is not an object, or no usable messages.
        """
        if not isinstance(body, dict):
            raise InvalidRequestError("Request body must be a JSON object.")

        messages = sanitize_messages(body.get("messages"))
        if not messages:
            raise InvalidRequestError("Request must include a non-empty messages array.")

        model = body.get("model")
        response_format = body.get("response_format")
        return cls(
            model=model if isinstance(model, str) and model else default_model,
            messages=messages,
            temperature=_number_or(body.get("temperature"), default_temperature),
            max_tokens=_number_or(body.get("max_tokens"), default_max_tokens),
            top_p=_number_or(body.get("top_p"), None),
            presence_penalty=_number_or(body.get("presence_penalty"), None),
            frequency_penalty=_number_or(body.get("frequency_penalty"), None),
            response_format=response_format if isinstance(response_format, dict) else None,
        )

    def to_upstream(self) -> dict[str, Any]:
        """JSON-ready dict with unset optional fields removed."""
        return self.model_dump(exclude_none=True)


# ── Audio transcription ─────────────────────────────────────────────────

# data-URL prefix → (filename, MIME type); webm is the default
_AUDIO_FORMATS: list[tuple[str, str, str]] = [
    ("data:audio/mp4", "audio.mp4", "audio/mp4"),
    ("data:audio/m4a", "audio.m4a", "audio/m4a"),
    ("data:audio/wav", "audio.wav", "audio/wav"),
    ("data:audio/ogg", "audio.ogg", "audio/ogg"),
    ("data:audio/mpeg", "audio.mp3", "audio/mpeg"),
]


class TranscriptionRequest(BaseModel):
    """Decoded audio upload for the upstream transcription API."""

    audio: bytes
    filename: str = "audio.webm"
    mime_type: str = "audio/webm"

    @classmethod
    def from_body(cls, body: Any) -> "TranscriptionRequest":
        """Decode ``{"audio": "<base64 data URL>"}``.

        Raises:
            InvalidRequestError: Missing, undecodable or empty audio.
        """
        audio = body.get("audio") if isinstance(body, dict) else None
        if not isinstance(audio, str) or not audio:
            raise InvalidRequestError("Audio data is required")

        encoded = audio.split(";base64,")[-1]
        if not encoded:
            raise InvalidRequestError("Invalid audio format")
        try:
            data = base64.b64decode(encoded)
        except (binascii.Error, ValueError):
            raise InvalidRequestError("Invalid audio format") from None
        if not data:
            raise InvalidRequestError("Audio recording was empty")

        filename, mime_type = "audio.webm", "audio/webm"
        for prefix, name, mime in _AUDIO_FORMATS:
            if audio.startswith(prefix):
                filename, mime_type = name, mime
                break
        return cls(audio=data, filename=filename, mime_type=mime_type)


class TranscriptionResponse(BaseModel):
    text: str
