from datetime import date, datetime, timezone
from typing import Literal, Optional, Union

from pydantic import BaseModel, ValidationError
from sqlmodel import SQLModel, Field

DEFAULT_TITLE = "New conversation"
NO_TEXT_PLACEHOLDER = "[image submitted, no text detected]"
VISION_PLACEHOLDER = "[image submitted for analysis]"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatSession(SQLModel, table=True):
    __tablename__ = "chat_sessions"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    title: str = Field(default=DEFAULT_TITLE)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ChatMessage(SQLModel, table=True):
    __tablename__ = "chat_messages"

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: int = Field(foreign_key="chat_sessions.id", index=True)
    role: str # user | assistant
    content: str # plain text, or a serialized ImageTurn when type == "image"
    type: str = Field(default="text") # text | image
    created_at: datetime = Field(default_factory=utcnow)


class DailyUsage(SQLModel, table=True):
    __tablename__ = "daily_usage"

    user_id: str = Field(primary_key=True)
    capability: str = Field(primary_key=True)
    day: date = Field(primary_key=True)
    uses: int = Field(default=0)


class TextTurn(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class ImageTurn(BaseModel):
    """An image-bearing user turn.

    Only metadata about the image is kept; the bytes themselves are sent to
    the OCR provider or the model once and then dropped.
    """

    kind: Literal["image"] = "image"
    mode: Literal["ocr", "vision"] = "ocr"
    caption: str = ""
    filename: Optional[str] = None
    media_type: Optional[str] = None
    extracted_text: Optional[str] = None


TurnContent = Union[TextTurn, ImageTurn]


def serialize_content(content: TurnContent) -> tuple[str, str]:
    """Return the ``(content, type)`` pair stored in ``chat_messages``."""
    if isinstance(content, ImageTurn):
        return content.model_dump_json(), "image"
    return content.text, "text"


def parse_content(content: str, content_type: str) -> TurnContent:
    if content_type == "image":
        try:
            return ImageTurn.model_validate_json(content)
        except ValidationError:
            # rows written by older clients hold plain text even for images
            return TextTurn(text=content)
    return TextTurn(text=content)


def flatten_content(content: TurnContent) -> str:
    """Reduce a turn to the plain text that is replayed to the model.

    Images never survive flattening; only their extracted text or a
    placeholder does.
    """
    if isinstance(content, TextTurn):
        return content.text

    parts = []
    if content.extracted_text:
        parts.append(f"[Text found in image]: {content.extracted_text}")
    elif content.mode == "vision":
        parts.append(VISION_PLACEHOLDER)
    else:
        parts.append(NO_TEXT_PLACEHOLDER)
    if content.caption:
        parts.append(content.caption)
    return "\n\n".join(parts)
