from __future__ import annotations

import uuid
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso

Direction = Literal["in", "out"]


def _message_id() -> str:
    return "msg_" + uuid.uuid4().hex


class Message(BaseModel):
    """One mailbox entry. Only `delivered` ever changes after enqueue."""

    id: str = Field(default_factory=_message_id)
    ts: str = Field(default_factory=utc_now_iso)
    direction: Direction
    payload: Dict[str, Any] = Field(default_factory=dict)
    delivered: bool = False

    model_config = ConfigDict(extra="ignore")

    @property
    def text(self) -> str:
        return str(self.payload.get("text") or "")

    @property
    def kind(self) -> str:
        return str(self.payload.get("kind") or "text")


Button = List[str]  # [label, command]


def text_payload(text: str, *, buttons: Optional[List[List[Button]]] = None, **extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"kind": "text", "text": text}
    if buttons:
        payload["buttons"] = buttons
    payload.update(extra)
    return payload


def document_payload(file_path: str, *, caption: str = "", filename: str = "") -> Dict[str, Any]:
    payload: Dict[str, Any] = {"kind": "document", "file_path": file_path, "caption": caption}
    if filename:
        payload["filename"] = filename
    return payload
