"""Assemble the immutable :class:`RequestEnvelope` for one query."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from collections.abc import Iterable, Mapping
from typing import Any, Final

from .base import Attachment, BackendSelection, ChatMessage, Message, QueryOptions, RequestEnvelope


logger = logging.getLogger(__name__)

_TEXT_MIME_MARKERS: Final[tuple[str, ...]] = (
    "text/",
    "application/json",
    "application/javascript",
    "application/xml",
)
_TEXT_EXTENSIONS: Final[re.Pattern[str]] = re.compile(
    r"\.(txt|md|json|js|ts|jsx|tsx|py|java|c|cpp|h|cs|html|css|xml|yaml|yml|sql|sh|bash)$",
    re.IGNORECASE,
)
_DOCUMENT_EXTENSIONS: Final[re.Pattern[str]] = re.compile(
    r"\.(pdf|doc|docx|xls|xlsx|ppt|pptx)$",
    re.IGNORECASE,
)


def _is_text_like(attachment: Attachment) -> bool:
    if any(marker in attachment.mime_type for marker in _TEXT_MIME_MARKERS):
        return True
    return bool(attachment.file_name and _TEXT_EXTENSIONS.search(attachment.file_name))


def _is_document(attachment: Attachment) -> bool:
    if "application/pdf" in attachment.mime_type:
        return True
    return bool(attachment.file_name and _DOCUMENT_EXTENSIONS.search(attachment.file_name))


def attachment_parts(attachment: Attachment) -> list[dict[str, Any]]:
    """Content parts for one attachment.

    Priority: a persisted file becomes a reference stub, then images are
    inlined, then text-like files are decoded, then documents and any other
    binary get a descriptive placeholder.
    """

    name = attachment.file_name or "attachment"
    if attachment.file_path:
        return [{"type": "text", "text": f"[Attachment: {name} - saved at {attachment.file_path}]"}]

    if attachment.mime_type.startswith("image/"):
        return [
            {
                "type": "image",
                "source": {"type": "base64", "media_type": attachment.mime_type, "data": attachment.data},
            }
        ]

    if _is_text_like(attachment):
        try:
            decoded = base64.b64decode(attachment.data, validate=False).decode("utf-8", errors="replace")
        except (binascii.Error, ValueError) as exc:
            logger.warning("Failed to decode text attachment", extra={"file_name": name, "error": str(exc)})
            return [{"type": "text", "text": f"[File: {name} (text file, could not be decoded)]"}]
        return [{"type": "text", "text": f"[File: {name}]\n\n{decoded}"}]

    if _is_document(attachment):
        return [{"type": "text", "text": f"[File: {name} ({attachment.mime_type}) - content cannot be extracted]"}]

    return [{"type": "text", "text": f"[File: {name} ({attachment.mime_type}) - binary file]"}]


def _message_with_attachments(role: str, text: str, attachments: Iterable[Attachment]) -> Message:
    parts: list[Mapping[str, Any]] = []
    for attachment in attachments:
        parts.extend(attachment_parts(attachment))
    if text and text.strip():
        parts.append({"type": "text", "text": text})
    return Message(role=role, content=tuple(parts))


def _history_message(message: ChatMessage) -> Message:
    # Persisted attachments are already referenced in the message text.
    if not message.attachments or any(item.file_path for item in message.attachments):
        return Message(role=message.role, content=message.content)
    return _message_with_attachments(message.role, message.content, message.attachments)


def build_messages(prompt: str, options: QueryOptions) -> tuple[Message, ...]:
    messages: list[Message] = []
    if options.system_prompt:
        messages.append(Message(role="system", content=options.system_prompt))
    for item in options.conversation_history:
        messages.append(_history_message(item))

    attachments = tuple(options.attachments)
    if attachments and not any(item.file_path for item in attachments):
        parts: list[Mapping[str, Any]] = []
        for attachment in attachments:
            parts.extend(attachment_parts(attachment))
        parts.append({"type": "text", "text": prompt})
        messages.append(Message(role="user", content=tuple(parts)))
    else:
        messages.append(Message(role="user", content=prompt))
    return tuple(messages)


def build_envelope(prompt: str, options: QueryOptions, selection: BackendSelection) -> RequestEnvelope:
    """Build the request once; every fallback strategy of the call reuses it."""

    return RequestEnvelope(
        messages=build_messages(prompt, options),
        model=selection.model,
        temperature=selection.temperature,
        max_tokens=selection.max_tokens,
        stream=options.stream,
        tools=tuple(options.tools),
        thinking=options.thinking,
    )


__all__ = ["attachment_parts", "build_envelope", "build_messages"]
