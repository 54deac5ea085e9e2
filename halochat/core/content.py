"""Multimodal content assembly for the upstream call.

Blocks use the Anthropic-native shape, which ChatAnthropic passes through.
"""

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from halochat.core.normalizer import Attachment

# The upstream rejects a user turn with no content blocks.
PLACEHOLDER_BLOCK = {"type": "text", "text": " "}


def image_block(attachment: Attachment) -> dict:
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": attachment.mime_type,
            "data": attachment.data,
        },
    }


def document_block(attachment: Attachment) -> dict:
    return {"type": "text", "text": f"[File: {attachment.name}]\n{attachment.data}"}


def build_user_content(message: str, attachments: list[Attachment]) -> list[dict]:
    """Content blocks for the current turn: text first, then attachments in order.

    Args:
        message: User text; skipped when blank.
        attachments: Admitted attachments.

    Returns:
        Non-empty list of content blocks.
    """
    blocks = []
    if message and message.strip():
        blocks.append({"type": "text", "text": message.strip()})

    for attachment in attachments:
        if attachment.kind == "image":
            blocks.append(image_block(attachment))
        else:
            blocks.append(document_block(attachment))

    if not blocks:
        blocks.append(dict(PLACEHOLDER_BLOCK))
    return blocks


def build_messages(system_prompt: str, history: list[dict], content: list[dict]) -> list[BaseMessage]:
    """System prompt, sanitized history, then the current user turn."""
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))

    for turn in history:
        if turn["role"] == "user":
            messages.append(HumanMessage(content=turn["content"]))
        elif turn["role"] == "assistant":
            messages.append(AIMessage(content=turn["content"]))

    messages.append(HumanMessage(content=content))
    return messages
