from __future__ import annotations

from collections import deque
from typing import Deque, List

from .models import ChatMessage, Participant


class ChatLog:
    """Append-only chat history keeping the most recent ``limit`` messages."""

    def __init__(self, limit: int = 100):
        self._messages: Deque[ChatMessage] = deque(maxlen=limit)

    def append(self, sender: Participant, text: str) -> ChatMessage:
        message = ChatMessage(
            sender_id=sender.id,
            sender_name=sender.name,
            sender_role=sender.role,
            text=text,
        )
        self._messages.append(message)
        return message

    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)
