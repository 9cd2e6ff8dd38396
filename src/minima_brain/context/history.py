"""
In-Memory Conversation History

Reference HistorySearch collaborator: stores messages in process and answers
keyword queries. Persistent storage plugs in behind the same interface.
"""

import re
import time
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from ..specdec.interfaces import HistorySearch


@dataclass
class Message:
    role: str
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)
    tokens_used: Optional[int] = None


class InMemoryHistory(HistorySearch):
    """Append-only message log with case-insensitive keyword search."""

    def __init__(self, max_results: int = 10):
        self.max_results = max_results
        self.messages: List[Message] = []

    def add_message(
        self, role: str, content: str, tokens_used: Optional[int] = None
    ) -> Message:
        message = Message(role=role, content=content, tokens_used=tokens_used)
        self.messages.append(message)
        return message

    async def search(self, query: str) -> List[str]:
        """Rank messages by how many query terms they contain, newest first on ties."""
        terms = {w for w in re.findall(r"\w+", query.lower()) if len(w) >= 3}
        if not terms:
            return []

        scored = []
        for age, message in enumerate(reversed(self.messages)):
            text = message.content.lower()
            score = sum(1 for term in terms if term in text)
            if score:
                scored.append((-score, age, message))
        scored.sort(key=lambda item: item[:2])

        return [f"{m.role}: {m.content}" for _, _, m in scored[: self.max_results]]

    def clear(self) -> None:
        self.messages = []
