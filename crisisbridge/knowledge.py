"""
Knowledge-base read interface used by the contextual extractor.

The support-content corpus and its similarity search belong to an external
collaborator.  The subsystem only needs ``search_similar(query, limit)``;
``InMemoryKnowledgeBase`` is a word-overlap implementation for development
and tests.
"""

from __future__ import annotations

import re
import uuid
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field


class KnowledgePassage(BaseModel):
    passage_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    document_id: str = ""
    content: str
    metadata: dict = Field(default_factory=dict)


@runtime_checkable
class KnowledgeBase(Protocol):
    async def search_similar(self, query: str, limit: int = 5) -> list[KnowledgePassage]:
        ...


_WORD = re.compile(r"[a-z']+")


class InMemoryKnowledgeBase:
    """Ranks passages by how many distinct query words (3+ letters) they contain."""

    def __init__(self, passages: list[KnowledgePassage] | None = None) -> None:
        self._passages: list[KnowledgePassage] = list(passages or [])

    def add(self, content: str, document_id: str = "", **metadata) -> KnowledgePassage:
        passage = KnowledgePassage(content=content, document_id=document_id, metadata=metadata)
        self._passages.append(passage)
        return passage

    async def search_similar(self, query: str, limit: int = 5) -> list[KnowledgePassage]:
        words = {w for w in _WORD.findall(query.lower()) if len(w) > 2}
        scored = []
        for index, passage in enumerate(self._passages):
            content = passage.content.lower()
            score = sum(1 for word in words if word in content)
            if score > 0:
                scored.append((score, index, passage))

        # Stable: equal scores keep insertion order.
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [passage for _, _, passage in scored[:limit]]

    def __len__(self) -> int:
        return len(self._passages)
