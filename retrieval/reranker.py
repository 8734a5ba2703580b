from __future__ import annotations

from typing import List, Optional, Protocol

from pydantic import BaseModel

from common.config import yaml_config
from common.errors import LLMResponseError
from common.logger import get_logger
from chains.prompts import RERANK_PROMPT
from models.llm import StructuredLLM

log = get_logger(__name__)


class RerankScores(BaseModel):
    scores: List[float]


class Reranker(Protocol):
    async def rerank(self, query: str, documents: List[str]) -> List[float]:
        """Relevance in [0, 1] for each document, in input order."""
        ...


class LLMReranker:
    def __init__(self, llm: StructuredLLM, content_chars: Optional[int] = None):
        self.llm = llm
        self.content_chars = content_chars or yaml_config.search.rerank_content_chars

    def build_prompt(self, query: str, documents: List[str]) -> str:
        blocks = [
            f"[{i}] {doc[: self.content_chars]}" for i, doc in enumerate(documents, start=1)
        ]
        return RERANK_PROMPT.format(query=query, documents="\n\n".join(blocks))

    async def rerank(self, query: str, documents: List[str]) -> List[float]:
        if not documents:
            return []
        reply = await self.llm.complete(self.build_prompt(query, documents), RerankScores)
        if len(reply.scores) != len(documents):
            raise LLMResponseError(
                "Reranker returned a score count that does not match the documents",
                {"expected": len(documents), "actual": len(reply.scores)},
            )
        return [min(10.0, max(0.0, s)) / 10.0 for s in reply.scores]
