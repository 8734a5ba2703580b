from __future__ import annotations

from typing import Any, Dict, List

from chains.intent_models import IntentCategory
from common.roles import Permission
from retrieval.filters import SearchFilters
from retrieval.hybrid_search import HybridSearchEngine, HybridSearchOptions, SearchResult
from tools.base_tool import BaseTool, ToolDefinition, ToolParams, ToolResult

SNIPPET_CHARS = 500


def _citation(r: SearchResult) -> Dict[str, Any]:
    return {
        "source_id": r.source_id,
        "chunk_id": r.chunk_id,
        "title": r.metadata.source_title,
        "section": r.metadata.section_header,
        "page": r.metadata.page_number,
        "score": round(r.fused_score, 4),
    }


def _format(results: List[SearchResult]) -> str:
    blocks = []
    for i, r in enumerate(results, start=1):
        where = r.metadata.source_title
        if r.metadata.section_header:
            where += f" > {r.metadata.section_header}"
        if r.metadata.page_number:
            where += f" (page {r.metadata.page_number})"
        blocks.append(f"[{i}] {where}\n{r.content.strip()[:SNIPPET_CHARS]}")
    return "\n\n".join(blocks)


class KnowledgeRetrievalTool(BaseTool):
    definition = ToolDefinition(
        name="knowledge_retrieval",
        description="Searches the district knowledge base (policies, handbooks, announcements) for cited answers",
        handles_intents=frozenset(
            {
                IntentCategory.POLICY_QUESTION,
                IntentCategory.GENERAL,
                IntentCategory.OPERATIONAL,
                IntentCategory.CALENDAR_QUERY,
                IntentCategory.ADMINISTRATIVE,
            }
        ),
        required_permissions=frozenset({Permission.READ_KNOWLEDGE}),
        timeout_ms=10000,
    )

    def __init__(self, search: HybridSearchEngine, limit: int = 5, min_score: float = 0.5):
        self.search = search
        self.limit = limit
        self.min_score = min_score

    async def _execute(self, params: ToolParams) -> ToolResult:
        categories = params.extra.get("categories") or params.intent.entities.get("categories")
        response = await self.search.search(
            HybridSearchOptions(
                query=params.query,
                district_id=params.context.district_id,
                filters=SearchFilters(categories=categories or None),
                limit=self.limit,
                min_score=self.min_score,
                use_reranking=bool(params.extra.get("rerank", False)),
            )
        )
        results = response.results
        if not results:
            return self.success(
                "No relevant information was found in the district knowledge base.",
                0.3,
                data={"result_count": 0, "degraded": response.timing.degraded},
                requires_follow_up=True,
            )

        avg = sum(r.fused_score for r in results) / len(results)
        return self.success(
            _format(results),
            min(avg + 0.1, 1.0),
            data={
                "result_count": len(results),
                "total": response.total,
                "degraded": response.timing.degraded,
            },
            sources=[_citation(r) for r in results],
        )
