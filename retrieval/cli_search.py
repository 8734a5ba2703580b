from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from tqdm import tqdm

from common.errors import KnowledgeEngineError
from common.logger import get_logger
from ingestion.ingest_pipeline import KnowledgeService
from ingestion.loaders import discover_files, load_from_path
from lifecycle.source_repository import InMemorySourceRepository
from models.llm import build_structured_llm
from retrieval.filters import SearchFilters
from retrieval.hybrid_search import HybridSearchEngine, HybridSearchOptions
from retrieval.reranker import LLMReranker
from vectorstore.chroma_store import ChromaChunkIndex
from vectorstore.chunk_index import InMemoryChunkIndex
from vectorstore.embedding_pipeline import EmbeddingPipeline
from vectorstore.embedding_providers import build_embedding_provider

log = get_logger(__name__)


async def run(args: argparse.Namespace) -> None:
    repository = InMemorySourceRepository()
    index = ChromaChunkIndex(collection_name=args.collection) if args.chroma else InMemoryChunkIndex()
    embeddings = EmbeddingPipeline(build_embedding_provider())
    service = KnowledgeService(repository, index, embeddings)

    for path in tqdm(discover_files(Path(args.input_dir)), desc="Ingesting"):
        doc = load_from_path(path)
        try:
            _, status = await service.ingest_document(
                args.district,
                doc.data,
                doc.mime_type,
                category=args.category,
                auto_publish=True,
            )
        except KnowledgeEngineError as e:
            log.warning("Skipping %s: %s", path, e)
            continue
        if status.error:
            log.warning("Failed to process %s: %s", path, status.error)

    reranker = LLMReranker(build_structured_llm("llm_reranker")) if args.rerank else None
    engine = HybridSearchEngine(repository, index, embeddings, reranker=reranker)
    response = await engine.search(
        HybridSearchOptions(
            query=args.question,
            district_id=args.district,
            filters=SearchFilters(categories=[args.category] if args.category else None),
            limit=args.k,
            vector_weight=args.vector_weight,
            min_score=args.min_score,
            use_reranking=args.rerank,
        )
    )

    print(f"\n{response.total} results ({response.timing.total_ms:.0f} ms)")
    if response.timing.degraded:
        print(f"Degraded: {', '.join(response.timing.failed_paths)} failed")
    for i, r in enumerate(response.results, start=1):
        where = r.metadata.source_title
        if r.metadata.section_header:
            where += f" > {r.metadata.section_header}"
        if r.metadata.page_number:
            where += f" (p. {r.metadata.page_number})"
        print(f"\n[{i}] {r.fused_score:.3f}  {where}")
        if r.highlights:
            print("    " + " ... ".join(r.highlights))
        else:
            print("    " + r.content[:200].replace("\n", " "))


def main():
    parser = argparse.ArgumentParser(
        description="Ingest a folder for one district and run a hybrid search over it."
    )
    parser.add_argument("--input_dir", type=str, default="data/docs")
    parser.add_argument("--district", type=str, default="demo-district")
    parser.add_argument("--category", type=str, default=None)
    parser.add_argument("--k", type=int, default=5)
    parser.add_argument("--vector_weight", type=float, default=0.7)
    parser.add_argument("--min_score", type=float, default=0.0)
    parser.add_argument("--rerank", action="store_true", help="Rerank the head with the LLM")
    parser.add_argument("--chroma", action="store_true", help="Use the persisted Chroma index")
    parser.add_argument("--collection", type=str, default=None)
    parser.add_argument("question", type=str, help="Your question")
    args = parser.parse_args()

    if not Path(args.input_dir).exists():
        log.error("Input directory does not exist: %s", args.input_dir)
        raise SystemExit(1)
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
