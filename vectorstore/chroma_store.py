from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from langchain_chroma.vectorstores import Chroma

from common.config import yaml_config
from common.errors import require_district
from common.logger import get_logger
from ingestion.document_models import EmbeddedChunk
from vectorstore.chunk_index import IndexedChunk, IndexHit, IndexScope
from vectorstore.lexical import bm25_scores, highlights

log = get_logger(__name__)


def build_where_filter(scope: IndexScope) -> Dict[str, Any]:
    """
    Chroma 'where' filter for a query scope, built from chunk metadata written at upsert:
      - metadata.district_id (always present)
      - metadata.source_id (restricted to the eligible sources when given)
    """
    district = {"district_id": {"$eq": require_district(scope.district_id)}}
    if scope.source_ids is None:
        return district
    return {"$and": [district, {"source_id": {"$in": sorted(scope.source_ids)}}]}


def _metadata(district_id: str, ec: EmbeddedChunk) -> Dict[str, Any]:
    c = ec.chunk
    meta: Dict[str, Any] = {
        "district_id": district_id,
        "source_id": c.source_id,
        "chunk_index": c.chunk_index,
        "model": ec.model,
    }
    # chroma rejects None metadata values
    if c.section_header is not None:
        meta["section_header"] = c.section_header
    if c.page_number is not None:
        meta["page_number"] = c.page_number
    return meta


def _hit(chunk_id: str, document: str, meta: Dict[str, Any], score: float) -> IndexHit:
    return IndexHit(
        chunk_id=chunk_id,
        source_id=meta["source_id"],
        content=document,
        chunk_index=int(meta.get("chunk_index", 0)),
        score=score,
        section_header=meta.get("section_header"),
        page_number=meta.get("page_number"),
    )


class ChromaChunkIndex:
    def __init__(
        self,
        persist_dir: Path | str | None = None,
        collection_name: str | None = None,
    ):
        """
        Chunk index persisted in a Chroma collection using cosine distance.
        Vectors come from the embedding pipeline, so no embedding function is attached.
        """
        self.persist_dir = str(persist_dir or yaml_config.app.persist_dir)
        self.collection_name = collection_name or yaml_config.app.collection
        self._db = Chroma(
            collection_name=self.collection_name,
            persist_directory=self.persist_dir,
            collection_metadata={"hnsw:space": "cosine"},
        )

    @property
    def collection(self):
        return self._db._collection

    async def upsert(self, district_id: str, chunks: Sequence[EmbeddedChunk]) -> int:
        require_district(district_id)
        if not chunks:
            return 0
        await asyncio.to_thread(
            self.collection.upsert,
            ids=[ec.chunk.id for ec in chunks],
            embeddings=[list(ec.embedding) for ec in chunks],
            documents=[ec.chunk.content for ec in chunks],
            metadatas=[_metadata(district_id, ec) for ec in chunks],
        )
        log.info(
            "Upserted %d chunks into collection '%s'", len(chunks), self.collection_name
        )
        return len(chunks)

    async def delete_by_source(self, district_id: str, source_id: str) -> int:
        where = build_where_filter(IndexScope(district_id, frozenset([source_id])))
        res = await asyncio.to_thread(self.collection.get, where=where, include=[])
        ids = res.get("ids", [])
        if ids:
            await asyncio.to_thread(self.collection.delete, ids=ids)
        log.info("Deleted %d chunks for source '%s'", len(ids), source_id)
        return len(ids)

    async def vector_query(
        self, scope: IndexScope, vector: List[float], limit: int
    ) -> List[IndexHit]:
        if scope.source_ids is not None and not scope.source_ids:
            return []
        res = await asyncio.to_thread(
            self.collection.query,
            query_embeddings=[list(vector)],
            n_results=limit,
            where=build_where_filter(scope),
            include=["documents", "metadatas", "distances"],
        )
        hits: List[IndexHit] = []
        for cid, doc, meta, dist in zip(
            res["ids"][0], res["documents"][0], res["metadatas"][0], res["distances"][0]
        ):
            similarity = 1.0 - float(dist)
            if similarity > 0:
                hits.append(_hit(cid, doc, meta, similarity))
        hits.sort(key=lambda h: (-h.score, h.chunk_index))
        return hits

    async def keyword_query(
        self, scope: IndexScope, terms: List[str], limit: int
    ) -> List[IndexHit]:
        if not terms or (scope.source_ids is not None and not scope.source_ids):
            return []
        # $contains is case-sensitive, so probe a few casings of each term
        variants = sorted({v for t in terms for v in (t, t.capitalize(), t.upper())})
        contains = [{"$contains": v} for v in variants]
        where_document = contains[0] if len(contains) == 1 else {"$or": contains}
        res = await asyncio.to_thread(
            self.collection.get,
            where=build_where_filter(scope),
            where_document=where_document,
            include=["documents", "metadatas"],
        )
        docs = res.get("documents") or []
        scores = bm25_scores(terms, docs)
        hits: List[IndexHit] = []
        for cid, doc, meta, score in zip(res["ids"], docs, res["metadatas"], scores):
            if score > 0:
                hit = _hit(cid, doc, meta, score)
                hit.highlights = highlights(doc, terms)
                hits.append(hit)
        hits.sort(key=lambda h: (-h.score, h.chunk_index))
        return hits[:limit]

    async def get_chunk(self, district_id: str, chunk_id: str) -> Optional[IndexedChunk]:
        res = await asyncio.to_thread(
            self.collection.get,
            ids=[chunk_id],
            where=build_where_filter(IndexScope(district_id)),
            include=["documents", "metadatas", "embeddings"],
        )
        if not res.get("ids"):
            return None
        meta = res["metadatas"][0]
        return IndexedChunk(
            chunk_id=res["ids"][0],
            district_id=district_id,
            source_id=meta["source_id"],
            content=res["documents"][0],
            chunk_index=int(meta.get("chunk_index", 0)),
            embedding=[float(x) for x in res["embeddings"][0]],
            section_header=meta.get("section_header"),
            page_number=meta.get("page_number"),
        )
