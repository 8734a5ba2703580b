import pytest

pytest.importorskip("langchain_chroma")

from common.errors import TenantScopeError
from ingestion.document_models import DocumentChunk, EmbeddedChunk
from vectorstore.chroma_store import ChromaChunkIndex, build_where_filter
from vectorstore.chunk_index import IndexScope

from conftest import DISTRICT, OTHER_DISTRICT, word_vector


def test_where_filter_scopes_to_district_and_sources():
    assert build_where_filter(IndexScope(DISTRICT)) == {"district_id": {"$eq": DISTRICT}}
    assert build_where_filter(IndexScope(DISTRICT, frozenset({"s2", "s1"}))) == {
        "$and": [{"district_id": {"$eq": DISTRICT}}, {"source_id": {"$in": ["s1", "s2"]}}]
    }
    with pytest.raises(TenantScopeError):
        build_where_filter(IndexScope(""))


def _embedded(source_id, index, text):
    chunk = DocumentChunk(source_id=source_id, content=text, chunk_index=index, section_header="Rules")
    return EmbeddedChunk(chunk=chunk, embedding=word_vector(text), model="fake")


async def test_round_trip_is_tenant_scoped(tmp_path):
    store = ChromaChunkIndex(tmp_path, "district_test")
    mine = _embedded("s1", 0, "Buses leave the depot at seven")
    theirs = _embedded("s9", 0, "Buses leave the depot at eight")
    await store.upsert(DISTRICT, [mine])
    await store.upsert(OTHER_DISTRICT, [theirs])

    hits = await store.vector_query(IndexScope(DISTRICT), word_vector("buses depot"), 5)
    assert [h.chunk_id for h in hits] == [mine.id]
    assert hits[0].section_header == "Rules"

    hits = await store.keyword_query(IndexScope(DISTRICT), ["buses"], 5)
    assert [h.chunk_id for h in hits] == [mine.id]

    assert await store.get_chunk(OTHER_DISTRICT, mine.id) is None
    assert (await store.get_chunk(DISTRICT, mine.id)).content == mine.chunk.content

    assert await store.delete_by_source(DISTRICT, "s1") == 1
    assert await store.vector_query(IndexScope(DISTRICT), word_vector("buses"), 5) == []
