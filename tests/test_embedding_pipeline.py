import pytest

from common.errors import EmbeddingDimensionError, EmbeddingGenerationError
from ingestion.document_models import DocumentChunk
from vectorstore.embedding_pipeline import EmbeddingPipeline, cosine_similarity

from conftest import DIMS, FakeEmbeddingProvider, embedding_config


def _chunks(*texts):
    return [DocumentChunk(source_id="s", content=t, chunk_index=i) for i, t in enumerate(texts)]


async def test_embeds_in_batches_and_preserves_order():
    provider = FakeEmbeddingProvider()
    pipeline = EmbeddingPipeline(provider, embedding_config(batch_size=2))
    texts = [f"policy number {i}" for i in range(5)]

    result = await pipeline.embed(_chunks(*texts))

    assert [len(b) for b in provider.calls] == [2, 2, 1]
    assert [ec.chunk.content for ec in result.chunks] == texts
    assert all(len(ec.embedding) == DIMS for ec in result.chunks)
    assert result.statistics.generated_chunks == 5
    assert result.statistics.cached_chunks == 0
    assert result.chunks[0].model == "fake-embedder"


async def test_identical_text_is_embedded_once():
    provider = FakeEmbeddingProvider()
    pipeline = EmbeddingPipeline(provider, embedding_config())

    first = await pipeline.embed(_chunks("same text", "same text", "other text"))
    assert sum(len(b) for b in provider.calls) == 2
    assert first.chunks[0].embedding == first.chunks[1].embedding

    second = await pipeline.embed(_chunks("same text"))
    assert second.statistics.cached_chunks == 1
    assert sum(len(b) for b in provider.calls) == 2
    assert pipeline.get_cache_stats()["hits"] >= 1

    pipeline.clear_cache()
    await pipeline.embed(_chunks("same text"))
    assert sum(len(b) for b in provider.calls) == 3


async def test_transient_failures_are_retried():
    provider = FakeEmbeddingProvider(fail_times=2)
    pipeline = EmbeddingPipeline(provider, embedding_config(max_retries=2))

    result = await pipeline.embed(_chunks("bus routes"))

    assert len(provider.calls) == 3
    assert len(result.chunks) == 1


async def test_exhausted_retries_raise_generation_error():
    provider = FakeEmbeddingProvider(fail_times=10)
    pipeline = EmbeddingPipeline(provider, embedding_config(max_retries=1))

    with pytest.raises(EmbeddingGenerationError) as e:
        await pipeline.embed(_chunks("lunch menu"))
    assert e.value.attempts == 2
    assert len(provider.calls) == 2


def test_provider_dimension_mismatch_is_rejected_up_front():
    with pytest.raises(EmbeddingDimensionError):
        EmbeddingPipeline(FakeEmbeddingProvider(dims=8), embedding_config())


async def test_wrong_vector_length_is_not_retried():
    provider = FakeEmbeddingProvider(vector_fn=lambda t: [1.0, 0.0])
    pipeline = EmbeddingPipeline(provider, embedding_config(max_retries=3))

    with pytest.raises(EmbeddingDimensionError):
        await pipeline.embed(_chunks("anything"))
    assert len(provider.calls) == 1


async def test_query_embedding_uses_cache():
    provider = FakeEmbeddingProvider()
    pipeline = EmbeddingPipeline(provider, embedding_config())
    a = await pipeline.generate_query_embedding("snow day")
    b = await pipeline.generate_query_embedding("snow day")
    assert a == b
    assert len(provider.calls) == 1


def test_cosine_similarity():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([0, 0], [1, 1]) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity([1, 2], [1, 2, 3])
