from __future__ import annotations

from typing import List, Optional, Protocol

from langchain_core.embeddings import Embeddings

from common.config import EmbeddingConfig, secrets, yaml_config
from common.logger import get_logger

log = get_logger(__name__)


class EmbeddingProvider(Protocol):
    async def generate_embeddings(self, texts: List[str]) -> List[List[float]]: ...

    def get_model(self) -> str: ...

    def get_dimensions(self) -> int: ...


class LangChainEmbeddingProvider:
    """Adapter for any LangChain `Embeddings` implementation."""

    def __init__(self, embeddings: Embeddings, model: str, dimensions: int):
        self.embeddings = embeddings
        self.model = model
        self.dimensions = dimensions

    async def generate_embeddings(self, texts: List[str]) -> List[List[float]]:
        return await self.embeddings.aembed_documents(texts)

    def get_model(self) -> str:
        return self.model

    def get_dimensions(self) -> int:
        return self.dimensions


class OpenAIEmbeddingProvider:
    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        client=None,
    ):
        if client is None:
            from openai import AsyncOpenAI

            client = AsyncOpenAI(api_key=secrets.openai_api_key)
        self.client = client
        self.model = model
        self.dimensions = dimensions

    async def generate_embeddings(self, texts: List[str]) -> List[List[float]]:
        resp = await self.client.embeddings.create(
            model=self.model, input=texts, dimensions=self.dimensions
        )
        ordered = sorted(resp.data, key=lambda d: d.index)
        return [list(d.embedding) for d in ordered]

    def get_model(self) -> str:
        return self.model

    def get_dimensions(self) -> int:
        return self.dimensions


def build_embedding_provider(cfg: Optional[EmbeddingConfig] = None) -> EmbeddingProvider:
    """Provider for the configured backend (huggingface or openai)."""
    cfg = cfg or yaml_config.embeddings
    if cfg.provider == "openai":
        return OpenAIEmbeddingProvider(model=cfg.model, dimensions=cfg.dimensions)
    if cfg.provider == "huggingface":
        # lazy import: loading sentence-transformers is slow
        from langchain_huggingface.embeddings import HuggingFaceEmbeddings

        log.info("Loading HuggingFace embeddings '%s'", cfg.model)
        return LangChainEmbeddingProvider(
            HuggingFaceEmbeddings(model_name=cfg.model), cfg.model, cfg.dimensions
        )
    raise ValueError(f"Unsupported embedding provider: {cfg.provider}")
