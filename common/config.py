from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "config.yaml"


class AppConfig(BaseModel):
    persist_dir: Path = Path("data/chroma")
    collection: str = "district_knowledge"
    timeout: int = 20
    user_agent: str = "DistrictKnowledgeEngine/1.0"


class ParsingConfig(BaseModel):
    max_pdf_pages: int | None = None
    min_chars_per_page: int = 100


class ChunkingConfig(BaseModel):
    min_chunk_size: int = 200
    max_chunk_size: int = 1000
    overlap_size: int = 100


class EmbeddingConfig(BaseModel):
    provider: str = Field(default="huggingface", pattern="^(huggingface|openai)$")
    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimensions: int = 384
    batch_size: int = 50
    max_retries: int = 3
    retry_delay_ms: int = 1000
    max_concurrent_batches: int = 2
    cache_ttl_seconds: float | None = 86400.0


class SearchConfig(BaseModel):
    vector_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    limit: int = 10
    max_limit: int = 50
    min_score: float = 0.0
    candidate_multiplier: int = 3
    rerank_factor: int = 3
    rerank_content_chars: int = 500


class ClassifierConfig(BaseModel):
    escalation_confidence: float = 0.6
    history_messages: int = 3
    history_chars: int = 200
    batch_concurrency: int = 5


class RoutingConfig(BaseModel):
    confidence_threshold: float = 0.3
    max_tools_per_request: int = 3
    default_tool_timeout_ms: int = 10000


class LifecycleConfig(BaseModel):
    check_frequency_days: int = 30
    stale_window_days: int = 30
    unpublish_policy: str = Field(default="draft", pattern="^(draft|archive)$")
    bulk_concurrency: int = 5


class CacheConfig(BaseModel):
    relationship_ttl_seconds: float = 300.0
    cleanup_threshold: int = 1000


class LLMConfig(BaseModel):
    provider: str = Field(default="ollama", pattern="^(ollama|openai)$")
    model_name: str = "mistral"
    temperature: float = 0.0


class GlobalYAMLConfig(BaseModel):
    app: AppConfig = AppConfig()
    parsing: ParsingConfig = ParsingConfig()
    chunking: ChunkingConfig = ChunkingConfig()
    embeddings: EmbeddingConfig = EmbeddingConfig()
    search: SearchConfig = SearchConfig()
    classifier: ClassifierConfig = ClassifierConfig()
    routing: RoutingConfig = RoutingConfig()
    lifecycle: LifecycleConfig = LifecycleConfig()
    cache: CacheConfig = CacheConfig()
    llm_classifier: LLMConfig = LLMConfig()
    llm_router: LLMConfig = LLMConfig()
    llm_reranker: LLMConfig = LLMConfig()


def load_yaml_config(path: Path | str | None = None) -> GlobalYAMLConfig:
    path = Path(path or os.environ.get("KNOWLEDGE_ENGINE_CONFIG", DEFAULT_CONFIG_PATH))
    if not path.exists():
        return GlobalYAMLConfig()
    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}
    return GlobalYAMLConfig(**raw)


class Secrets(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    openai_api_key: str | None = None
    ollama_base_url: str = "http://localhost:11434"


yaml_config = load_yaml_config()
secrets = Secrets()
