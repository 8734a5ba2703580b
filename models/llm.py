from __future__ import annotations

import re
from typing import Protocol, Type, TypeVar

import orjson
from langchain_core.language_models import BaseLanguageModel
from langchain_ollama import OllamaLLM
from pydantic import BaseModel, ValidationError

from common.config import LLMConfig, secrets, yaml_config
from common.errors import LLMResponseError
from common.logger import get_logger

log = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


def load_local_llm(config_section: str = "llm_classifier") -> BaseLanguageModel:
    """
    Load an LLM based on config section (llm_classifier, llm_router or llm_reranker).
    """
    cfg: LLMConfig = getattr(yaml_config, config_section)

    if cfg.provider == "ollama":
        return OllamaLLM(
            model=cfg.model_name,
            temperature=cfg.temperature,
            base_url=secrets.ollama_base_url,
        )
    else:
        raise ValueError(f"Unsupported provider for a local LLM: {cfg.provider}")


def unwrap_json_object(raw: str) -> str:
    """
    Extract the outermost JSON object { ... } from a raw LLM response.
    Raises LLMResponseError when the response contains no object.
    """
    match = re.search(r"\{[\s\S]*\}", raw)
    if not match:
        raise LLMResponseError("LLM response did not contain a JSON object", {"raw": raw[:200]})
    return match.group(0)


def parse_structured(raw: str, schema: Type[M]) -> M:
    try:
        data = orjson.loads(unwrap_json_object(raw))
        return schema.model_validate(data)
    except (orjson.JSONDecodeError, ValidationError) as e:
        raise LLMResponseError(
            f"LLM response did not match {schema.__name__}: {e}", {"raw": raw[:200]}
        ) from e


class StructuredLLM(Protocol):
    """Typed RPC boundary around a chat/completion model."""

    async def complete(self, prompt: str, schema: Type[M]) -> M: ...


class LangChainStructuredLLM:
    """Prompts a LangChain LLM for JSON and validates the reply against a pydantic schema."""

    def __init__(self, llm: BaseLanguageModel):
        self.llm = llm

    async def complete(self, prompt: str, schema: Type[M]) -> M:
        try:
            reply = await self.llm.ainvoke(prompt)
        except Exception as e:
            log.error("LLM invocation failed: %s", e)
            raise LLMResponseError(f"LLM invocation failed: {e}") from e
        text = getattr(reply, "content", reply)
        return parse_structured(str(text), schema)


class InstructorStructuredLLM:
    """OpenAI-compatible endpoint with instructor handling schema-constrained output."""

    def __init__(self, model: str, client=None, max_retries: int = 1):
        if client is None:
            # lazy imports
            import instructor
            from openai import AsyncOpenAI

            client = instructor.from_openai(
                AsyncOpenAI(api_key=secrets.openai_api_key),
                mode=instructor.Mode.JSON,
            )
        self.client = client
        self.model = model
        self.max_retries = max_retries

    async def complete(self, prompt: str, schema: Type[M]) -> M:
        try:
            return await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                response_model=schema,
                max_retries=self.max_retries,
            )
        except Exception as e:
            log.error("Structured completion failed: %s", e)
            raise LLMResponseError(f"Structured completion failed: {e}") from e


def build_structured_llm(config_section: str = "llm_classifier") -> StructuredLLM:
    cfg: LLMConfig = getattr(yaml_config, config_section)
    if cfg.provider == "openai":
        return InstructorStructuredLLM(cfg.model_name)
    return LangChainStructuredLLM(load_local_llm(config_section))
