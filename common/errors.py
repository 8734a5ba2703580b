from __future__ import annotations

from typing import Any, Dict, Optional


class KnowledgeEngineError(Exception):
    """Base error for the knowledge engine. Carries a message and a details dict."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | details={self.details}"
        return self.message


# --- format errors ---
class UnsupportedFormatError(KnowledgeEngineError):
    def __init__(self, mime_type: Optional[str]):
        super().__init__(
            f"Unsupported document format: {mime_type}", {"mime_type": mime_type}
        )
        self.mime_type = mime_type


class DocumentParsingError(KnowledgeEngineError):
    def __init__(self, mime_type: str, cause: BaseException):
        super().__init__(
            f"Failed to parse {mime_type} document: {cause}",
            {"mime_type": mime_type, "cause": type(cause).__name__},
        )
        self.mime_type = mime_type
        self.cause = cause


class ChunkingConfigError(KnowledgeEngineError):
    pass


# --- provider errors ---
class EmbeddingDimensionError(KnowledgeEngineError):
    def __init__(self, expected: int, actual: int, model: str):
        super().__init__(
            f"Embedding dimension mismatch for model '{model}': "
            f"expected {expected}, got {actual}",
            {"expected": expected, "actual": actual, "model": model},
        )


class EmbeddingGenerationError(KnowledgeEngineError):
    def __init__(self, attempts: int, batch_index: int, cause: BaseException):
        super().__init__(
            f"Embedding generation failed after {attempts} attempts",
            {"batch_index": batch_index, "cause": str(cause)},
        )
        self.attempts = attempts
        self.batch_index = batch_index
        self.cause = cause


class LLMResponseError(KnowledgeEngineError):
    pass


# --- search errors ---
class SearchError(KnowledgeEngineError):
    pass


class SearchTimeoutError(SearchError):
    pass


# --- scope and lifecycle errors ---
class TenantScopeError(KnowledgeEngineError):
    pass


class SourceNotFoundError(KnowledgeEngineError):
    def __init__(self, source_id: str, district_id: str):
        super().__init__(
            f"Knowledge source not found: {source_id}",
            {"source_id": source_id, "district_id": district_id},
        )
        self.source_id = source_id


class InvalidTransitionError(KnowledgeEngineError):
    pass


class ValidationError(KnowledgeEngineError):
    pass


class DuplicateSourceError(KnowledgeEngineError):
    def __init__(self, existing_id: str, file_hash: str):
        super().__init__(
            "This document has already been uploaded",
            {"existing_source_id": existing_id, "file_hash": file_hash},
        )
        self.existing_id = existing_id


class ToolRegistrationError(KnowledgeEngineError):
    pass


def require_district(district_id: Optional[str]) -> str:
    """Every read/write path is tenant scoped; a blank district is an authorization failure."""
    if not isinstance(district_id, str) or not district_id.strip():
        raise TenantScopeError("A district_id is required for this operation")
    return district_id
