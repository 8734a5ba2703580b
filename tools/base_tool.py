from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

from common.errors import KnowledgeEngineError, ToolRegistrationError
from common.logger import get_logger
from common.roles import Permission, UserRole
from chains.intent_models import ClassifiedIntent, IntentCategory, UserContext

log = get_logger(__name__)


class ToolError(KnowledgeEngineError):
    """Expected tool failure; surfaces in ToolResult.error as 'CODE: message'."""

    def __init__(self, code: str, message: str):
        super().__init__(message, {"code": code})
        self.code = code


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    handles_intents: FrozenSet[IntentCategory]
    required_permissions: FrozenSet[Permission] = frozenset()
    requires_student_context: bool = False
    timeout_ms: int = 10000


@dataclass
class ToolParams:
    query: str
    intent: ClassifiedIntent
    context: UserContext
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    tool_name: str
    success: bool
    content: str = ""
    confidence: float = 0.0
    data: Dict[str, Any] = field(default_factory=dict)
    sources: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    execution_time_ms: float = 0.0
    requires_follow_up: bool = False


def failed_result(tool_name: str, error: str, execution_time_ms: float = 0.0) -> ToolResult:
    return ToolResult(
        tool_name=tool_name, success=False, error=error, execution_time_ms=execution_time_ms
    )


class BaseTool(ABC):
    definition: ToolDefinition

    @property
    def name(self) -> str:
        return self.definition.name

    def can_execute(self, context: UserContext) -> bool:
        required = self.definition.required_permissions
        if not required:
            return True
        granted = context.effective_permissions
        return Permission.ADMIN in granted or bool(required & granted)

    def has_student_context(self, params: ToolParams) -> bool:
        ctx = params.context
        return bool(
            params.extra.get("student_id")
            or params.intent.entities.get("student_id")
            or ctx.child_ids
            or ctx.role == UserRole.STUDENT
        )

    async def execute(self, params: ToolParams) -> ToolResult:
        started = time.perf_counter()
        if not self.can_execute(params.context):
            return failed_result(
                self.name, "PERMISSION_DENIED: User lacks the permissions this tool requires"
            )
        if self.definition.requires_student_context and not self.has_student_context(params):
            return failed_result(
                self.name, "STUDENT_CONTEXT_REQUIRED: No student is associated with this request"
            )
        try:
            result = await self._execute(params)
        except ToolError as e:
            result = failed_result(self.name, f"{e.code}: {e.message}")
        except Exception as e:
            log.error("Tool %s raised: %s", self.name, e, exc_info=True)
            result = failed_result(self.name, f"EXECUTION_ERROR: {e}")
        result.tool_name = self.name
        result.execution_time_ms = (time.perf_counter() - started) * 1000
        return result

    def success(self, content: str, confidence: float, **kwargs: Any) -> ToolResult:
        return ToolResult(
            tool_name=self.name, success=True, content=content, confidence=confidence, **kwargs
        )

    @abstractmethod
    async def _execute(self, params: ToolParams) -> ToolResult: ...


class ToolRegistry:
    def __init__(self, tools: Optional[List[BaseTool]] = None):
        self._tools: Dict[str, BaseTool] = {}
        for t in tools or []:
            self.register(t)

    def register(self, tool: BaseTool) -> None:
        if tool.name in self._tools:
            raise ToolRegistrationError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[BaseTool]:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def get_all(self) -> List[BaseTool]:
        return list(self._tools.values())

    def get_tools_for_intent(self, intent: IntentCategory) -> List[BaseTool]:
        return [t for t in self._tools.values() if intent in t.definition.handles_intents]

    def get_accessible_tools(self, context: UserContext) -> List[BaseTool]:
        return [t for t in self._tools.values() if t.can_execute(context)]

    def get_definitions(self) -> List[ToolDefinition]:
        return [t.definition for t in self._tools.values()]
