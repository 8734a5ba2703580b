from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from chains.intent_models import IntentCategory, UserContext
from common.roles import Permission, UserRole
from tools.base_tool import BaseTool, ToolDefinition, ToolError, ToolParams, ToolResult
from tools.relationship_cache import RelationshipCache

DATA_KEYWORDS = {
    "grades": ("grade", "score", "gpa"),
    "attendance": ("attend", "absent", "tardy"),
    "assignments": ("assignment", "homework", "due"),
}


@dataclass
class StudentInfo:
    id: str
    first_name: str
    last_name: str
    grade_level: str
    school_name: str


@dataclass
class StudentGrade:
    course_name: str
    letter_grade: str
    percentage: Optional[float] = None


@dataclass
class StudentAttendance:
    total_days: int
    present: int
    absent: int
    tardy: int


@dataclass
class StudentAssignment:
    title: str
    course_name: str
    due_date: datetime
    status: str = "pending"


@dataclass
class StudentData:
    info: Optional[StudentInfo] = None
    grades: List[StudentGrade] = field(default_factory=list)
    attendance: Optional[StudentAttendance] = None
    assignments: List[StudentAssignment] = field(default_factory=list)


class StudentDataService(Protocol):
    async def get_student_info(self, student_id: str, district_id: str) -> Optional[StudentInfo]: ...

    async def get_student_grades(
        self, student_id: str, district_id: str, course_id: Optional[str] = None
    ) -> List[StudentGrade]: ...

    async def get_student_attendance(self, student_id: str, district_id: str) -> StudentAttendance: ...

    async def get_student_assignments(
        self, student_id: str, district_id: str, course_id: Optional[str] = None, limit: int = 10
    ) -> List[StudentAssignment]: ...


def infer_data_types(query: str) -> List[str]:
    lower = query.lower()
    types = [name for name, words in DATA_KEYWORDS.items() if any(w in lower for w in words)]
    return types or ["info", "grades"]


def format_student_data(data: StudentData) -> str:
    sections = []
    if data.info:
        sections.append(
            "**Student Information**\n"
            f"Name: {data.info.first_name} {data.info.last_name}\n"
            f"Grade: {data.info.grade_level}\n"
            f"School: {data.info.school_name}"
        )
    if data.grades:
        rows = [
            f"- {g.course_name}: {g.letter_grade}" + (f" ({g.percentage}%)" if g.percentage else "")
            for g in data.grades
        ]
        sections.append("**Current Grades**\n" + "\n".join(rows))
    if data.attendance:
        att = data.attendance
        rate = (att.present / att.total_days * 100) if att.total_days else 0.0
        sections.append(
            "**Attendance Summary**\n"
            f"Attendance Rate: {rate:.1f}%\n"
            f"Present: {att.present} days | Absent: {att.absent} days | Tardy: {att.tardy}"
        )
    if data.assignments:
        rows = [
            f"- {a.title} ({a.course_name}) - Due: {a.due_date:%m/%d/%Y} [{a.status.upper()}]"
            for a in data.assignments
        ]
        sections.append("**Upcoming Assignments**\n" + "\n".join(rows))
    return "\n\n".join(sections)


class StudentDataFetchTool(BaseTool):
    definition = ToolDefinition(
        name="student_data_fetch",
        description="Retrieves a student's grades, attendance and assignments",
        handles_intents=frozenset({IntentCategory.STUDENT_SPECIFIC, IntentCategory.ASSIGNMENT_HELP}),
        required_permissions=frozenset({Permission.READ_OWN_STUDENT}),
        requires_student_context=True,
        timeout_ms=8000,
    )

    def __init__(self, service: StudentDataService, relationships: Optional[RelationshipCache] = None):
        self.service = service
        self.relationships = relationships

    def can_execute(self, context: UserContext) -> bool:
        if not super().can_execute(context):
            return False
        if context.role == UserRole.PARENT and self.relationships is None:
            return bool(context.child_ids)
        return True

    def resolve_student_id(self, params: ToolParams) -> Optional[str]:
        ctx = params.context
        explicit = params.extra.get("student_id") or params.intent.entities.get("student_id")
        if explicit:
            return str(explicit)
        if ctx.role == UserRole.STUDENT:
            return ctx.user_id
        if ctx.role == UserRole.PARENT and len(ctx.child_ids) == 1:
            return ctx.child_ids[0]
        return None

    async def has_access(self, context: UserContext, student_id: str) -> bool:
        if context.role in (UserRole.ADMIN, UserRole.STAFF, UserRole.TEACHER):
            return True
        if context.role == UserRole.STUDENT:
            return context.user_id == student_id
        if context.role == UserRole.PARENT:
            if student_id in context.child_ids:
                return True
            if self.relationships is not None:
                return await self.relationships.has_access(
                    context.district_id, context.user_id, student_id
                )
        return False

    async def fetch(
        self, student_id: str, district_id: str, data_types: List[str], course_id: Optional[str]
    ) -> StudentData:
        calls: Dict[str, Any] = {}
        if "info" in data_types:
            calls["info"] = self.service.get_student_info(student_id, district_id)
        if "grades" in data_types:
            calls["grades"] = self.service.get_student_grades(student_id, district_id, course_id)
        if "attendance" in data_types:
            calls["attendance"] = self.service.get_student_attendance(student_id, district_id)
        if "assignments" in data_types:
            calls["assignments"] = self.service.get_student_assignments(
                student_id, district_id, course_id, 10
            )
        values = await asyncio.gather(*calls.values())
        return StudentData(**dict(zip(calls.keys(), values)))

    async def _execute(self, params: ToolParams) -> ToolResult:
        student_id = self.resolve_student_id(params)
        if not student_id:
            raise ToolError("NO_STUDENT_SPECIFIED", "Could not determine which student to query")
        if not await self.has_access(params.context, student_id):
            raise ToolError("ACCESS_DENIED", "You do not have permission to view this student's data")

        data_types = params.extra.get("data_types") or infer_data_types(params.query)
        data = await self.fetch(
            student_id, params.context.district_id, data_types, params.extra.get("course_id")
        )
        return self.success(
            format_student_data(data),
            0.95,
            data={"student_id": student_id, "data_types": data_types, **asdict(data)},
        )
