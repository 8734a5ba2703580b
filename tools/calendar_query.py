from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from chains.intent_models import IntentCategory
from common.roles import Permission
from lifecycle.source_models import utcnow
from tools.base_tool import BaseTool, ToolDefinition, ToolParams, ToolResult

DateRange = Tuple[datetime, datetime]

EVENT_TYPE_GROUPS = [
    (("conference", "parent-teacher"), ["conference", "parent_teacher_conference"]),
    (("holiday", "break"), ["holiday", "break", "no_school"]),
    (("deadline",), ["deadline", "due_date"]),
    (("meeting",), ["meeting"]),
]


@dataclass
class CalendarEvent:
    id: str
    title: str
    start: datetime
    end: datetime
    event_type: str = "event"
    all_day: bool = False
    location: Optional[str] = None
    description: Optional[str] = None
    school_ids: List[str] = field(default_factory=list)  # empty = whole district
    grade_level: Optional[str] = None


class CalendarService(Protocol):
    async def query_events(
        self,
        district_id: str,
        start: datetime,
        end: datetime,
        *,
        event_types: Optional[List[str]] = None,
        school_ids: Optional[List[str]] = None,
        grade_level: Optional[str] = None,
        limit: int = 10,
    ) -> List[CalendarEvent]: ...


def _day_start(d: datetime) -> datetime:
    return d.replace(hour=0, minute=0, second=0, microsecond=0)


def _day_end(d: datetime) -> datetime:
    return d.replace(hour=23, minute=59, second=59, microsecond=999999)


def _month_end(d: datetime) -> datetime:
    first_of_next = (d.replace(day=28) + timedelta(days=4)).replace(day=1)
    return _day_end(first_of_next - timedelta(days=1))


def time_reference_range(reference: str, now: datetime) -> DateRange:
    """Relative phrases ("tomorrow", "next week") to a concrete range; weeks start on Sunday."""
    lower = reference.lower()
    sunday = _day_start(now - timedelta(days=(now.weekday() + 1) % 7))
    if "today" in lower:
        return now, _day_end(now)
    if "tomorrow" in lower:
        t = now + timedelta(days=1)
        return _day_start(t), _day_end(t)
    if "this week" in lower:
        return sunday, _day_end(sunday + timedelta(days=6))
    if "next week" in lower:
        start = sunday + timedelta(days=7)
        return start, _day_end(start + timedelta(days=6))
    if "this month" in lower:
        return _day_start(now.replace(day=1)), _month_end(now)
    if "next month" in lower:
        first = _month_end(now) + timedelta(microseconds=1)
        return first, _month_end(first)
    return now, now + timedelta(days=14)


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def resolve_date_range(params: ToolParams, now: datetime) -> DateRange:
    extra, entities = params.extra, params.intent.entities
    if extra.get("start_date") and extra.get("end_date"):
        return _as_datetime(extra["start_date"]), _as_datetime(extra["end_date"])
    if entities.get("date"):
        d = _as_datetime(entities["date"])
        return _day_start(d), _day_end(d)
    span = entities.get("date_range")
    if isinstance(span, dict) and span.get("start") and span.get("end"):
        return _as_datetime(span["start"]), _as_datetime(span["end"])
    if entities.get("time_reference"):
        return time_reference_range(str(entities["time_reference"]), now)
    return now, now + timedelta(days=30)


def infer_event_types(entities: Dict[str, Any]) -> Optional[List[str]]:
    raw = entities.get("event_type")
    if not raw:
        return None
    lower = str(raw).lower()
    for keywords, types in EVENT_TYPE_GROUPS:
        if any(k in lower for k in keywords):
            return list(types)
    return [str(raw)]


def format_event(event: CalendarEvent) -> str:
    day = event.start.strftime("%A, %B %d, %Y")
    if event.all_day:
        when = day
        if event.end.date() != event.start.date():
            when += f" - {event.end.strftime('%A, %B %d, %Y')}"
    else:
        when = f"{day} at {event.start.strftime('%I:%M %p').lstrip('0')} - {event.end.strftime('%I:%M %p').lstrip('0')}"
    lines = [f"**{event.title}**", when]
    if event.location:
        lines.append(f"Location: {event.location}")
    if event.description:
        lines.append(event.description)
    return "\n".join(lines)


class CalendarQueryTool(BaseTool):
    definition = ToolDefinition(
        name="calendar_query",
        description="Looks up school calendar events, holidays, conferences and important dates",
        handles_intents=frozenset({IntentCategory.CALENDAR_QUERY, IntentCategory.OPERATIONAL}),
        required_permissions=frozenset({Permission.READ_CALENDAR}),
        timeout_ms=5000,
    )

    def __init__(self, service: CalendarService, *, clock: Callable[[], datetime] = utcnow):
        self.service = service
        self.clock = clock

    async def _execute(self, params: ToolParams) -> ToolResult:
        start, end = resolve_date_range(params, self.clock())
        school_id = params.extra.get("school_id")
        school_ids = [school_id] if school_id else (params.context.school_ids or None)
        events = await self.service.query_events(
            params.context.district_id,
            start,
            end,
            event_types=params.extra.get("event_types") or infer_event_types(params.intent.entities),
            school_ids=school_ids,
            grade_level=params.extra.get("grade_level") or params.intent.entities.get("grade_level"),
            limit=int(params.extra.get("limit", 10)),
        )
        span = f"{start:%B %d, %Y} to {end:%B %d, %Y}"
        if not events:
            return self.success(
                f"No events found for the specified period ({span}).",
                0.7,
                data={"event_count": 0},
            )
        return self.success(
            "\n\n".join(format_event(e) for e in events),
            0.95,
            data={
                "event_count": len(events),
                "date_range": {"start": start.isoformat(), "end": end.isoformat()},
                "events": [
                    {"id": e.id, "title": e.title, "date": e.start.isoformat(), "type": e.event_type}
                    for e in events
                ],
            },
        )
