from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet


class UserRole(str, Enum):
    PARENT = "PARENT"
    TEACHER = "TEACHER"
    STUDENT = "STUDENT"
    ADMIN = "ADMIN"
    STAFF = "STAFF"


class Permission(str, Enum):
    READ_OWN_STUDENT = "read:own_student"
    READ_ALL_STUDENTS = "read:all_students"
    READ_KNOWLEDGE = "read:knowledge"
    READ_CALENDAR = "read:calendar"
    SEND_MESSAGES = "send:messages"
    CREATE_TICKETS = "create:tickets"
    ADMIN = "admin"


ROLE_PERMISSIONS: Dict[UserRole, FrozenSet[Permission]] = {
    UserRole.PARENT: frozenset(
        {Permission.READ_OWN_STUDENT, Permission.READ_KNOWLEDGE, Permission.READ_CALENDAR}
    ),
    UserRole.TEACHER: frozenset(
        {
            Permission.READ_ALL_STUDENTS,
            Permission.READ_KNOWLEDGE,
            Permission.READ_CALENDAR,
            Permission.SEND_MESSAGES,
        }
    ),
    UserRole.STUDENT: frozenset(
        {Permission.READ_OWN_STUDENT, Permission.READ_KNOWLEDGE, Permission.READ_CALENDAR}
    ),
    UserRole.ADMIN: frozenset(Permission),
    UserRole.STAFF: frozenset(
        {
            Permission.READ_KNOWLEDGE,
            Permission.READ_CALENDAR,
            Permission.SEND_MESSAGES,
            Permission.CREATE_TICKETS,
        }
    ),
}

REVIEWER_ROLES = frozenset({UserRole.ADMIN, UserRole.STAFF})
