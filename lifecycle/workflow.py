from __future__ import annotations

from typing import Callable, Dict, FrozenSet, List, NamedTuple, Optional

from common.config import yaml_config
from common.errors import InvalidTransitionError, SourceNotFoundError, ValidationError
from common.logger import get_logger
from common.roles import REVIEWER_ROLES, UserRole
from lifecycle.source_models import (
    KnowledgeSource,
    SourceQuery,
    SourceStatus,
    utcnow,
)
from lifecycle.source_repository import SourceRepository

log = get_logger(__name__)

S = SourceStatus


class Transition(NamedTuple):
    allowed_from: FrozenSet[SourceStatus]
    target: SourceStatus
    refusal: str


TRANSITIONS: Dict[str, Transition] = {
    "submit_for_review": Transition(
        frozenset({S.DRAFT, S.REJECTED}),
        S.PENDING_REVIEW,
        "Only draft or rejected sources can be submitted for review",
    ),
    "approve": Transition(
        frozenset({S.PENDING_REVIEW}), S.PUBLISHED, "Only sources pending review can be approved"
    ),
    "reject": Transition(
        frozenset({S.PENDING_REVIEW}), S.REJECTED, "Only sources pending review can be rejected"
    ),
    "publish": Transition(
        frozenset({S.DRAFT, S.PENDING_REVIEW}),
        S.PUBLISHED,
        "Only draft or pending sources can be published",
    ),
    "unpublish": Transition(
        frozenset({S.PUBLISHED}), S.DRAFT, "Only published sources can be unpublished"
    ),
    "archive": Transition(
        frozenset({S.DRAFT, S.PENDING_REVIEW, S.PUBLISHED, S.REJECTED}),
        S.ARCHIVED,
        "Source is already archived",
    ),
}


def can_approve(role: UserRole | str) -> bool:
    return role in REVIEWER_ROLES


class SourceWorkflow:
    """
    Lifecycle state machine for knowledge sources:
      DRAFT -> PENDING_REVIEW -> PUBLISHED -> ARCHIVED, with REJECTED as a
      non-retrievable side state that may be resubmitted.
    Only PUBLISHED, unexpired sources are visible to search.
    """

    def __init__(
        self,
        repository: SourceRepository,
        *,
        unpublish_policy: Optional[str] = None,
        clock: Callable = utcnow,
    ):
        self.repository = repository
        self.unpublish_policy = unpublish_policy or yaml_config.lifecycle.unpublish_policy
        self.clock = clock

    async def _load(self, district_id: str, source_id: str) -> KnowledgeSource:
        source = await self.repository.get(district_id, source_id)
        if source is None:
            raise SourceNotFoundError(source_id, district_id)
        return source

    async def apply(
        self,
        action: str,
        district_id: str,
        source_id: str,
        user_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> KnowledgeSource:
        transition = TRANSITIONS[action]
        source = await self._load(district_id, source_id)
        if source.status not in transition.allowed_from:
            raise InvalidTransitionError(
                transition.refusal,
                {"source_id": source_id, "status": source.status.value, "action": action},
            )

        now = self.clock()
        target = transition.target
        if action == "unpublish" and self.unpublish_policy == "archive":
            target = S.ARCHIVED
        if action in ("approve", "reject"):
            source.reviewed_by = user_id
            source.reviewed_at = now
            source.review_notes = notes
        if target == S.PUBLISHED:
            source.approved_by = user_id
            source.approved_at = now
            source.published_at = now

        previous = source.status
        source.status = target
        source.updated_at = now
        await self.repository.save(source)
        log.info(
            "Source %s %s -> %s (%s by %s)", source_id, previous.value, target.value, action, user_id
        )
        return source

    async def submit_for_review(self, district_id: str, source_id: str, user_id: Optional[str] = None) -> KnowledgeSource:
        return await self.apply("submit_for_review", district_id, source_id, user_id)

    async def approve(
        self, district_id: str, source_id: str, user_id: str, notes: Optional[str] = None
    ) -> KnowledgeSource:
        return await self.apply("approve", district_id, source_id, user_id, notes)

    async def reject(
        self, district_id: str, source_id: str, user_id: str, notes: Optional[str]
    ) -> KnowledgeSource:
        if not notes or not notes.strip():
            raise ValidationError("Rejection notes are required", {"source_id": source_id})
        return await self.apply("reject", district_id, source_id, user_id, notes)

    async def publish(self, district_id: str, source_id: str, user_id: Optional[str] = None) -> KnowledgeSource:
        return await self.apply("publish", district_id, source_id, user_id)

    async def unpublish(self, district_id: str, source_id: str, user_id: Optional[str] = None) -> KnowledgeSource:
        return await self.apply("unpublish", district_id, source_id, user_id)

    async def archive(self, district_id: str, source_id: str, user_id: Optional[str] = None) -> KnowledgeSource:
        return await self.apply("archive", district_id, source_id, user_id)

    async def get_pending_reviews(self, district_id: str) -> List[KnowledgeSource]:
        pending = await self.repository.find(
            district_id, SourceQuery(statuses={S.PENDING_REVIEW})
        )
        return sorted(pending, key=lambda s: s.updated_at)
