from datetime import timedelta

import pytest

from common.errors import InvalidTransitionError, SourceNotFoundError, ValidationError
from common.roles import UserRole
from lifecycle.bulk_operations import BulkOperations
from lifecycle.freshness import FreshnessMonitor, FreshnessState, calculate_content_hash, freshness_status
from lifecycle.source_models import KnowledgeSource, SourceStatus, SourceType
from lifecycle.workflow import SourceWorkflow, can_approve

from conftest import DISTRICT, OTHER_DISTRICT


async def _draft(repository, clock, **kwargs):
    kwargs.setdefault("title", "Handbook")
    source = KnowledgeSource(district_id=kwargs.pop("district_id", DISTRICT), created_at=clock(), updated_at=clock(), **kwargs)
    return await repository.save(source)


async def test_review_flow_sets_audit_fields(repository, workflow, clock):
    s = await _draft(repository, clock)
    s = await workflow.submit_for_review(DISTRICT, s.id, "author")
    assert s.status == SourceStatus.PENDING_REVIEW

    s = await workflow.approve(DISTRICT, s.id, "reviewer", "Looks good")
    assert s.status == SourceStatus.PUBLISHED
    assert s.reviewed_by == "reviewer"
    assert s.review_notes == "Looks good"
    assert s.approved_by == "reviewer"
    assert s.published_at == clock()


async def test_rejection_requires_notes_and_allows_resubmission(repository, workflow, clock):
    s = await _draft(repository, clock)
    await workflow.submit_for_review(DISTRICT, s.id)
    with pytest.raises(ValidationError):
        await workflow.reject(DISTRICT, s.id, "reviewer", "  ")
    s = await workflow.reject(DISTRICT, s.id, "reviewer", "Out of date")
    assert s.status == SourceStatus.REJECTED
    s = await workflow.submit_for_review(DISTRICT, s.id)
    assert s.status == SourceStatus.PENDING_REVIEW


@pytest.mark.parametrize(
    "action,status",
    [
        ("approve", SourceStatus.DRAFT),
        ("reject", SourceStatus.PUBLISHED),
        ("publish", SourceStatus.PUBLISHED),
        ("unpublish", SourceStatus.DRAFT),
        ("archive", SourceStatus.ARCHIVED),
        ("submit_for_review", SourceStatus.PUBLISHED),
    ],
)
async def test_illegal_transitions_are_refused(repository, workflow, clock, action, status):
    s = await _draft(repository, clock, status=status)
    with pytest.raises(InvalidTransitionError):
        await workflow.apply(action, DISTRICT, s.id, "user", "notes")
    assert (await repository.get(DISTRICT, s.id)).status == status


async def test_unpublish_policy(repository, clock):
    s = await _draft(repository, clock, status=SourceStatus.PUBLISHED)
    assert (await SourceWorkflow(repository, unpublish_policy="draft", clock=clock).unpublish(DISTRICT, s.id)).status == SourceStatus.DRAFT
    t = await _draft(repository, clock, status=SourceStatus.PUBLISHED)
    assert (await SourceWorkflow(repository, unpublish_policy="archive", clock=clock).unpublish(DISTRICT, t.id)).status == SourceStatus.ARCHIVED


async def test_workflow_is_district_scoped(repository, workflow, clock):
    s = await _draft(repository, clock)
    with pytest.raises(SourceNotFoundError):
        await workflow.publish(OTHER_DISTRICT, s.id)


async def test_pending_reviews_oldest_first(repository, workflow, clock):
    first = await _draft(repository, clock, title="first")
    await workflow.submit_for_review(DISTRICT, first.id)
    clock.advance(hours=1)
    second = await _draft(repository, clock, title="second")
    await workflow.submit_for_review(DISTRICT, second.id)
    assert [s.title for s in await workflow.get_pending_reviews(DISTRICT)] == ["first", "second"]


def test_reviewer_roles():
    assert can_approve(UserRole.ADMIN)
    assert can_approve(UserRole.STAFF)
    assert not can_approve(UserRole.PARENT)


def test_freshness_status_states(clock):
    now = clock()
    checked = now - timedelta(days=1)
    base = dict(district_id=DISTRICT, title="t", last_checked_at=checked, check_frequency_days=30)

    assert freshness_status(KnowledgeSource(**base), now).status == FreshnessState.FRESH
    assert freshness_status(KnowledgeSource(expires_at=now + timedelta(days=10), **base), now).status == FreshnessState.STALE
    assert freshness_status(KnowledgeSource(expires_at=now - timedelta(days=2), **base), now).status == FreshnessState.EXPIRED

    overdue = dict(base, last_checked_at=now - timedelta(days=31))
    report = freshness_status(KnowledgeSource(expires_at=now - timedelta(days=2), **overdue), now)
    assert report.status == FreshnessState.NEEDS_CHECK
    assert report.days_until_check is None

    report = freshness_status(KnowledgeSource(**base), now)
    assert report.days_until_check == 29


async def test_freshness_check_detects_change_and_triggers_reindex(repository, clock):
    pages = {"https://district.example/calendar": "Winter break starts Dec 20."}
    changed = []

    async def fetcher(url):
        return pages[url]

    async def on_change(source, content):
        changed.append((source.id, content))

    monitor = FreshnessMonitor(repository, fetcher=fetcher, on_change=on_change, clock=clock)
    web = await _draft(
        repository, clock,
        title="Calendar",
        source_type=SourceType.WEB_PAGE,
        status=SourceStatus.PUBLISHED,
        url="https://district.example/calendar",
    )

    first = await monitor.check_source_freshness(DISTRICT, web.id)
    assert not first.has_changed
    assert first.content_hash == calculate_content_hash("Winter break starts Dec 20.")

    same = await monitor.check_source_freshness(DISTRICT, web.id)
    assert not same.has_changed

    pages["https://district.example/calendar"] = "Winter break starts Dec 22."
    clock.advance(days=1)
    result = await monitor.check_source_freshness(DISTRICT, web.id)
    assert result.has_changed
    assert changed == [(web.id, "Winter break starts Dec 22.")]
    stored = await repository.get(DISTRICT, web.id)
    assert stored.last_modified_at == clock()
    assert stored.last_checked_at == clock()


async def test_scheduled_checks_only_visit_due_web_pages(repository, clock):
    fetched = []

    async def fetcher(url):
        fetched.append(url)
        if "broken" in url:
            raise ConnectionError("404")
        return "content"

    monitor = FreshnessMonitor(repository, fetcher=fetcher, clock=clock)
    common = dict(source_type=SourceType.WEB_PAGE, status=SourceStatus.PUBLISHED)
    await _draft(repository, clock, url="https://a.example/due", **common)
    await _draft(repository, clock, url="https://a.example/broken", **common)
    await _draft(repository, clock, url="https://a.example/recent", last_checked_at=clock() - timedelta(days=2), **common)
    await _draft(repository, clock, url="https://a.example/draft", source_type=SourceType.WEB_PAGE)
    await _draft(repository, clock, status=SourceStatus.PUBLISHED)

    summary = await monitor.run_scheduled_checks(DISTRICT)

    assert summary.checked == 1
    assert summary.errors == 1
    assert summary.changed == 0
    assert sorted(fetched) == ["https://a.example/broken", "https://a.example/due"]


async def test_expiring_sources(repository, clock):
    monitor = FreshnessMonitor(repository, clock=clock)
    soon = await _draft(repository, clock, title="soon", status=SourceStatus.PUBLISHED, expires_at=clock() + timedelta(days=5))
    await _draft(repository, clock, title="later", status=SourceStatus.PUBLISHED, expires_at=clock() + timedelta(days=90))
    await _draft(repository, clock, title="gone", status=SourceStatus.PUBLISHED, expires_at=clock() - timedelta(days=1))

    expiring = await monitor.get_expiring_sources(DISTRICT, days_threshold=30)
    assert [(e.id, e.days_until_expiry) for e in expiring] == [(soon.id, 5)]

    statuses = {r.title: r.status for r in await monitor.get_district_freshness_status(DISTRICT)}
    assert statuses["gone"] == FreshnessState.NEEDS_CHECK


async def test_bulk_publish_isolates_missing_ids(repository, workflow, index, clock):
    ids = [(await _draft(repository, clock, title=f"s{i}")).id for i in range(4)]
    bulk = BulkOperations(repository, workflow, index, concurrency=2, clock=clock)

    result = await bulk.bulk_publish(DISTRICT, ids + ["does-not-exist"], "admin")

    assert result.success is False
    assert result.processed == 5
    assert result.succeeded == 4
    assert result.failed == 1
    assert result.errors[0].source_id == "does-not-exist"
    for sid in ids:
        assert (await repository.get(DISTRICT, sid)).status == SourceStatus.PUBLISHED


async def test_bulk_tags_metadata_and_delete(repository, workflow, index, clock):
    a = await _draft(repository, clock, tags=["k5"])
    b = await _draft(repository, clock)
    bulk = BulkOperations(repository, workflow, index, clock=clock)

    assert (await bulk.bulk_add_tags(DISTRICT, [a.id, b.id], ["k5", "safety"])).success
    assert (await repository.get(DISTRICT, a.id)).tags == ["k5", "safety"]
    assert (await bulk.bulk_remove_tags(DISTRICT, [a.id], ["k5"])).success
    assert (await repository.get(DISTRICT, a.id)).tags == ["safety"]

    assert (await bulk.bulk_update_metadata(DISTRICT, [b.id], category="transport", check_frequency_days=7)).success
    updated = await repository.get(DISTRICT, b.id)
    assert (updated.category, updated.check_frequency_days) == ("transport", 7)
    with pytest.raises(ValidationError):
        await bulk.bulk_update_metadata(DISTRICT, [b.id], check_frequency_days=0)

    result = await bulk.bulk_delete(DISTRICT, [a.id, b.id])
    assert result.success and result.succeeded == 2
    assert await repository.get(DISTRICT, a.id) is None


async def test_bulk_archive_and_unpublish(repository, workflow, index, clock):
    live = await _draft(repository, clock, status=SourceStatus.PUBLISHED)
    archived = await _draft(repository, clock, status=SourceStatus.ARCHIVED)
    bulk = BulkOperations(repository, workflow, index, clock=clock)

    result = await bulk.bulk_unpublish(DISTRICT, [live.id, archived.id])
    assert (result.succeeded, result.failed) == (1, 1)
    assert (await bulk.bulk_archive(DISTRICT, [live.id])).success
    assert (await repository.get(DISTRICT, live.id)).status == SourceStatus.ARCHIVED
