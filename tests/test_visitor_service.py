import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from visitor_tracker.database import AsyncSessionLocal
from visitor_tracker.models.visitor import VisitorRecord, VisitorSource
from visitor_tracker.services import visitor_service
from visitor_tracker.services.visitor_service import (
    TrackOutcome,
    VisitorServiceError,
    generate_fingerprint,
)

FIRST_VISIT = datetime(2026, 3, 1, 8, 30, 0)


def test_fingerprint_is_stable_sha256_hex():
    first = generate_fingerprint("1.2.3.4", "UA1")
    second = generate_fingerprint("1.2.3.4", "UA1")

    assert first == second
    assert len(first) == 64
    assert all(c in "0123456789abcdef" for c in first)


def test_fingerprint_differs_for_different_inputs():
    base = generate_fingerprint("1.2.3.4", "UA1")

    assert generate_fingerprint("1.2.3.5", "UA1") != base
    assert generate_fingerprint("1.2.3.4", "UA2") != base
    # 不做规范化：等价 IP 的不同写法视为不同访客
    assert generate_fingerprint("::ffff:1.2.3.4", "UA1") != base


def test_fingerprint_accepts_empty_strings():
    assert generate_fingerprint("", "") == generate_fingerprint("", "")
    assert generate_fingerprint("", "") != generate_fingerprint("1.2.3.4", "")


@pytest.mark.anyio
async def test_track_new_visitor_creates_record(db):
    result = await visitor_service.track_visit(db, "1.2.3.4", "UA1", now=FIRST_VISIT)
    await db.commit()

    assert result.outcome == TrackOutcome.CREATED
    assert result.visit_count == 1

    visitor = await visitor_service.get_visitor(db, result.fingerprint)
    assert visitor.ip == "1.2.3.4"
    assert visitor.user_agent == "UA1"
    assert visitor.visit_count == 1
    assert visitor.last_visit == FIRST_VISIT
    assert visitor.first_visit == FIRST_VISIT
    assert visitor.source == VisitorSource.VISITOR.value


@pytest.mark.anyio
async def test_repeat_visit_within_cooldown_is_ignored(db):
    first = await visitor_service.track_visit(db, "1.2.3.4", "UA1", now=FIRST_VISIT)
    await db.commit()

    second = await visitor_service.track_visit(
        db, "1.2.3.4", "UA1", now=FIRST_VISIT + timedelta(hours=23, minutes=59)
    )
    await db.commit()

    assert second.outcome == TrackOutcome.IGNORED
    assert second.visit_count is None

    visitor = await visitor_service.get_visitor(db, first.fingerprint)
    assert visitor.visit_count == 1
    assert visitor.last_visit == FIRST_VISIT


@pytest.mark.anyio
async def test_repeat_visit_after_cooldown_is_counted(db):
    await visitor_service.track_visit(db, "1.2.3.4", "UA1", now=FIRST_VISIT)
    await db.commit()

    later = FIRST_VISIT + timedelta(hours=25)
    result = await visitor_service.track_visit(db, "1.2.3.4", "UA1", now=later)
    await db.commit()

    assert result.outcome == TrackOutcome.COUNTED
    assert result.visit_count == 2

    visitor = await visitor_service.get_visitor(db, result.fingerprint)
    assert visitor.visit_count == 2
    assert visitor.last_visit == later
    assert visitor.first_visit == FIRST_VISIT

    count, total_visits = await visitor_service.count_visitors(db)
    assert count == 1
    assert total_visits == 2


@pytest.mark.anyio
async def test_cooldown_boundary_is_inclusive(db):
    await visitor_service.track_visit(db, "1.2.3.4", "UA1", now=FIRST_VISIT)
    await db.commit()

    result = await visitor_service.track_visit(
        db, "1.2.3.4", "UA1", now=FIRST_VISIT + timedelta(hours=24)
    )
    await db.commit()

    assert result.outcome == TrackOutcome.COUNTED


@pytest.mark.anyio
async def test_custom_cooldown_hours(db):
    await visitor_service.track_visit(db, "1.2.3.4", "UA1", now=FIRST_VISIT)
    await db.commit()

    result = await visitor_service.track_visit(
        db, "1.2.3.4", "UA1", now=FIRST_VISIT + timedelta(hours=2), cooldown_hours=1
    )
    await db.commit()

    assert result.outcome == TrackOutcome.COUNTED


@pytest.mark.anyio
async def test_one_record_per_fingerprint(db):
    for hours in (0, 1, 30, 31, 60):
        await visitor_service.track_visit(
            db, "10.0.0.1", "Mozilla/5.0", now=FIRST_VISIT + timedelta(hours=hours)
        )
        await db.commit()

    rows = (await db.execute(select(VisitorRecord))).scalars().all()
    assert len(rows) == 1
    # 0h 新建, 30h 计数, 60h 计数
    assert rows[0].visit_count == 3


@pytest.mark.anyio
async def test_count_and_list_match(db):
    await visitor_service.track_visit(db, "1.1.1.1", "A", now=FIRST_VISIT)
    await visitor_service.track_visit(db, "2.2.2.2", "B", now=FIRST_VISIT)
    await visitor_service.track_visit(db, "1.1.1.1", "A", now=FIRST_VISIT)
    await db.commit()

    count, total_visits = await visitor_service.count_visitors(db)
    visitors = await visitor_service.list_visitors(db)

    assert count == 2
    assert total_visits == 2
    assert len(visitors) == count


@pytest.mark.anyio
async def test_count_on_empty_table(db):
    assert await visitor_service.count_visitors(db) == (0, 0)


@pytest.mark.anyio
async def test_increase_visitors_adds_manual_records(db):
    created = await visitor_service.increase_visitors(db, 3, max_amount=10)

    assert created == 3
    visitors = await visitor_service.list_visitors(db)
    assert len(visitors) == 3
    assert {v.user_agent for v in visitors} == {"Manual Increment"}
    assert {v.source for v in visitors} == {VisitorSource.MANUAL.value}
    assert sorted(v.ip for v in visitors) == ["127.0.0.0", "127.0.0.1", "127.0.0.2"]
    assert all(v.fingerprint.startswith("manual-") for v in visitors)
    assert len({v.fingerprint for v in visitors}) == 3


@pytest.mark.anyio
async def test_increase_visitors_twice_keeps_fingerprints_unique(db):
    await visitor_service.increase_visitors(db, 2, max_amount=10)
    await visitor_service.increase_visitors(db, 2, max_amount=10)

    count, _ = await visitor_service.count_visitors(db)
    assert count == 4


@pytest.mark.anyio
async def test_concurrent_increases_in_same_millisecond_all_persist(tables, monkeypatch):
    frozen = datetime(2026, 3, 1, 9, 0, 0, 500000)
    monkeypatch.setattr(visitor_service, "utc_now_naive", lambda: frozen)

    async def increase(amount):
        async with AsyncSessionLocal() as session:
            return await visitor_service.increase_visitors(session, amount, max_amount=10)

    results = await asyncio.gather(increase(3), increase(3))

    assert results == [3, 3]
    async with AsyncSessionLocal() as session:
        assert await visitor_service.count_visitors(session) == (6, 6)
        fingerprints = [v.fingerprint for v in await visitor_service.list_visitors(session)]
    assert len(set(fingerprints)) == 6
    assert "manual-1772355600500-0" in fingerprints


@pytest.mark.anyio
async def test_increase_visitors_keeps_commits_made_before_failure(db, monkeypatch):
    original = AsyncSession.commit
    calls = {"count": 0}

    async def commit(self):
        calls["count"] += 1
        if calls["count"] == 3:
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))
        await original(self)

    monkeypatch.setattr(AsyncSession, "commit", commit)

    with pytest.raises(OperationalError):
        await visitor_service.increase_visitors(db, 5, max_amount=10)
    await db.rollback()

    assert await visitor_service.count_visitors(db) == (2, 2)


@pytest.mark.anyio
@pytest.mark.parametrize("amount", [0, -1, True, "3", 2.5])
async def test_increase_visitors_rejects_invalid_amount(db, amount):
    with pytest.raises(VisitorServiceError) as exc:
        await visitor_service.increase_visitors(db, amount, max_amount=10)

    assert exc.value.error_code == "INVALID_AMOUNT"
    assert await visitor_service.count_visitors(db) == (0, 0)


@pytest.mark.anyio
async def test_increase_visitors_rejects_amount_over_limit(db):
    with pytest.raises(VisitorServiceError) as exc:
        await visitor_service.increase_visitors(db, 11, max_amount=10)

    assert exc.value.error_code == "AMOUNT_TOO_LARGE"


@pytest.mark.anyio
async def test_synthetic_visit_fingerprints_are_unique_within_same_millisecond(db):
    now = datetime(2026, 3, 1, 9, 0, 0, 123000)

    first = await visitor_service.create_synthetic_visit(db, now=now)
    second = await visitor_service.create_synthetic_visit(db, now=now)
    await db.commit()

    assert first.fingerprint.startswith("auto-")
    assert second.fingerprint.startswith(first.fingerprint + "-")
    for record in (first, second):
        assert record.ip == "127.0.0.1"
        assert record.user_agent == "System Auto Increment"
        assert record.source == VisitorSource.SYNTHETIC.value

    count, _ = await visitor_service.count_visitors(db)
    assert count == 2


@pytest.mark.anyio
async def test_concurrent_synthetic_visits_in_same_millisecond(tables):
    now = datetime(2026, 3, 1, 9, 0, 0, 123000)

    async def add_synthetic():
        async with AsyncSessionLocal() as session:
            record = await visitor_service.create_synthetic_visit(session, now=now)
            await session.commit()
            return record.fingerprint

    first, second = await asyncio.gather(add_synthetic(), add_synthetic())

    assert first != second
    assert "auto-1772355600123" in (first, second)
    async with AsyncSessionLocal() as session:
        count, _ = await visitor_service.count_visitors(session)
    assert count == 2
