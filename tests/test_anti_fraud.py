from datetime import timedelta

import pytest

from shared.database.models import GateVerification, VerificationStatus
from shared.utils.timeutils import unix_now, utcnow
from services.ticket_validation.errors import DuplicateScanWindow, RateLimited
from services.ticket_validation.services.anti_fraud import AntiFraudGuard

from conftest import ASSET_ID


async def add_records(session_maker, ticket, agent_id, count):
    async with session_maker() as session:
        for _ in range(count):
            session.add(GateVerification(
                event_id=ticket.event_id,
                ticket_id=ticket.ticket_id,
                verifying_agent=agent_id,
                status=VerificationStatus.PENDING.value,
                meta={},
            ))
        await session.commit()


def test_check_freshness():
    guard = AntiFraudGuard(freshness_seconds=60)
    now = unix_now()
    assert guard.check_freshness(now - 30, now=now)
    assert guard.check_freshness(now - 60, now=now)
    assert not guard.check_freshness(now - 61, now=now)
    assert guard.check_freshness(now - 100, max_age_seconds=120, now=now)


async def test_rate_limit_is_advisory_by_default(session_maker, seed):
    ticket, _ = await seed()
    await add_records(session_maker, ticket, "scanner-1", 3)
    guard = AntiFraudGuard(hard_mode=False, rate_max_scans=3)

    advisories = []
    async with session_maker() as session:
        assert await guard.check_agent_rate_limit(session, "scanner-1", advisories=advisories)
        assert await guard.check_agent_rate_limit(session, "scanner-2")
    assert advisories == ["rate_limited"]


async def test_rate_limit_blocks_in_hard_mode(session_maker, seed):
    ticket, _ = await seed()
    await add_records(session_maker, ticket, "scanner-1", 3)
    guard = AntiFraudGuard(hard_mode=True, rate_max_scans=3)

    async with session_maker() as session:
        assert not await guard.check_agent_rate_limit(session, "scanner-1")
        with pytest.raises(RateLimited):
            await guard.evaluate(session, "scanner-1", ASSET_ID)


async def test_duplicate_scan_window(session_maker, seed):
    ticket, _ = await seed()
    soft = AntiFraudGuard(hard_mode=False)
    hard = AntiFraudGuard(hard_mode=True)

    async with session_maker() as session:
        assert await soft.check_duplicate_scan(session, ASSET_ID)
        assert await soft.evaluate(session, "scanner-1", ASSET_ID) == []

    await add_records(session_maker, ticket, "scanner-1", 1)

    async with session_maker() as session:
        assert not await soft.check_duplicate_scan(session, ASSET_ID)
        assert await soft.evaluate(session, "scanner-2", ASSET_ID) == ["duplicate_scan_window"]
        with pytest.raises(DuplicateScanWindow):
            await hard.evaluate(session, "scanner-2", ASSET_ID)


async def add_record(session_maker, ticket, status, age_seconds=0):
    async with session_maker() as session:
        session.add(GateVerification(
            event_id=ticket.event_id,
            ticket_id=ticket.ticket_id,
            verifying_agent="scanner-1",
            status=status.value,
            meta={},
            created_at=utcnow() - timedelta(seconds=age_seconds),
        ))
        await session.commit()


async def test_rejected_records_do_not_block_rescan(session_maker, seed):
    ticket, _ = await seed()
    hard = AntiFraudGuard(hard_mode=True)
    for _ in range(3):
        await add_record(session_maker, ticket, VerificationStatus.REJECTED)

    async with session_maker() as session:
        assert await hard.check_duplicate_scan(session, ASSET_ID)
        assert await hard.evaluate(session, "scanner-2", ASSET_ID) == []


async def test_expired_pending_session_does_not_block_rescan(session_maker, seed):
    ticket, _ = await seed()
    hard = AntiFraudGuard(hard_mode=True, duplicate_window_seconds=300, pending_expires_seconds=120)
    await add_record(session_maker, ticket, VerificationStatus.PENDING, age_seconds=150)

    async with session_maker() as session:
        assert await hard.check_duplicate_scan(session, ASSET_ID)

    await add_record(session_maker, ticket, VerificationStatus.VERIFIED, age_seconds=150)

    async with session_maker() as session:
        assert not await hard.check_duplicate_scan(session, ASSET_ID)


async def test_zero_is_an_explicit_setting(session_maker, seed):
    ticket, _ = await seed()
    guard = AntiFraudGuard(hard_mode=True, rate_max_scans=0, freshness_seconds=0)
    assert guard.rate_max_scans == 0
    assert guard.freshness_seconds == 0

    now = unix_now()
    assert guard.check_freshness(now, now=now)
    assert not guard.check_freshness(now - 1, now=now)

    async with session_maker() as session:
        assert not await guard.check_agent_rate_limit(session, "scanner-1")
