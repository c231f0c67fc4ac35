import pytest

from shared.database.models import Ticket, TicketStatus
from services.ticket_validation.errors import AlreadyRedeemed, TicketNotFound
from services.ticket_validation.services.ticket_directory import TicketDirectory

from conftest import ASSET_ID


async def test_find_by_payload_matches_ticket_number(db, seed):
    ticket, _ = await seed()

    found = await TicketDirectory.find_by_payload(db, "evt_abc", 7, ASSET_ID[:8])
    assert found.ticket_id == ticket.ticket_id


async def test_find_by_payload_falls_back_to_asset_prefix(db, seed, session_maker):
    ticket, _ = await seed()
    async with session_maker() as session:
        stored = await session.get(Ticket, ticket.ticket_id)
        stored.ticket_number = None
        await session.commit()

    found = await TicketDirectory.find_by_payload(db, "evt_abc", 7, ASSET_ID[:8])
    assert found.ticket_id == ticket.ticket_id


async def test_find_by_payload_prefix_with_like_wildcards_does_not_match_everything(db, seed, session_maker):
    ticket, _ = await seed()
    async with session_maker() as session:
        stored = await session.get(Ticket, ticket.ticket_id)
        stored.ticket_number = None
        await session.commit()

    with pytest.raises(TicketNotFound):
        await TicketDirectory.find_by_payload(db, "evt_abc", 7, "%%%%%%%%")


async def test_find_by_payload_other_event(db, seed):
    await seed()
    with pytest.raises(TicketNotFound):
        await TicketDirectory.find_by_payload(db, "evt_other", 7, ASSET_ID[:8])


async def test_find_by_id(db, seed):
    ticket, _ = await seed()
    assert (await TicketDirectory.find_by_id(db, ticket.ticket_id)).ticket_number == 7
    with pytest.raises(TicketNotFound):
        await TicketDirectory.find_by_id(db, "nope")


async def test_mark_used_only_once(session_maker, seed):
    ticket, _ = await seed()

    async with session_maker() as session:
        used_at = await TicketDirectory.mark_used(session, ticket.ticket_id)
        await session.commit()

    async with session_maker() as session:
        with pytest.raises(AlreadyRedeemed):
            await TicketDirectory.mark_used(session, ticket.ticket_id)

    async with session_maker() as session:
        status, stored_used_at = await TicketDirectory.get_redemption_state(session, ticket.ticket_id)
    assert status == TicketStatus.USED.value
    assert stored_used_at == used_at


async def test_mark_used_not_committed_is_rolled_back(session_maker, seed):
    ticket, _ = await seed()

    async with session_maker() as session:
        await TicketDirectory.mark_used(session, ticket.ticket_id)
        await session.rollback()

    async with session_maker() as session:
        status, used_at = await TicketDirectory.get_redemption_state(session, ticket.ticket_id)
    assert status == TicketStatus.ACTIVE.value
    assert used_at is None


async def test_mark_used_on_cancelled_ticket(session_maker, seed):
    ticket, _ = await seed(status=TicketStatus.CANCELLED)
    async with session_maker() as session:
        with pytest.raises(AlreadyRedeemed):
            await TicketDirectory.mark_used(session, ticket.ticket_id)


async def test_get_redemption_state_unknown_ticket(db):
    with pytest.raises(TicketNotFound):
        await TicketDirectory.get_redemption_state(db, "nope")
