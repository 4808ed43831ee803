"""Tests for the per-tier monthly budget ledger."""

import asyncio

import pytest

from ghost_core.budget_ledger import BudgetLedger
from ghost_core.errors import BudgetExhausted
from ghost_core.models import Tier


@pytest.fixture
def small_ledger(tmp_path, audit, clock):
    caps = {Tier.FREE: None, Tier.PAID_LOW: 100.0, Tier.PAID_HIGH: 1.0}
    return BudgetLedger(tmp_path / "budget.db", caps, audit=audit, clock=clock)


@pytest.mark.asyncio
async def test_reserve_then_commit_moves_reserved_to_spent(small_ledger):
    reservation = await small_ledger.reserve(Tier.PAID_LOW, 10.0, task_id="t1")

    entry = await small_ledger.get_entry(Tier.PAID_LOW)
    assert entry.reserved_amount == pytest.approx(10.0)
    assert entry.spent_amount == 0

    charged = await small_ledger.commit(reservation, actual_cost=4.0)

    entry = await small_ledger.get_entry(Tier.PAID_LOW)
    assert charged == pytest.approx(4.0)
    assert entry.reserved_amount == pytest.approx(0.0)
    assert entry.spent_amount == pytest.approx(4.0)
    assert entry.remaining == pytest.approx(96.0)
    assert entry.month_key == "2026-10"


@pytest.mark.asyncio
async def test_release_returns_reservation(small_ledger):
    reservation = await small_ledger.reserve(Tier.PAID_HIGH, 0.6)
    await small_ledger.release(reservation)

    entry = await small_ledger.get_entry(Tier.PAID_HIGH)
    assert entry.reserved_amount == pytest.approx(0.0)
    assert entry.spent_amount == pytest.approx(0.0)


@pytest.mark.asyncio
async def test_reservation_past_cap_raises(small_ledger):
    await small_ledger.reserve(Tier.PAID_HIGH, 0.75)

    with pytest.raises(BudgetExhausted) as exc_info:
        await small_ledger.reserve(Tier.PAID_HIGH, 0.5)

    assert exc_info.value.tier == "paid_high"
    assert exc_info.value.remaining == pytest.approx(0.25)


@pytest.mark.asyncio
async def test_uncapped_tier_never_exhausts(small_ledger):
    for _ in range(5):
        await small_ledger.reserve(Tier.FREE, 1000.0)

    entry = await small_ledger.get_entry(Tier.FREE)
    assert entry.cap_amount is None
    assert entry.remaining is None


@pytest.mark.asyncio
async def test_concurrent_reservations_never_exceed_cap(small_ledger):
    async def attempt():
        try:
            await small_ledger.reserve(Tier.PAID_LOW, 10.0)
            return True
        except BudgetExhausted:
            return False

    results = await asyncio.gather(*[attempt() for _ in range(25)])

    entry = await small_ledger.get_entry(Tier.PAID_LOW)
    assert results.count(True) == 10
    assert entry.spent_amount + entry.reserved_amount <= 100.0 + 1e-9


@pytest.mark.asyncio
async def test_settling_twice_is_rejected(small_ledger):
    reservation = await small_ledger.reserve(Tier.PAID_LOW, 1.0)
    await small_ledger.commit(reservation)

    with pytest.raises(ValueError):
        await small_ledger.commit(reservation)
    with pytest.raises(ValueError):
        await small_ledger.release(reservation)


@pytest.mark.asyncio
async def test_overrun_is_charged_only_up_to_cap(small_ledger, audit):
    reservation = await small_ledger.reserve(Tier.PAID_HIGH, 0.5)
    charged = await small_ledger.commit(reservation, actual_cost=2.0)

    entry = await small_ledger.get_entry(Tier.PAID_HIGH)
    assert charged == pytest.approx(1.0)
    assert entry.spent_amount == pytest.approx(1.0)
    kinds = [row["kind"] for row in await small_ledger.journal()]
    assert kinds == ["reserve", "commit", "overrun"]
    assert audit.query(agent="BudgetLedger")[-1].outcome == "overrun"


@pytest.mark.asyncio
async def test_reversal_needs_reason_and_reduces_spend(small_ledger):
    reservation = await small_ledger.reserve(Tier.PAID_LOW, 5.0)
    await small_ledger.commit(reservation)

    with pytest.raises(ValueError):
        await small_ledger.reverse(Tier.PAID_LOW, 2.0, reason="")
    with pytest.raises(ValueError):
        await small_ledger.reverse(Tier.PAID_LOW, 50.0, reason="refund")

    await small_ledger.reverse(Tier.PAID_LOW, 2.0, reason="provider refund")

    entry = await small_ledger.get_entry(Tier.PAID_LOW)
    assert entry.spent_amount == pytest.approx(3.0)
    journal = await small_ledger.journal()
    assert journal[-1]["kind"] == "reversal"
    assert journal[-1]["amount"] == pytest.approx(-2.0)


@pytest.mark.asyncio
async def test_new_month_starts_a_fresh_row(small_ledger, clock):
    await small_ledger.reserve(Tier.PAID_HIGH, 1.0)
    with pytest.raises(BudgetExhausted):
        await small_ledger.reserve(Tier.PAID_HIGH, 0.1)

    clock.advance(20 * 24 * 3600)
    reservation = await small_ledger.reserve(Tier.PAID_HIGH, 0.1)

    assert reservation.month_key == "2026-11"


@pytest.mark.asyncio
async def test_status_lists_every_tier(small_ledger):
    rows = await small_ledger.status()

    assert [row.tier for row in rows] == [Tier.FREE, Tier.PAID_LOW, Tier.PAID_HIGH]
    assert rows[1].to_dict()["remaining"] == pytest.approx(100.0)


@pytest.mark.asyncio
async def test_restart_releases_reservations_left_held(small_ledger, tmp_path, audit, clock):
    caps = {Tier.FREE: None, Tier.PAID_LOW: 100.0, Tier.PAID_HIGH: 1.0}
    orphan = await small_ledger.reserve(Tier.PAID_HIGH, 0.9, task_id="crashed")
    reader = BudgetLedger(tmp_path / "budget.db", caps, audit=audit, clock=clock)
    assert (await reader.get_entry(Tier.PAID_HIGH)).reserved_amount == pytest.approx(0.9)

    restarted = BudgetLedger(tmp_path / "budget.db", caps, audit=audit, clock=clock, recover_held=True)

    entry = await restarted.get_entry(Tier.PAID_HIGH)
    assert entry.reserved_amount == pytest.approx(0.0)
    assert entry.remaining == pytest.approx(1.0)
    last = (await restarted.journal())[-1]
    assert (last["kind"], last["note"], last["reservation_id"]) == ("release", "recovered", orphan.reservation_id)
    assert audit.tail(1)[0].outcome == "recovered"
    await restarted.reserve(Tier.PAID_HIGH, 0.9)
    with pytest.raises(ValueError):
        await small_ledger.commit(orphan)
