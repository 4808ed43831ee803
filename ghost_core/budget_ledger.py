"""
Budget Ledger - per-tier monthly spend caps.

SQLite storage (.ghost/budget.db) through aiosqlite:
- budget: one row per (tier, month_key) with cap, spent and reserved totals
- reservations: every reservation and whether it is held/committed/released
- ledger_entries: journal of reserve/commit/release/reversal/overrun rows

Reservation is check-then-reserve in a single conditional UPDATE, so two
concurrent reservations against the same tier can never both pass the cap.
Spend is never corrected after the fact except through explicit reversal
entries.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import aiosqlite

from ghost_core.audit_trail import AuditLevel, AuditLog, format_note
from ghost_core.errors import BudgetExhausted
from ghost_core.models import Tier, utc_now

logger = logging.getLogger("budget_ledger")

_EPSILON = 1e-9


@dataclass(frozen=True)
class Reservation:
    reservation_id: str
    tier: Tier
    month_key: str
    amount: float
    task_id: Optional[str] = None


@dataclass(frozen=True)
class BudgetLedgerEntry:
    tier: Tier
    month_key: str
    cap_amount: Optional[float]
    spent_amount: float
    reserved_amount: float

    @property
    def remaining(self) -> Optional[float]:
        if self.cap_amount is None:
            return None
        return max(0.0, self.cap_amount - self.spent_amount - self.reserved_amount)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["tier"] = self.tier.value
        data["remaining"] = self.remaining
        return data


def month_key_for(ts: datetime) -> str:
    return ts.strftime("%Y-%m")


class BudgetLedger:
    """Tracks spend per cost tier against a monthly cap."""

    def __init__(
        self,
        db_path: Path,
        caps: Mapping[Tier, Optional[float]],
        audit: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = utc_now,
        recover_held: bool = False,
    ):
        self.db_path = Path(db_path)
        self.caps = dict(caps)
        self.audit = audit
        self._clock = clock
        self.recover_held = recover_held
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._locks: Dict[Tuple[Tier, str], asyncio.Lock] = {}

    def month_key(self, now: Optional[datetime] = None) -> str:
        return month_key_for(now or self._clock())

    def _lock_for(self, tier: Tier, month_key: str) -> asyncio.Lock:
        key = (tier, month_key)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def initialize(self) -> None:
        """
        Create tables on first use. With `recover_held`, reservations still
        held by a previous process are released before anything else runs.
        """
        async with self._init_lock:
            if self._initialized:
                return
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(str(self.db_path)) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS budget (
                        tier TEXT NOT NULL,
                        month_key TEXT NOT NULL,
                        cap_amount REAL,
                        spent_amount REAL NOT NULL DEFAULT 0,
                        reserved_amount REAL NOT NULL DEFAULT 0,
                        PRIMARY KEY (tier, month_key)
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS reservations (
                        reservation_id TEXT PRIMARY KEY,
                        tier TEXT NOT NULL,
                        month_key TEXT NOT NULL,
                        amount REAL NOT NULL,
                        task_id TEXT,
                        state TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS ledger_entries (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        reservation_id TEXT,
                        tier TEXT NOT NULL,
                        month_key TEXT NOT NULL,
                        kind TEXT NOT NULL,
                        amount REAL NOT NULL,
                        note TEXT,
                        created_at TEXT NOT NULL
                    )
                """)
                if self.recover_held:
                    await self._release_stale(db)
                await db.commit()
            self._initialized = True

    async def _release_stale(self, db: aiosqlite.Connection) -> None:
        cursor = await db.execute(
            "SELECT reservation_id, tier, month_key, amount, task_id FROM reservations WHERE state = 'held'"
        )
        rows = await cursor.fetchall()
        for reservation_id, tier, month_key, amount, task_id in rows:
            await db.execute(
                "UPDATE reservations SET state = 'released' WHERE reservation_id = ?", (reservation_id,)
            )
            await db.execute(
                """
                UPDATE budget SET reserved_amount = MAX(0, reserved_amount - ?)
                WHERE tier = ? AND month_key = ?
                """,
                (amount, tier, month_key),
            )
            await self._journal(db, Tier.parse(tier), month_key, "release", amount, reservation_id, "recovered")
            logger.warning(f"Released reservation {reservation_id} ({tier}, {amount:.4f}) left held by a previous run")
            if self.audit is not None:
                self.audit.append(
                    AuditLevel.WARN, agent="BudgetLedger", action="release", model=tier, outcome="recovered",
                    note=format_note(reservation=reservation_id, task=task_id, month=month_key,
                                     amount=f"{amount:.6f}"),
                )

    async def _journal(
        self,
        db: aiosqlite.Connection,
        tier: Tier,
        month_key: str,
        kind: str,
        amount: float,
        reservation_id: Optional[str] = None,
        note: str = "",
    ) -> None:
        await db.execute(
            """
            INSERT INTO ledger_entries (reservation_id, tier, month_key, kind, amount, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (reservation_id, tier.value, month_key, kind, amount, note, self._clock().isoformat()),
        )

    async def reserve(self, tier: Tier, amount: float, task_id: Optional[str] = None) -> Reservation:
        """
        Atomically reserve `amount` against the tier's current-month cap.

        Raises:
            BudgetExhausted: the reservation would exceed the cap
        """
        if amount < 0:
            raise ValueError("reservation amount must not be negative")
        await self.initialize()

        tier = Tier.parse(tier)
        month_key = self.month_key()
        cap = self.caps.get(tier)
        reservation = Reservation(
            reservation_id=f"rsv_{uuid.uuid4().hex[:12]}",
            tier=tier,
            month_key=month_key,
            amount=float(amount),
            task_id=task_id,
        )

        async with self._lock_for(tier, month_key):
            async with aiosqlite.connect(str(self.db_path)) as db:
                await db.execute(
                    """
                    INSERT INTO budget (tier, month_key, cap_amount) VALUES (?, ?, ?)
                    ON CONFLICT(tier, month_key) DO UPDATE SET cap_amount = excluded.cap_amount
                    """,
                    (tier.value, month_key, cap),
                )
                cursor = await db.execute(
                    """
                    UPDATE budget SET reserved_amount = reserved_amount + ?
                    WHERE tier = ? AND month_key = ?
                      AND (cap_amount IS NULL OR spent_amount + reserved_amount + ? <= cap_amount + ?)
                    """,
                    (reservation.amount, tier.value, month_key, reservation.amount, _EPSILON),
                )
                if cursor.rowcount == 0:
                    await db.commit()
                    entry = await self._read_entry(db, tier, month_key)
                    remaining = entry.remaining if entry and entry.remaining is not None else 0.0
                    logger.warning(
                        f"Budget exhausted for {tier.value} ({month_key}): "
                        f"requested {reservation.amount:.4f}, remaining {remaining:.4f}"
                    )
                    raise BudgetExhausted(tier.value, month_key, reservation.amount, remaining)

                await db.execute(
                    """
                    INSERT INTO reservations (reservation_id, tier, month_key, amount, task_id, state, created_at)
                    VALUES (?, ?, ?, ?, ?, 'held', ?)
                    """,
                    (reservation.reservation_id, tier.value, month_key, reservation.amount,
                     task_id, self._clock().isoformat()),
                )
                await self._journal(db, tier, month_key, "reserve", reservation.amount,
                                    reservation.reservation_id)
                await db.commit()

        return reservation

    async def _settle(self, db: aiosqlite.Connection, reservation: Reservation, state: str) -> None:
        cursor = await db.execute(
            "UPDATE reservations SET state = ? WHERE reservation_id = ? AND state = 'held'",
            (state, reservation.reservation_id),
        )
        if cursor.rowcount == 0:
            raise ValueError(f"Reservation {reservation.reservation_id} is not held")

    async def commit(self, reservation: Reservation, actual_cost: Optional[float] = None) -> float:
        """
        Turn a held reservation into spend. Returns the amount charged.

        Actual cost above the reservation is charged only while it still fits
        under the cap; any remainder is journaled as an overrun.
        """
        await self.initialize()
        charge = reservation.amount if actual_cost is None else max(0.0, float(actual_cost))

        async with self._lock_for(reservation.tier, reservation.month_key):
            async with aiosqlite.connect(str(self.db_path)) as db:
                await self._settle(db, reservation, "committed")
                overrun = 0.0
                if charge > reservation.amount:
                    entry = await self._read_entry(db, reservation.tier, reservation.month_key)
                    if entry and entry.cap_amount is not None:
                        headroom = entry.cap_amount - entry.spent_amount - entry.reserved_amount
                        extra = min(charge - reservation.amount, max(0.0, headroom))
                        overrun = charge - reservation.amount - extra
                        charge = reservation.amount + extra

                await db.execute(
                    """
                    UPDATE budget SET reserved_amount = MAX(0, reserved_amount - ?),
                                      spent_amount = spent_amount + ?
                    WHERE tier = ? AND month_key = ?
                    """,
                    (reservation.amount, charge, reservation.tier.value, reservation.month_key),
                )
                await self._journal(db, reservation.tier, reservation.month_key, "commit", charge,
                                    reservation.reservation_id)
                if overrun > _EPSILON:
                    await self._journal(db, reservation.tier, reservation.month_key, "overrun", overrun,
                                        reservation.reservation_id, "not charged: cap reached")
                await db.commit()

        if overrun > _EPSILON:
            logger.warning(f"Cost overrun of {overrun:.4f} on {reservation.reservation_id} not charged")
            if self.audit is not None:
                self.audit.append(
                    AuditLevel.WARN, agent="BudgetLedger", action="commit",
                    model=reservation.tier.value, outcome="overrun",
                    note=format_note(reservation=reservation.reservation_id, task=reservation.task_id,
                                     overrun=f"{overrun:.6f}"),
                )
        return charge

    async def release(self, reservation: Reservation) -> None:
        """Return a held reservation to the pool without charging it."""
        await self.initialize()
        async with self._lock_for(reservation.tier, reservation.month_key):
            async with aiosqlite.connect(str(self.db_path)) as db:
                await self._settle(db, reservation, "released")
                await db.execute(
                    """
                    UPDATE budget SET reserved_amount = MAX(0, reserved_amount - ?)
                    WHERE tier = ? AND month_key = ?
                    """,
                    (reservation.amount, reservation.tier.value, reservation.month_key),
                )
                await self._journal(db, reservation.tier, reservation.month_key, "release",
                                    reservation.amount, reservation.reservation_id)
                await db.commit()

    async def reverse(self, tier: Tier, amount: float, reason: str, month_key: Optional[str] = None) -> None:
        """Explicit reversal entry (refund). The only way spend goes down."""
        if not reason or not reason.strip():
            raise ValueError("a reversal needs a reason")
        if amount <= 0:
            raise ValueError("reversal amount must be positive")
        await self.initialize()
        tier = Tier.parse(tier)
        month_key = month_key or self.month_key()

        async with self._lock_for(tier, month_key):
            async with aiosqlite.connect(str(self.db_path)) as db:
                entry = await self._read_entry(db, tier, month_key)
                if entry is None or entry.spent_amount + _EPSILON < amount:
                    raise ValueError(f"cannot reverse {amount:.4f}: more than was spent in {month_key}")
                await db.execute(
                    "UPDATE budget SET spent_amount = spent_amount - ? WHERE tier = ? AND month_key = ?",
                    (amount, tier.value, month_key),
                )
                await self._journal(db, tier, month_key, "reversal", -amount, note=reason)
                await db.commit()

        if self.audit is not None:
            self.audit.append(
                AuditLevel.INFO, agent="BudgetLedger", action="reverse", model=tier.value,
                outcome="success", note=format_note(month=month_key, amount=f"{amount:.6f}", reason=reason),
            )

    async def _read_entry(self, db: aiosqlite.Connection, tier: Tier, month_key: str) -> Optional[BudgetLedgerEntry]:
        cursor = await db.execute(
            "SELECT cap_amount, spent_amount, reserved_amount FROM budget WHERE tier = ? AND month_key = ?",
            (tier.value, month_key),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return BudgetLedgerEntry(
            tier=tier,
            month_key=month_key,
            cap_amount=row[0],
            spent_amount=row[1],
            reserved_amount=row[2],
        )

    async def get_entry(self, tier: Tier, month_key: Optional[str] = None) -> BudgetLedgerEntry:
        await self.initialize()
        tier = Tier.parse(tier)
        month_key = month_key or self.month_key()
        async with aiosqlite.connect(str(self.db_path)) as db:
            entry = await self._read_entry(db, tier, month_key)
        if entry is None:
            entry = BudgetLedgerEntry(tier, month_key, self.caps.get(tier), 0.0, 0.0)
        return entry

    async def status(self, month_key: Optional[str] = None) -> List[BudgetLedgerEntry]:
        return [await self.get_entry(tier, month_key) for tier in Tier]

    async def journal(self, month_key: Optional[str] = None) -> List[Dict[str, Any]]:
        await self.initialize()
        month_key = month_key or self.month_key()
        async with aiosqlite.connect(str(self.db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM ledger_entries WHERE month_key = ? ORDER BY id", (month_key,)
            )
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]
