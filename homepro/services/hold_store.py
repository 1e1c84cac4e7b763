"""Escrow hold persistence.

Every status change is a compare-and-swap: ``UPDATE ... WHERE hold_id = ? AND
status = ?`` (plus whatever else the transition depends on). A row count of
zero means another request got there first, and the caller re-reads the row
to decide what to report. Audit entries are written in the same transaction
as the change they describe.
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from homepro.errors import NotFound
from homepro.models.escrow import (
    TERMINAL_STATUSES,
    EscrowAction,
    EscrowAuditLog,
    EscrowHold,
    EscrowStatus,
)

logger = logging.getLogger(__name__)


class Party(enum.Enum):
    HOMEOWNER = "homeowner"
    CONTRACTOR = "contractor"


@dataclass(frozen=True)
class HoldSnapshot:
    """Immutable, validated view of one escrow_holds row."""
    hold_id: uuid.UUID
    job_id: uuid.UUID
    bid_id: uuid.UUID
    homeowner_id: uuid.UUID
    contractor_id: uuid.UUID
    amount: Decimal
    platform_fee: Decimal
    contractor_payout: Decimal
    fee_rate: Decimal
    currency: str
    payment_intent_id: str
    gateway_customer_id: str | None
    transfer_id: str | None
    refund_id: str | None
    status: EscrowStatus
    homeowner_confirmed: bool
    homeowner_confirmed_at: datetime | None
    contractor_confirmed: bool
    contractor_confirmed_at: datetime | None
    settlement_claim: str | None
    settlement_claimed_at: datetime | None
    dispute_reason: str | None
    refund_reason: str | None
    created_at: datetime
    released_at: datetime | None
    refunded_at: datetime | None

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError(f"Hold {self.hold_id}: non-positive amount {self.amount}")
        if self.platform_fee + self.contractor_payout != self.amount:
            raise ValueError(
                f"Hold {self.hold_id}: fee {self.platform_fee} + payout "
                f"{self.contractor_payout} != amount {self.amount}"
            )
        if (self.released_at is not None) != (self.status == EscrowStatus.RELEASED):
            raise ValueError(f"Hold {self.hold_id}: released_at inconsistent with {self.status.value}")
        if (self.refunded_at is not None) != (self.status == EscrowStatus.REFUNDED):
            raise ValueError(f"Hold {self.hold_id}: refunded_at inconsistent with {self.status.value}")
        if self.homeowner_confirmed != (self.homeowner_confirmed_at is not None):
            raise ValueError(f"Hold {self.hold_id}: homeowner confirmation missing its timestamp")
        if self.contractor_confirmed != (self.contractor_confirmed_at is not None):
            raise ValueError(f"Hold {self.hold_id}: contractor confirmation missing its timestamp")

    @classmethod
    def from_row(cls, row: EscrowHold) -> "HoldSnapshot":
        return cls(
            hold_id=row.hold_id,
            job_id=row.job_id,
            bid_id=row.bid_id,
            homeowner_id=row.homeowner_id,
            contractor_id=row.contractor_id,
            amount=Decimal(row.amount),
            platform_fee=Decimal(row.platform_fee),
            contractor_payout=Decimal(row.contractor_payout),
            fee_rate=Decimal(row.fee_rate),
            currency=row.currency,
            payment_intent_id=row.payment_intent_id,
            gateway_customer_id=row.gateway_customer_id,
            transfer_id=row.transfer_id,
            refund_id=row.refund_id,
            status=row.status,
            homeowner_confirmed=bool(row.homeowner_confirmed),
            homeowner_confirmed_at=row.homeowner_confirmed_at,
            contractor_confirmed=bool(row.contractor_confirmed),
            contractor_confirmed_at=row.contractor_confirmed_at,
            settlement_claim=row.settlement_claim,
            settlement_claimed_at=row.settlement_claimed_at,
            dispute_reason=row.dispute_reason,
            refund_reason=row.refund_reason,
            created_at=row.created_at,
            released_at=row.released_at,
            refunded_at=row.refunded_at,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def both_confirmed(self) -> bool:
        return self.homeowner_confirmed and self.contractor_confirmed

    def party_id(self, party: Party) -> uuid.UUID:
        if party == Party.HOMEOWNER:
            return self.homeowner_id
        return self.contractor_id

    def party_of(self, user_id: uuid.UUID) -> Party | None:
        if user_id == self.homeowner_id:
            return Party.HOMEOWNER
        if user_id == self.contractor_id:
            return Party.CONTRACTOR
        return None


@dataclass(frozen=True)
class AuditEntry:
    action: EscrowAction
    amount: Decimal
    actor_id: uuid.UUID | None = None
    prior_status: EscrowStatus | None = None
    new_status: EscrowStatus | None = None
    reason: str | None = None
    metadata: dict | None = None


def _add_audit(db: AsyncSession, hold_id: uuid.UUID, entry: AuditEntry) -> None:
    db.add(EscrowAuditLog(
        audit_id=uuid.uuid4(),
        hold_id=hold_id,
        action=entry.action,
        actor_id=entry.actor_id,
        prior_status=entry.prior_status,
        new_status=entry.new_status,
        reason=entry.reason,
        amount=entry.amount,
        metadata_=entry.metadata,
    ))


class HoldStore:
    """Conditional-update access to escrow_holds, one short transaction per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], lease_seconds: int = 300) -> None:
        self._session_factory = session_factory
        self._lease = timedelta(seconds=lease_seconds)

    async def get(self, hold_id: uuid.UUID) -> HoldSnapshot:
        async with self._session_factory() as db:
            result = await db.execute(select(EscrowHold).where(EscrowHold.hold_id == hold_id))
            row = result.scalar_one_or_none()
            if row is None:
                raise NotFound("Payment hold not found")
            return HoldSnapshot.from_row(row)

    async def get_for_job(self, job_id: uuid.UUID) -> HoldSnapshot:
        """The most recent hold on a job that has not been refunded."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(EscrowHold)
                .where(EscrowHold.job_id == job_id, EscrowHold.status != EscrowStatus.REFUNDED)
                .order_by(EscrowHold.created_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise NotFound("No active payment hold for this job")
            return HoldSnapshot.from_row(row)

    async def list_holds(self, status: EscrowStatus | None = None, limit: int = 100) -> list[HoldSnapshot]:
        async with self._session_factory() as db:
            query = select(EscrowHold).order_by(EscrowHold.created_at.desc()).limit(limit)
            if status is not None:
                query = query.where(EscrowHold.status == status)
            result = await db.execute(query)
            return [HoldSnapshot.from_row(row) for row in result.scalars().all()]

    async def list_for_party(self, user_id: uuid.UUID, limit: int = 100) -> list[HoldSnapshot]:
        """Holds the user paid into or is paid out of, newest first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(EscrowHold)
                .where(or_(EscrowHold.homeowner_id == user_id, EscrowHold.contractor_id == user_id))
                .order_by(EscrowHold.created_at.desc())
                .limit(limit)
            )
            return [HoldSnapshot.from_row(row) for row in result.scalars().all()]

    async def audit_trail(self, hold_id: uuid.UUID) -> list[EscrowAuditLog]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(EscrowAuditLog)
                .where(EscrowAuditLog.hold_id == hold_id)
                .order_by(EscrowAuditLog.timestamp)
            )
            return list(result.scalars().all())

    async def _apply(
        self,
        hold_id: uuid.UUID,
        conditions: list,
        values: dict,
        audit: AuditEntry | None = None,
    ) -> bool:
        """Run one conditional UPDATE; write the audit entry only if a row changed."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(EscrowHold)
                .where(EscrowHold.hold_id == hold_id, *conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                return False
            if audit is not None:
                _add_audit(db, hold_id, audit)
            await db.commit()
            return True

    async def confirm(self, hold_id: uuid.UUID, party: Party, audit: AuditEntry) -> bool:
        """Set one party's confirmation flag. False if already set or the hold is closed."""
        now = datetime.now(UTC)
        if party == Party.HOMEOWNER:
            flag, values = EscrowHold.homeowner_confirmed, {
                "homeowner_confirmed": True, "homeowner_confirmed_at": now,
            }
        else:
            flag, values = EscrowHold.contractor_confirmed, {
                "contractor_confirmed": True, "contractor_confirmed_at": now,
            }
        return await self._apply(
            hold_id,
            [EscrowHold.status.in_([EscrowStatus.CAPTURED, EscrowStatus.DISPUTED]), flag.is_(False)],
            values,
            audit,
        )

    def _claim_free(self, now: datetime):
        return or_(
            EscrowHold.settlement_claim.is_(None),
            EscrowHold.settlement_claimed_at < now - self._lease,
        )

    async def claim_settlement(
        self,
        hold_id: uuid.UUID,
        token: str,
        statuses: tuple[EscrowStatus, ...],
        require_confirmations: bool,
    ) -> bool:
        """Take the settlement lease. At most one caller holds a live lease per hold."""
        now = datetime.now(UTC)
        conditions = [EscrowHold.status.in_(statuses), self._claim_free(now)]
        if require_confirmations:
            conditions.append(and_(
                EscrowHold.homeowner_confirmed.is_(True),
                EscrowHold.contractor_confirmed.is_(True),
            ))
        claimed = await self._apply(
            hold_id, conditions, {"settlement_claim": token, "settlement_claimed_at": now}
        )
        if claimed:
            logger.info("Settlement lease %s taken on hold %s", token, hold_id)
        return claimed

    async def release_claim(self, hold_id: uuid.UUID, token: str, audit: AuditEntry | None = None) -> bool:
        return await self._apply(
            hold_id,
            [EscrowHold.settlement_claim == token],
            {"settlement_claim": None, "settlement_claimed_at": None},
            audit,
        )

    async def finish_release(
        self, hold_id: uuid.UUID, token: str, transfer_id: str, audit: AuditEntry
    ) -> bool:
        return await self._apply(
            hold_id,
            [
                EscrowHold.settlement_claim == token,
                EscrowHold.status.in_([EscrowStatus.CAPTURED, EscrowStatus.DISPUTED]),
            ],
            {
                "status": EscrowStatus.RELEASED,
                "released_at": datetime.now(UTC),
                "transfer_id": transfer_id,
                "settlement_claim": None,
                "settlement_claimed_at": None,
            },
            audit,
        )

    async def finish_refund(
        self, hold_id: uuid.UUID, token: str, refund_id: str, reason: str | None, audit: AuditEntry
    ) -> bool:
        return await self._apply(
            hold_id,
            [
                EscrowHold.settlement_claim == token,
                EscrowHold.status.in_([EscrowStatus.CAPTURED, EscrowStatus.DISPUTED]),
            ],
            {
                "status": EscrowStatus.REFUNDED,
                "refunded_at": datetime.now(UTC),
                "refund_id": refund_id,
                "refund_reason": reason,
                "settlement_claim": None,
                "settlement_claimed_at": None,
            },
            audit,
        )

    async def mark_disputed(self, hold_id: uuid.UUID, reason: str, audit: AuditEntry) -> bool:
        now = datetime.now(UTC)
        return await self._apply(
            hold_id,
            [EscrowHold.status == EscrowStatus.CAPTURED, self._claim_free(now)],
            {"status": EscrowStatus.DISPUTED, "dispute_reason": reason},
            audit,
        )
