"""
Reward ledger.

Entries are created idempotently with an ``INSERT ... ON CONFLICT DO NOTHING``
against the unique (from, source_event, to) and (from, to, interaction_key)
constraints, so replayed webhooks never double-credit. Every status change is
a single UPDATE guarded by the expected current status; SETTLED is terminal.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, update, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from tipflow.core.database import insert_ignoring_conflicts
from tipflow.core.exceptions import InvalidStateTransitionError
from tipflow.models.ledger import LedgerEntry, LedgerStatus
from tipflow.models.user_config import EngagementAction
from tipflow.utils.validation import normalize_address


logger = structlog.get_logger(__name__)


@dataclass
class PendingReward:
    """A reward the engine approved, ready to be written to the ledger."""
    from_address: str
    to_address: str
    token_address: str
    amount: int
    action: EngagementAction
    source_event: str
    interaction_key: str
    actor_fid: Optional[int] = None
    creator_fid: Optional[int] = None


@dataclass
class RecordResult:
    entry_id: int
    created: bool


class LedgerService:
    """Durable owed-reward records and their guarded state transitions."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.logger = logger.bind(service="ledger")

    async def record_pending(self, reward: PendingReward) -> RecordResult:
        """
        Insert a Pending entry, or return the id of the one already there.
        """
        if isinstance(reward.amount, float) or int(reward.amount) <= 0:
            raise ValueError("Ledger amounts must be positive integers")

        from_address = normalize_address(reward.from_address)
        to_address = normalize_address(reward.to_address)

        stmt = (
            insert_ignoring_conflicts(self.db, LedgerEntry)
            .values(
                from_address=from_address,
                to_address=to_address,
                token_address=normalize_address(reward.token_address),
                amount=int(reward.amount),
                action=EngagementAction(reward.action),
                source_event=reward.source_event,
                interaction_key=reward.interaction_key,
                actor_fid=reward.actor_fid,
                creator_fid=reward.creator_fid,
                status=LedgerStatus.PENDING,
                retry_count=0,
            )
            .returning(LedgerEntry.id)
        )
        entry_id = (await self.db.execute(stmt)).scalar_one_or_none()
        if entry_id is not None:
            self.logger.info(
                "💰 Ledger entry recorded",
                entry_id=entry_id,
                from_address=from_address,
                to_address=to_address,
                amount=int(reward.amount),
                action=EngagementAction(reward.action).value,
            )
            return RecordResult(entry_id=entry_id, created=True)

        result = await self.db.execute(
            select(LedgerEntry.id)
            .where(
                LedgerEntry.from_address == from_address,
                LedgerEntry.to_address == to_address,
                or_(
                    LedgerEntry.source_event == reward.source_event,
                    LedgerEntry.interaction_key == reward.interaction_key,
                ),
            )
            .order_by(LedgerEntry.id)
            .limit(1)
        )
        existing_id = result.scalar_one()
        self.logger.info(
            "Duplicate reward ignored",
            entry_id=existing_id,
            source_event=reward.source_event,
        )
        return RecordResult(entry_id=existing_id, created=False)

    async def get_entries(self, entry_ids: Iterable[int]) -> List[LedgerEntry]:
        ids = list(entry_ids)
        if not ids:
            return []
        result = await self.db.execute(
            select(LedgerEntry).where(LedgerEntry.id.in_(ids)).order_by(LedgerEntry.id)
        )
        return list(result.scalars().all())

    async def list_pending(
        self,
        token_address: str,
        creator_address: Optional[str] = None,
        limit: Optional[int] = None,
        after_id: Optional[int] = None,
        exclude_creators: Iterable[str] = ()
    ) -> List[LedgerEntry]:
        """Pending entries for a token in creation order, optionally after ``after_id``."""
        query = select(LedgerEntry).where(
            LedgerEntry.token_address == normalize_address(token_address),
            LedgerEntry.status == LedgerStatus.PENDING,
        )
        if creator_address:
            query = query.where(LedgerEntry.from_address == normalize_address(creator_address))
        if after_id is not None:
            query = query.where(LedgerEntry.id > after_id)
        excluded = [normalize_address(a) for a in exclude_creators]
        if excluded:
            query = query.where(LedgerEntry.from_address.notin_(excluded))
        query = query.order_by(LedgerEntry.id)
        if limit:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def pending_tokens(self) -> List[str]:
        result = await self.db.execute(
            select(LedgerEntry.token_address)
            .where(LedgerEntry.status == LedgerStatus.PENDING)
            .distinct()
        )
        return sorted(result.scalars().all())

    async def entries_for_batch(self, batch_id: int) -> List[LedgerEntry]:
        result = await self.db.execute(
            select(LedgerEntry).where(LedgerEntry.batch_id == batch_id).order_by(LedgerEntry.id)
        )
        return list(result.scalars().all())

    async def mark_settling(
        self,
        entry_ids: Sequence[int],
        batch_id: int,
        require_all: bool = True
    ) -> int:
        return await self._transition(
            entry_ids,
            (LedgerStatus.PENDING,),
            LedgerStatus.SETTLING,
            {"batch_id": batch_id, "failure_reason": None},
            require_all,
        )

    async def mark_settled(
        self,
        entry_ids: Sequence[int],
        tx_hash: str,
        require_all: bool = False
    ) -> int:
        return await self._transition(
            entry_ids,
            (LedgerStatus.SETTLING,),
            LedgerStatus.SETTLED,
            {"tx_hash": tx_hash, "settled_at": datetime.utcnow(), "failure_reason": None},
            require_all,
        )

    async def mark_failed(
        self,
        entry_ids: Sequence[int],
        reason: str,
        require_all: bool = False
    ) -> int:
        return await self._transition(
            entry_ids,
            (LedgerStatus.PENDING, LedgerStatus.SETTLING),
            LedgerStatus.FAILED,
            {"failure_reason": reason},
            require_all,
        )

    async def return_to_pending(
        self,
        entry_ids: Sequence[int],
        reason: str,
        max_retries: int
    ) -> Tuple[int, int]:
        """
        Send Settling entries back after a failed batch.

        Each entry's retry_count grows by one; entries reaching
        ``max_retries`` become Failed for manual review instead.

        Returns:
            (returned to Pending, moved to Failed)
        """
        ids = list(entry_ids)
        if not ids:
            return 0, 0

        exhausted = await self.db.execute(
            update(LedgerEntry)
            .where(
                LedgerEntry.id.in_(ids),
                LedgerEntry.status == LedgerStatus.SETTLING,
                LedgerEntry.retry_count + 1 >= max_retries,
            )
            .values(
                status=LedgerStatus.FAILED,
                retry_count=LedgerEntry.retry_count + 1,
                failure_reason=reason,
            )
            .execution_options(synchronize_session=False)
        )
        returned = await self.db.execute(
            update(LedgerEntry)
            .where(
                LedgerEntry.id.in_(ids),
                LedgerEntry.status == LedgerStatus.SETTLING,
            )
            .values(
                status=LedgerStatus.PENDING,
                retry_count=LedgerEntry.retry_count + 1,
                batch_id=None,
                failure_reason=reason,
            )
            .execution_options(synchronize_session=False)
        )

        if exhausted.rowcount:
            self.logger.error(
                "⚠️ Ledger entries exhausted retries - manual review needed",
                failed=exhausted.rowcount,
                reason=reason,
            )
        return returned.rowcount, exhausted.rowcount

    async def requeue_failed(self, entry_ids: Optional[Sequence[int]] = None) -> int:
        """Operator action: move Failed entries back to Pending with a fresh retry budget."""
        conditions = [LedgerEntry.status == LedgerStatus.FAILED]
        if entry_ids is not None:
            conditions.append(LedgerEntry.id.in_(list(entry_ids)))
        result = await self.db.execute(
            update(LedgerEntry)
            .where(and_(*conditions))
            .values(status=LedgerStatus.PENDING, retry_count=0, batch_id=None)
            .execution_options(synchronize_session=False)
        )
        self.logger.info("Failed entries requeued", count=result.rowcount)
        return result.rowcount

    async def summary(self) -> Dict[str, int]:
        result = await self.db.execute(
            select(LedgerEntry.status, func.count(LedgerEntry.id)).group_by(LedgerEntry.status)
        )
        counts = {status.value: 0 for status in LedgerStatus}
        for status, count in result.all():
            counts[LedgerStatus(status).value] = count
        return counts

    async def _transition(
        self,
        entry_ids: Sequence[int],
        from_states: Tuple[LedgerStatus, ...],
        target: LedgerStatus,
        values: Dict,
        require_all: bool
    ) -> int:
        ids = list(entry_ids)
        if not ids:
            return 0

        result = await self.db.execute(
            update(LedgerEntry)
            .where(LedgerEntry.id.in_(ids), LedgerEntry.status.in_(from_states))
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        moved = result.rowcount
        if require_all and moved != len(ids):
            raise InvalidStateTransitionError(
                ids, "/".join(s.value for s in from_states), target.value
            )
        if moved != len(ids):
            self.logger.warning(
                "Some ledger entries were not in the expected state",
                target=target.value,
                requested=len(ids),
                moved=moved,
            )
        return moved
