"""
Batch settlement of pending ledger entries.

Per token, one cycle:

1. fail fast unless the executor key is authorized on the contract
2. recover batches an earlier cycle left behind: a COLLECTED batch was
   never signed, so its entries go back to PENDING; a SUBMITTED batch is
   reconciled against the chain
3. collect up to ``batch_size`` pending entries in creation order, skipping
   creators whose balance or allowance cannot cover their next entry
   (batch COLLECTED, entries SETTLING)
4. sign batchTip locally and persist hash, nonce and raw bytes
   (batch SUBMITTED), then broadcast
5. wait for the receipt: success confirms the batch and settles every
   entry with the shared hash; a revert or rejected submission returns the
   entries to PENDING with one more retry, or FAILED once retries run out;
   no receipt in time leaves the batch SUBMITTED for step 2 next cycle

Reconciling a SUBMITTED batch never signs anything new. A receipt finalizes
it. An executor nonce that moved past the batch nonce with still no receipt
means the transaction was dropped. A transaction the node still holds is
waited on, and one it has forgotten is rebroadcast from the stored bytes.

A per-token lock keeps at most one submission per token in flight, and a
submission lock keeps executor nonces unique across tokens.
"""

import asyncio
import hashlib
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

import structlog
from sqlalchemy import func, select

from tipflow.core.config import settings
from tipflow.core.database import get_async_session
from tipflow.core.exceptions import (
    ChainError, ExecutorNotAuthorizedError, ExternalServiceError, TransientExternalError
)
from tipflow.models.ledger import BatchStatus, LedgerEntry, LedgerStatus, SettlementBatch
from tipflow.services.ledger import LedgerService
from tipflow.services.notification_dispatcher import NotificationDispatcher
from tipflow.services.settlement.gateway import BatchTipGateway, TxReceipt, split_columns
from tipflow.utils.validation import normalize_address


logger = structlog.get_logger(__name__)

OPEN_BATCH_STATUSES = (BatchStatus.COLLECTED, BatchStatus.SUBMITTED)


class SettlementOutcome(Enum):
    NOTHING_PENDING = "nothing_pending"
    UNDERFUNDED = "underfunded"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    IN_FLIGHT = "in_flight"


@dataclass
class SettlementResult:
    """Result of one settlement cycle for one token."""
    token_address: str
    outcome: SettlementOutcome
    batch_id: Optional[int] = None
    tx_hash: Optional[str] = None
    entry_count: int = 0
    returned_to_pending: int = 0
    failed: int = 0
    error: Optional[str] = None
    reconciled: List[int] = field(default_factory=list)
    underfunded_creators: List[str] = field(default_factory=list)


def compute_batch_key(token_address: str, sequence: int, entry_ids: List[int]) -> str:
    """
    Idempotency key of a batch: sha256 over the token, the per-token batch
    sequence number and the sorted member entry ids.
    """
    joined = ",".join(str(i) for i in sorted(entry_ids))
    return hashlib.sha256(f"{token_address}|{sequence}|{joined}".encode()).hexdigest()


class SettlementService:
    """Drains pending ledger entries into executor-authorized batchTip calls."""

    def __init__(
        self,
        gateway: BatchTipGateway,
        notifier: Optional[NotificationDispatcher] = None,
        batch_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        confirmation_timeout: Optional[float] = None
    ):
        self.logger = logger.bind(service="settlement")
        self.gateway = gateway
        self.notifier = notifier
        self.batch_size = batch_size or settings.settlement_batch_size
        self.max_retries = max_retries or settings.settlement_max_retries
        self.confirmation_timeout = (
            confirmation_timeout
            if confirmation_timeout is not None
            else settings.settlement_confirmation_timeout_seconds
        )
        self._token_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._submit_lock = asyncio.Lock()

    async def ensure_authorized(self) -> None:
        """Raise ExecutorNotAuthorizedError unless our key may call batchTip."""
        executor = self.gateway.executor_address
        if not await self.gateway.is_executor(executor):
            self.logger.error(
                "🚫 Backend wallet is not an executor - settlement paused until an owner adds it",
                executor=executor,
                contract=self.gateway.contract_address,
            )
            raise ExecutorNotAuthorizedError(executor, self.gateway.contract_address)

    async def settle_all(self) -> List[SettlementResult]:
        """One cycle over every token with pending or unfinished work."""
        await self.ensure_authorized()

        async with get_async_session() as db:
            tokens = set(await LedgerService(db).pending_tokens())
            result = await db.execute(
                select(SettlementBatch.token_address)
                .where(SettlementBatch.status.in_(OPEN_BATCH_STATUSES))
                .distinct()
            )
            tokens.update(result.scalars().all())

        if not tokens:
            return []

        results = await asyncio.gather(
            *(self.settle_token(token, authorized=True) for token in sorted(tokens)),
            return_exceptions=True
        )
        settled: List[SettlementResult] = []
        for token, result in zip(sorted(tokens), results):
            if isinstance(result, ExecutorNotAuthorizedError):
                raise result
            if isinstance(result, BaseException):
                self.logger.error("Settlement cycle failed for token", token=token, error=str(result))
                continue
            settled.append(result)
        return settled

    async def settle_token(self, token_address: str, authorized: bool = False) -> SettlementResult:
        token = normalize_address(token_address)
        async with self._token_locks[token]:
            if not authorized:
                await self.ensure_authorized()

            async with get_async_session() as db:
                result = await db.execute(
                    select(SettlementBatch.id, SettlementBatch.status)
                    .where(
                        SettlementBatch.token_address == token,
                        SettlementBatch.status.in_(OPEN_BATCH_STATUSES),
                    )
                    .order_by(SettlementBatch.id)
                )
                open_batches = list(result.all())

            reconciled: List[int] = []
            for batch_id, status in open_batches:
                if status == BatchStatus.COLLECTED:
                    await self._fail_batch(batch_id, token, "batch abandoned before submission")
                    reconciled.append(batch_id)
                    continue

                outcome = await self.reconcile_batch(batch_id)
                if outcome.outcome == SettlementOutcome.IN_FLIGHT:
                    outcome.reconciled = reconciled + [batch_id]
                    return outcome
                reconciled.append(batch_id)

            result = await self._settle_new_batch(token)
            result.reconciled = reconciled
            return result

    async def _collect_affordable(
        self,
        ledger: LedgerService,
        token: str
    ) -> Tuple[List[LedgerEntry], List[str]]:
        """
        Pending entries the creators can currently pay for, in creation order.

        A creator whose next entry exceeds the funds left after the entries
        already selected is skipped for the rest of the cycle, so their
        entries stay PENDING without being charged a retry.
        """
        selected: List[LedgerEntry] = []
        remaining: Dict[str, int] = {}
        underfunded: Set[str] = set()
        after_id: Optional[int] = None

        while len(selected) < self.batch_size:
            page = await ledger.list_pending(
                token,
                limit=self.batch_size,
                after_id=after_id,
                exclude_creators=underfunded,
            )
            if not page:
                break

            for entry in page:
                after_id = entry.id
                creator = entry.from_address
                if creator in underfunded:
                    continue
                if creator not in remaining:
                    remaining[creator] = await self.gateway.available_funds(token, creator)
                if entry.amount > remaining[creator]:
                    underfunded.add(creator)
                    continue
                remaining[creator] -= entry.amount
                selected.append(entry)
                if len(selected) == self.batch_size:
                    break

        if underfunded:
            self.logger.warning(
                "💸 Creators cannot cover pending tips, entries left pending",
                token=token,
                creators=sorted(underfunded),
            )
        return selected, sorted(underfunded)

    async def _settle_new_batch(self, token: str) -> SettlementResult:
        async with get_async_session() as db:
            ledger = LedgerService(db)
            entries, underfunded = await self._collect_affordable(ledger, token)
            if not entries:
                outcome = (
                    SettlementOutcome.UNDERFUNDED if underfunded else SettlementOutcome.NOTHING_PENDING
                )
                return SettlementResult(token, outcome, underfunded_creators=underfunded)

            entry_ids = [entry.id for entry in entries]
            sequence = await db.scalar(
                select(func.count(SettlementBatch.id)).where(SettlementBatch.token_address == token)
            )
            batch = SettlementBatch(
                batch_key=compute_batch_key(token, sequence, entry_ids),
                token_address=token,
                status=BatchStatus.COLLECTED,
                entry_count=len(entries),
                total_amount=sum(entry.amount for entry in entries),
            )
            db.add(batch)
            await db.flush()
            await ledger.mark_settling(entry_ids, batch.id)

            batch_id = batch.id
            transfer = split_columns([
                (entry.from_address, entry.to_address, entry.token_address, entry.amount)
                for entry in entries
            ])

        self.logger.info(
            "📦 Batch collected",
            batch_id=batch_id,
            token=token,
            entries=len(entry_ids),
            underfunded_creators=len(underfunded),
        )

        async with self._submit_lock:
            try:
                signed = await self.gateway.build_batch_tip(transfer)

                async with get_async_session() as db:
                    batch = await db.get(SettlementBatch, batch_id)
                    batch.tx_hash = signed.tx_hash
                    batch.nonce = signed.nonce
                    batch.raw_transaction = signed.raw_transaction
                    batch.status = BatchStatus.SUBMITTED
                    batch.submitted_at = datetime.utcnow()
                    batch.attempt = 1
            except (ChainError, ExternalServiceError) as e:
                result = await self._fail_batch(batch_id, token, f"submission failed: {e.message}")
                result.underfunded_creators = underfunded
                return result
            except Exception as e:
                self.logger.error(
                    "💥 Unexpected error while signing batch",
                    batch_id=batch_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result = await self._fail_batch(batch_id, token, f"submission failed: {e}")
                result.underfunded_creators = underfunded
                return result

            try:
                await self.gateway.broadcast(signed.raw_transaction)
            except TransientExternalError as e:
                # Outcome unknown: the node may have accepted it
                self.logger.warning(
                    "Broadcast outcome unknown, will reconcile",
                    batch_id=batch_id,
                    tx_hash=signed.tx_hash,
                    error=e.message,
                )
                return SettlementResult(
                    token, SettlementOutcome.IN_FLIGHT, batch_id, signed.tx_hash, len(entry_ids),
                    underfunded_creators=underfunded,
                )
            except ChainError as e:
                result = await self._fail_batch(batch_id, token, f"submission failed: {e.message}")
                result.underfunded_creators = underfunded
                return result

        self.logger.info("🚀 Batch broadcast", batch_id=batch_id, tx_hash=signed.tx_hash)
        result = await self._await_confirmation(batch_id, token, signed.tx_hash)
        result.underfunded_creators = underfunded
        return result

    async def reconcile_batch(self, batch_id: int) -> SettlementResult:
        """Resolve a SUBMITTED batch from chain state before anything new is sent."""
        async with get_async_session() as db:
            batch = await db.get(SettlementBatch, batch_id)
            token, tx_hash = batch.token_address, batch.tx_hash
            nonce, raw = batch.nonce, batch.raw_transaction

        self.logger.info("🔁 Reconciling submitted batch", batch_id=batch_id, tx_hash=tx_hash)

        receipt = await self.gateway.get_receipt(tx_hash)
        if receipt is not None:
            return await self._finalize(batch_id, token, receipt)

        current_nonce = await self.gateway.get_nonce(self.gateway.executor_address)
        if current_nonce > nonce:
            # The batch may have been mined after the receipt lookup
            receipt = await self.gateway.get_receipt(tx_hash)
            if receipt is not None:
                return await self._finalize(batch_id, token, receipt)
            return await self._fail_batch(
                batch_id, token, "transaction dropped: executor nonce consumed without receipt"
            )

        if await self.gateway.is_known(tx_hash):
            self.logger.info("Batch still pending on the node", batch_id=batch_id, tx_hash=tx_hash)
            return await self._await_confirmation(batch_id, token, tx_hash)

        try:
            await self.gateway.broadcast(raw)
        except TransientExternalError as e:
            self.logger.warning("Rebroadcast failed, still in flight", batch_id=batch_id, error=e.message)
            return SettlementResult(token, SettlementOutcome.IN_FLIGHT, batch_id, tx_hash)
        except ChainError as e:
            # A rejection such as "nonce too low" can mean the original was just mined
            receipt = await self.gateway.get_receipt(tx_hash)
            if receipt is not None:
                return await self._finalize(batch_id, token, receipt)
            return await self._fail_batch(batch_id, token, f"rebroadcast rejected: {e.message}")

        async with get_async_session() as db:
            batch = await db.get(SettlementBatch, batch_id)
            batch.attempt += 1

        return await self._await_confirmation(batch_id, token, tx_hash)

    async def _await_confirmation(self, batch_id: int, token: str, tx_hash: str) -> SettlementResult:
        try:
            receipt = await self.gateway.wait_for_receipt(tx_hash, self.confirmation_timeout)
        except TransientExternalError as e:
            self.logger.warning("Receipt lookup failed", batch_id=batch_id, error=e.message)
            receipt = None

        if receipt is None:
            self.logger.warning(
                "⏳ No receipt before timeout, batch left for reconciliation",
                batch_id=batch_id,
                tx_hash=tx_hash,
            )
            return SettlementResult(token, SettlementOutcome.IN_FLIGHT, batch_id, tx_hash)

        return await self._finalize(batch_id, token, receipt)

    async def _finalize(self, batch_id: int, token: str, receipt: TxReceipt) -> SettlementResult:
        if not receipt.success:
            return await self._fail_batch(batch_id, token, f"batch reverted in tx {receipt.tx_hash}")

        async with get_async_session() as db:
            batch = await db.get(SettlementBatch, batch_id)
            batch.status = BatchStatus.CONFIRMED
            batch.confirmed_at = datetime.utcnow()
            batch.error_message = None

            ledger = LedgerService(db)
            entries = [
                e for e in await ledger.entries_for_batch(batch_id)
                if e.status == LedgerStatus.SETTLING
            ]
            settled = await ledger.mark_settled([e.id for e in entries], receipt.tx_hash)

            payouts: Dict[str, List[int]] = defaultdict(list)
            for entry in entries:
                payouts[entry.to_address].append(entry.amount)

        self.logger.info(
            "✅ Batch confirmed",
            batch_id=batch_id,
            tx_hash=receipt.tx_hash,
            settled=settled,
            block=receipt.block_number,
        )
        self._notify_recipients(batch_id, token, payouts)

        return SettlementResult(
            token, SettlementOutcome.CONFIRMED, batch_id, receipt.tx_hash, settled
        )

    async def _fail_batch(self, batch_id: int, token: str, reason: str) -> SettlementResult:
        async with get_async_session() as db:
            batch = await db.get(SettlementBatch, batch_id)
            batch.status = BatchStatus.REVERTED
            batch.error_message = reason

            ledger = LedgerService(db)
            ids = [e.id for e in await ledger.entries_for_batch(batch_id)]
            returned, failed = await ledger.return_to_pending(ids, reason, self.max_retries)
            tx_hash = batch.tx_hash

        self.logger.warning(
            "↩️ Batch failed, entries returned",
            batch_id=batch_id,
            reason=reason,
            returned_to_pending=returned,
            failed=failed,
        )
        return SettlementResult(
            token,
            SettlementOutcome.REVERTED,
            batch_id,
            tx_hash,
            len(ids),
            returned_to_pending=returned,
            failed=failed,
            error=reason,
        )

    def _notify_recipients(self, batch_id: int, token: str, payouts: Dict[str, List[int]]) -> None:
        if not self.notifier:
            return
        for address, amounts in payouts.items():
            self.notifier.notify_in_background(
                self.notifier.notify_tip_received(
                    address,
                    amount=sum(amounts),
                    token_address=token,
                    entry_count=len(amounts),
                    batch_id=batch_id,
                )
            )


def create_gateway() -> BatchTipGateway:
    """Gateway for the configured chain mode."""
    if settings.chain_mode == "local":
        from eth_account import Account
        from tipflow.services.settlement.local_contract import LocalBatchTipContract, LocalChainGateway

        executor = (
            Account.from_key(settings.executor_private_key).address
            if settings.executor_private_key
            else Account.create().address
        )
        contract = LocalBatchTipContract(owner=executor, enforce_balances=False)
        contract.roles.add_executor(executor, executor)
        return LocalChainGateway(contract, executor)

    from tipflow.services.settlement.web3_gateway import Web3BatchTipGateway
    return Web3BatchTipGateway()


# Global settlement service instance
_settlement_service: Optional[SettlementService] = None


def get_settlement_service() -> SettlementService:
    global _settlement_service
    if _settlement_service is None:
        from tipflow.services.notification_dispatcher import get_notification_dispatcher
        _settlement_service = SettlementService(create_gateway(), get_notification_dispatcher())
    return _settlement_service
