"""
Chain boundary for batch settlement.

A gateway exposes the batch tip contract's capabilities (roles, batchTip), the
token funds a creator has made available to it, and the transaction plumbing
settlement needs to stay idempotent: sign locally, persist, broadcast, then
look the transaction up by hash.
"""

from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence


@dataclass(frozen=True)
class SignedBatch:
    """A signed batchTip transaction that has not necessarily been broadcast."""
    tx_hash: str
    nonce: int
    raw_transaction: str


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    status: int
    block_number: Optional[int] = None
    gas_used: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status == 1


@dataclass(frozen=True)
class BatchTransfer:
    """Parallel arrays for one batchTip call."""
    froms: List[str]
    tos: List[str]
    tokens: List[str]
    amounts: List[int]

    def __post_init__(self):
        if not (len(self.froms) == len(self.tos) == len(self.tokens) == len(self.amounts)):
            raise ValueError("batchTip arrays must have equal length")

    def __len__(self) -> int:
        return len(self.froms)


class BatchTipGateway(Protocol):
    """Capabilities of the deployed batch tip contract plus tx lookup."""

    executor_address: str
    contract_address: str

    async def owner(self) -> str: ...

    async def is_executor(self, address: str) -> bool: ...

    async def add_executor(self, address: str, owner_private_key: Optional[str] = None) -> str: ...

    async def remove_executor(self, address: str, owner_private_key: Optional[str] = None) -> str: ...

    async def build_batch_tip(self, transfer: BatchTransfer) -> SignedBatch: ...

    async def broadcast(self, raw_transaction: str) -> str: ...

    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]: ...

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Optional[TxReceipt]: ...

    async def get_nonce(self, address: str) -> int: ...

    async def is_known(self, tx_hash: str) -> bool: ...

    async def available_funds(self, token_address: str, owner: str) -> int: ...


def split_columns(rows: Sequence[tuple]) -> BatchTransfer:
    """(from, to, token, amount) rows to parallel arrays."""
    froms, tos, tokens, amounts = [], [], [], []
    for from_address, to_address, token_address, amount in rows:
        froms.append(from_address)
        tos.append(to_address)
        tokens.append(token_address)
        amounts.append(int(amount))
    return BatchTransfer(froms, tos, tokens, amounts)
