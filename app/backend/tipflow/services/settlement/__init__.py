"""
Batch settlement: gateways to the batch tip contract and the settlement service.
"""

from .gateway import BatchTipGateway, BatchTransfer, SignedBatch, TxReceipt
from .service import (
    SettlementService,
    SettlementResult,
    SettlementOutcome,
    compute_batch_key,
    create_gateway,
    get_settlement_service,
)

__all__ = [
    "BatchTipGateway",
    "BatchTransfer",
    "SignedBatch",
    "TxReceipt",
    "SettlementService",
    "SettlementResult",
    "SettlementOutcome",
    "compute_batch_key",
    "create_gateway",
    "get_settlement_service",
]
