"""
Operator visibility into the reward ledger and the settlement scheduler.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tipflow.api.dependencies import get_database, get_scheduler
from tipflow.api.schemas.common import SuccessResponse
from tipflow.scheduler.settlement_scheduler import SettlementScheduler
from tipflow.services.ledger import LedgerService


router = APIRouter(tags=["Ledger"])


@router.get("/ledger/summary", response_model=SuccessResponse)
async def ledger_summary(db: AsyncSession = Depends(get_database)):
    """Entry counts per status."""
    counts = await LedgerService(db).summary()
    return SuccessResponse(message="Ledger summary", data=counts)


@router.get("/settlement/status", response_model=SuccessResponse)
async def settlement_status(scheduler: SettlementScheduler = Depends(get_scheduler)):
    return SuccessResponse(message="Settlement scheduler status", data=scheduler.get_status())
