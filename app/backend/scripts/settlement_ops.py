#!/usr/bin/env python3
"""
Settlement operations: executor roles, manual settlement and ledger upkeep.
"""

import asyncio
import sys
from pathlib import Path
from typing import List, Optional

# Add backend root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

import typer
from rich.console import Console
from rich.table import Table

from tipflow.core.config import settings
from tipflow.core.database import init_database, close_database, get_async_session
from tipflow.core.exceptions import TipFlowException
from tipflow.core.logging import setup_logging
from tipflow.services.ledger import LedgerService
from tipflow.services.notification_dispatcher import get_notification_dispatcher
from tipflow.services.settlement import SettlementService, create_gateway

console = Console()
app = typer.Typer(help="Settlement operations")


def _fail(error: TipFlowException) -> None:
    console.print(f"❌ {error.message}")
    if error.details:
        console.print(error.details)
    raise typer.Exit(code=1)


@app.command("executor-status")
def executor_status():
    """Show the contract owner and whether the backend wallet is an executor."""
    async def _status():
        gateway = create_gateway()
        owner = await gateway.owner()
        authorized = await gateway.is_executor(gateway.executor_address)

        table = Table(title="Batch Tip Contract")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Chain mode", settings.chain_mode)
        table.add_row("Contract", gateway.contract_address)
        table.add_row("Owner", owner)
        table.add_row("Backend wallet", gateway.executor_address)
        table.add_row("Is executor", "✅ yes" if authorized else "❌ no")
        console.print(table)

    setup_logging()
    try:
        asyncio.run(_status())
    except TipFlowException as e:
        _fail(e)


@app.command("add-executor")
def add_executor(
    address: Optional[str] = typer.Argument(None, help="Executor to add (defaults to the backend wallet)"),
    owner_key: Optional[str] = typer.Option(
        None, "--owner-key", envvar="OWNER_PRIVATE_KEY", help="Contract owner private key"
    )
):
    """Authorize an executor. Requires the contract owner's key."""
    async def _add():
        gateway = create_gateway()
        target = address or gateway.executor_address
        if await gateway.is_executor(target):
            console.print(f"ℹ️ {target} is already an executor")
            return
        tx_hash = await gateway.add_executor(target, owner_private_key=owner_key)
        console.print(f"✅ Executor added: {target}")
        console.print(f"   tx: {tx_hash}")

    setup_logging()
    try:
        asyncio.run(_add())
    except TipFlowException as e:
        _fail(e)


@app.command()
def settle(token: Optional[str] = typer.Option(None, help="Only settle this token")):
    """Run one settlement cycle now."""
    async def _settle():
        await init_database()
        dispatcher = get_notification_dispatcher()
        try:
            service = SettlementService(create_gateway(), notifier=dispatcher)
            if token:
                results = [await service.settle_token(token)]
            else:
                results = await service.settle_all()
            await dispatcher.drain()
        finally:
            await close_database()

        if not results:
            console.print("Nothing to settle")
            return

        table = Table(title="Settlement Results")
        table.add_column("Token", style="cyan")
        table.add_column("Outcome")
        table.add_column("Batch")
        table.add_column("Entries", justify="right")
        table.add_column("Tx hash")
        table.add_column("Underfunded", justify="right")
        for result in results:
            table.add_row(
                result.token_address,
                result.outcome.value,
                str(result.batch_id or "-"),
                str(result.entry_count),
                result.tx_hash or "-",
                str(len(result.underfunded_creators)),
            )
        console.print(table)

    setup_logging()
    try:
        asyncio.run(_settle())
    except TipFlowException as e:
        _fail(e)


@app.command("ledger-summary")
def ledger_summary():
    """Count ledger entries per status."""
    async def _summary():
        await init_database()
        try:
            async with get_async_session() as db:
                counts = await LedgerService(db).summary()
        finally:
            await close_database()

        table = Table(title="Ledger")
        table.add_column("Status", style="cyan")
        table.add_column("Entries", justify="right", style="green")
        for status, count in counts.items():
            table.add_row(status, str(count))
        console.print(table)

    setup_logging()
    asyncio.run(_summary())


@app.command("requeue-failed")
def requeue_failed(
    entry_ids: Optional[List[int]] = typer.Argument(None, help="Entry ids (default: all failed)")
):
    """Move failed entries back to pending with a fresh retry budget."""
    async def _requeue():
        await init_database()
        try:
            async with get_async_session() as db:
                return await LedgerService(db).requeue_failed(entry_ids or None)
        finally:
            await close_database()

    setup_logging()
    count = asyncio.run(_requeue())
    console.print(f"🔁 Requeued {count} failed entries")


if __name__ == "__main__":
    app()
