#!/usr/bin/env python3
"""
Database management script for the TipFlow backend.
"""

import asyncio
import sys
from pathlib import Path

# Add backend root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

import typer
from rich.console import Console
from rich.table import Table

from alembic.config import Config
from alembic import command
from tipflow.core.database import init_database, close_database, DatabaseManager, get_async_session
from tipflow.core.logging import setup_logging, get_logger
from tipflow.services.ledger import LedgerService

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="Database management commands")

ALEMBIC_INI = str(Path(__file__).parent.parent / "alembic.ini")


@app.command()
def init():
    """Create all tables directly from the models."""
    async def _init():
        setup_logging()
        await init_database()
        try:
            await DatabaseManager.create_tables()
        finally:
            await close_database()
        console.print("✅ Database initialized successfully!")

    asyncio.run(_init())


@app.command()
def upgrade(revision: str = "head"):
    """Apply migrations."""
    command.upgrade(Config(ALEMBIC_INI), revision)
    console.print(f"✅ Database upgraded to: {revision}")


@app.command()
def downgrade(revision: str):
    """Downgrade database to specific revision."""
    command.downgrade(Config(ALEMBIC_INI), revision)
    console.print(f"⬇️ Database downgraded to: {revision}")


@app.command()
def current():
    """Show current database revision."""
    command.current(Config(ALEMBIC_INI))


@app.command()
def reset(yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation")):
    """Drop all tables (the ledger included)."""
    if not yes and not typer.confirm("Are you sure you want to drop all tables?"):
        console.print("❌ Operation cancelled")
        return

    async def _reset():
        setup_logging()
        await init_database()
        try:
            await DatabaseManager.drop_tables()
        finally:
            await close_database()
        console.print("🗑️ All tables dropped!")

    asyncio.run(_reset())


@app.command()
def health():
    """Check database connectivity and show ledger counts."""
    async def _health():
        setup_logging()
        await init_database()
        try:
            if not await DatabaseManager.health_check():
                console.print("❌ Database health check failed!")
                raise typer.Exit(code=1)

            async with get_async_session() as db:
                counts = await LedgerService(db).summary()
        finally:
            await close_database()

        table = Table(title="Database Status")
        table.add_column("Component", style="cyan")
        table.add_column("Status", style="green")
        table.add_row("Database", "✅ Connected")
        for status, count in counts.items():
            table.add_row(f"Ledger {status}", str(count))
        console.print(table)

    asyncio.run(_health())


if __name__ == "__main__":
    app()
