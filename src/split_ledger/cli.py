"""CLI for Split Ledger."""

import typer

from .ledger.cli import app as ledger_app
from .mcp_server import run_server

app = typer.Typer(
    name="split-ledger",
    help="Shared-expense balances and debt settlement for groups",
)

app.add_typer(ledger_app, name="ledger", help="Groups, expenses and settlements")


@app.command()
def mcp():
    """Start the MCP server for assistant integration."""
    run_server()


if __name__ == "__main__":
    app()
