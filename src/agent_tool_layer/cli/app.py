"""CLI for Agent Tool Layer - operate the escrow ledger and settlement workers."""

from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

app = typer.Typer(
    name="agent-tool-layer",
    help="Pay-per-use tool execution with escrowed balances and batched on-chain settlement.",
    no_args_is_help=True,
)
console = Console()

_base_path: Optional[Path] = None


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        console.print(f"agent-tool-layer {version('agent-tool-layer')}")
        raise typer.Exit()


@app.callback()
def main(
    directory: Optional[Path] = typer.Option(
        None,
        "--dir",
        "-d",
        help="Directory containing .agent-tool-layer (defaults to the current directory)",
        envvar="AGENT_TOOL_LAYER_DIR",
    ),
    log_level: str = typer.Option("WARNING", "--log-level", "-l", help="Python log level"),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """Pay-per-use tool execution with escrowed balances and batched on-chain settlement."""
    global _base_path
    _base_path = directory
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


def _run(coro):
    """Run an async function synchronously."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor() as pool:
                return pool.submit(asyncio.run, coro).result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


async def _load():
    from agent_tool_layer.core.service import SettlementService

    try:
        return await SettlementService.load(_base_path)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


# ------------------------------------------------------------------
# init
# ------------------------------------------------------------------


@app.command()
def init(
    name: str = typer.Option("Agent Tool Layer", "--name", "-n", help="Deployment name"),
    default_chain: str = typer.Option("kite", "--default-chain", help="Chain used when X-Payment-Chain is absent"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing config.yaml"),
):
    """Create .agent-tool-layer/config.yaml and the settlement database."""
    from agent_tool_layer.config import AppConfig, get_config_path
    from agent_tool_layer.core.service import SettlementService

    config_path = get_config_path(_base_path)
    if config_path.exists() and not force:
        console.print(f"[yellow]Already initialized at {config_path}[/yellow] (use --force to overwrite)")
        raise typer.Exit(1)

    config = AppConfig(name=name, default_chain=default_chain)
    if config.chain(default_chain) is None:
        console.print(f"[red]Unknown chain '{default_chain}'.[/red]")
        raise typer.Exit(1)

    async def _init():
        service = await SettlementService.init(_base_path, config=config)
        db_path = service.db.db_path
        await service.shutdown()
        return db_path

    db_path = _run(_init())

    console.print(Panel(
        f"[bold green]'{name}' initialized![/bold green]\n\n"
        f"Config: {config_path}\n"
        f"Database: {db_path}\n"
        f"Default chain: [cyan]{default_chain}[/cyan]\n\n"
        f"Next steps:\n"
        f"  export RELAYER_PRIVATE_KEY=...\n"
        f"  export BASE_ESCROW_CONTRACT=0x... KITE_ESCROW_CONTRACT=0x...\n"
        f"  add priced tools under 'tools:' in config.yaml\n"
        f"  agent-tool-layer serve",
        title="Agent Tool Layer",
    ))


# ------------------------------------------------------------------
# serve
# ------------------------------------------------------------------


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to serve on"),
    host: Optional[str] = typer.Option(None, "--host", help="Host to bind to"),
):
    """Run the HTTP API together with the per-chain settlement workers."""
    from agent_tool_layer.config import get_config_path, load_config
    from agent_tool_layer.server.app import run_server

    config_path = get_config_path(_base_path)
    if not config_path.exists():
        console.print("[red]No deployment found.[/red] Run 'agent-tool-layer init' first.")
        raise typer.Exit(1)
    server_cfg = load_config(config_path).server
    host = host or server_cfg.host
    port = port or server_cfg.port

    console.print(f"[bold green]Starting API at http://{host}:{port}[/bold green]")
    run_server(host=host, port=port, base_path=_base_path)


# ------------------------------------------------------------------
# ledger
# ------------------------------------------------------------------


@app.command()
def balance(
    agent: str = typer.Argument(..., help="Agent wallet address"),
):
    """Show an agent's escrow balance on every chain."""

    async def _balance():
        service = await _load()
        try:
            return await service.balances(agent)
        finally:
            await service.shutdown()

    balances = _run(_balance())

    table = Table(title=f"Escrow - {agent}")
    table.add_column("Chain", style="cyan")
    table.add_column("Balance", justify="right", style="bold")
    table.add_column("Reserved", justify="right")
    table.add_column("Available", justify="right", style="green")
    for b in balances:
        table.add_row(b.chain, str(b.balance), str(b.reserved), str(b.available))
    console.print(table)


@app.command()
def credit(
    agent: str = typer.Argument(..., help="Agent wallet address"),
    amount: int = typer.Argument(..., min=1, help="Amount in the chain's smallest unit"),
    chain: str = typer.Option(..., "--chain", "-c", help="Chain to credit"),
    proof_id: Optional[str] = typer.Option(
        None, "--proof-id", help="Idempotency key, e.g. the deposit tx hash"
    ),
):
    """Credit an escrow deposit that was verified out of band."""
    key = (proof_id or f"manual-{uuid.uuid4().hex[:12]}").lower()

    async def _credit():
        service = await _load()
        try:
            if chain not in service.chains:
                console.print(f"[red]Chain '{chain}' is not configured.[/red]")
                raise typer.Exit(1)
            return await service.ledger.credit(agent, chain, amount, proof_id=key)
        finally:
            await service.shutdown()

    result = _run(_credit())
    if result.credited:
        console.print(f"[green]Credited {amount} on {chain}.[/green] Balance: {result.balance}")
    else:
        console.print(f"[yellow]Proof {key} was already credited.[/yellow] Balance: {result.balance}")


@app.command()
def audit(
    agent: str = typer.Argument(..., help="Agent wallet address"),
    chain: str = typer.Option(..., "--chain", "-c", help="Chain to audit"),
):
    """Replay the ledger log and check it against the stored balance."""
    from agent_tool_layer.errors import LedgerInvariantViolation

    async def _audit():
        service = await _load()
        try:
            return await service.ledger.replay(agent, chain), await service.ledger.history(agent, chain)
        finally:
            await service.shutdown()

    try:
        replayed, entries = _run(_audit())
    except LedgerInvariantViolation as e:
        console.print(Panel(f"[bold red]{e}[/bold red]", title="Ledger audit FAILED", border_style="red"))
        raise typer.Exit(2)

    table = Table(title=f"Ledger - {agent} on {chain}")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Kind", style="cyan")
    table.add_column("Amount", justify="right")
    table.add_column("Balance", justify="right", style="bold")
    table.add_column("Reserved", justify="right")
    table.add_column("Reference", style="dim")
    for e in entries:
        table.add_row(
            str(e.id), e.kind.value, str(e.amount),
            str(e.balance_after), str(e.reserved_after), e.reference,
        )
    console.print(table)
    console.print(
        f"[green]OK[/green] balance={replayed.balance} reserved={replayed.reserved} "
        f"({len(entries)} entries)"
    )


# ------------------------------------------------------------------
# settlement
# ------------------------------------------------------------------


@app.command()
def settle(
    chain: Optional[str] = typer.Argument(None, help="Chain to settle (default: all)"),
):
    """Run one settlement batch now, outside the server's schedule."""

    async def _settle():
        service = await _load()
        try:
            names = [chain] if chain else service.chains.names()
            reports = []
            for name in names:
                if name not in service.scheduler.workers:
                    console.print(f"[red]Chain '{name}' is not configured.[/red]")
                    raise typer.Exit(1)
                reports.append(await service.scheduler.run_now(name))
            return reports
        finally:
            await service.shutdown()

    reports = _run(_settle())

    table = Table(title="Settlement run")
    table.add_column("Chain", style="cyan")
    table.add_column("Confirmed", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Unresolved", justify="right", style="yellow")
    table.add_column("Settled", justify="right", style="bold")
    for r in reports:
        table.add_row(
            r.chain, str(len(r.confirmed)), str(len(r.failed)),
            str(len(r.unresolved)), str(r.settled_amount),
        )
    console.print(table)


@app.command()
def executions(
    agent: str = typer.Argument(..., help="Agent wallet address"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum rows"),
):
    """List an agent's most recent executions."""

    async def _executions():
        service = await _load()
        try:
            return await service.store.list_by_agent(agent, limit=limit)
        finally:
            await service.shutdown()

    records = _run(_executions())
    if not records:
        console.print("[dim]No executions recorded yet.[/dim]")
        return

    table = Table(title=f"Executions - {agent}")
    table.add_column("ID", style="dim")
    table.add_column("Tool", style="cyan")
    table.add_column("Chain")
    table.add_column("Cost", justify="right")
    table.add_column("Status")
    table.add_column("Tx", style="dim")
    status_style = {"pending": "yellow", "success": "green", "failed": "red"}
    for r in records:
        style = status_style.get(r.status.value, "white")
        table.add_row(
            r.id, r.tool_id, r.chain, str(r.cost),
            f"[{style}]{r.status.value}[/{style}]", r.tx_id or "",
        )
    console.print(table)


@app.command()
def batches(
    chain: Optional[str] = typer.Option(None, "--chain", "-c", help="Only this chain"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum rows"),
):
    """List confirmed settlement batches."""

    async def _batches():
        service = await _load()
        try:
            return await service.batches.list_batches(chain=chain, limit=limit), service.chains
        finally:
            await service.shutdown()

    rows, chains = _run(_batches())
    if not rows:
        console.print("[dim]No settlement batches yet.[/dim]")
        return

    table = Table(title="Settlement batches")
    table.add_column("Batch", style="dim")
    table.add_column("Chain", style="cyan")
    table.add_column("Agent")
    table.add_column("Tool owner")
    table.add_column("Executions", justify="right")
    table.add_column("Amount", justify="right", style="bold")
    table.add_column("Tx")
    for b in rows:
        tx = (chains.get(b.chain).tx_url(b.tx_id) if b.chain in chains else "") or b.tx_id
        table.add_row(
            b.id, b.chain, b.agent, b.counterparty,
            str(len(b.execution_ids)), str(b.amount), tx,
        )
    console.print(table)


@app.command()
def chains():
    """List configured settlement chains."""
    from agent_tool_layer.chain.chains import ChainRegistry
    from agent_tool_layer.config import get_config_path, load_config

    config_path = get_config_path(_base_path)
    if not config_path.exists():
        console.print("[red]No deployment found.[/red] Run 'agent-tool-layer init' first.")
        raise typer.Exit(1)
    config = load_config(config_path)

    table = Table(title="Chains")
    table.add_column("Name", style="bold")
    table.add_column("Chain ID", justify="right")
    table.add_column("Asset", style="cyan")
    table.add_column("Escrow")
    table.add_column("RPC", style="dim")
    for c in ChainRegistry.from_configs(config.chains):
        escrow = c.escrow_address
        if not escrow or escrow.startswith("${"):
            escrow = f"[yellow]{escrow or 'unset'}[/yellow]"
        marker = " (default)" if c.name == config.default_chain else ""
        table.add_row(f"{c.name}{marker}", str(c.chain_id), c.native_symbol, escrow, c.rpc_url)
    console.print(table)
