import asyncio, contextlib, signal
import click
from rich.console import Console
from rich.progress import (
    Progress, BarColumn, TextColumn, TimeElapsedColumn,
    TimeRemainingColumn, MofNCompleteColumn, SpinnerColumn
)
from rich.table import Table

from .adapters.manifest_jsonl import JSONLManifest, run_manifest_path
from .adapters.parquet_export import export_balances, export_ledger, write_balances
from .adapters.rpc_httpx import HttpxRPC
from .adapters.sql_store import SqlLedgerStore
from .application import use_cases
from .application.rebuild import rebuild_state, snapshot_at, verify_supply
from .config import Settings
from .domain.errors import NftLedgerError
from .domain.models import BlockRange, SyncReport
from .domain.value_types import Address
from .logs import configure_logging

console = Console()

KIND = click.Choice(["ERC721", "ERC1155"], case_sensitive=False)


def _make_rpc(settings: Settings) -> HttpxRPC:
    if not settings.rpc_url:
        raise click.UsageError("pass --rpc or set NFTLEDGER_RPC_URL")
    return HttpxRPC(settings.rpc_url, timeout_s=settings.fetch.timeout_s)


def _run(settings: Settings, fn, *, rpc: bool = False):
    """Open store (+ RPC), run `fn(store[, rpc])`, close; domain failures become ClickException."""
    async def main():
        client = _make_rpc(settings) if rpc else None
        store = SqlLedgerStore(settings.database_url)
        try:
            await store.migrate()
            return await (fn(store, client) if rpc else fn(store))
        finally:
            if client is not None:
                await client.aclose()
            store.dispose()
    try:
        return asyncio.run(main())
    except (NftLedgerError, ValueError) as e:
        raise click.ClickException(str(e))


def _print_report(rep: SyncReport, title: str = "sync") -> None:
    t = Table(title=f"{title} {rep.contract_address} ({rep.contract_kind})", show_header=False)
    t.add_row("requested", str(rep.requested) if rep.requested else "-")
    t.add_row("status", rep.status)
    t.add_row("blocks", f"{rep.processed_blocks:,}/{rep.total_blocks:,}")
    t.add_row("logs", f"{rep.logs_fetched:,}")
    t.add_row("events", f"{rep.events_found:,}")
    t.add_row("[green]inserted[/]", f"{rep.events_inserted:,}")
    t.add_row("[yellow]duplicates[/]", f"{rep.duplicates_skipped:,}")
    t.add_row("[red]undecodable[/]", f"{rep.undecodable_logs:,}")
    console.print(t)
    for u in rep.unresolved:
        console.print(f"[red]unresolved[/] {u.range} {u.reason} {u.error or ''}")


@click.group()
@click.option("--db", "database_url", default=None, help="SQLAlchemy URL (env NFTLEDGER_DATABASE_URL)")
@click.option("--rpc", "rpc_url", default=None, help="JSON-RPC endpoint (env NFTLEDGER_RPC_URL)")
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
@click.option("--json-logs", is_flag=True, default=False, help="Render logs as JSON lines")
@click.pass_context
def cli(ctx, database_url, rpc_url, log_level, json_logs):
    """nftledger: ERC-721/1155 transfer ledger and holder-state rebuilder."""
    settings = Settings.from_env().with_overrides(
        database_url=database_url, rpc_url=rpc_url, log_level=log_level, log_json=json_logs or None,
    )
    configure_logging(settings.log_level, json=settings.log_json)
    ctx.obj = settings


@cli.command("migrate")
@click.pass_obj
def migrate_cmd(settings: Settings):
    """Apply pending schema migrations."""
    version = _run(settings, lambda store: store.migrate())
    console.print(f"[bold]schema[/] v{version}")


@cli.command("sync")
@click.argument("address")
@click.option("--kind", type=KIND, required=True)
@click.option("--from-block", type=int, default=None, help="Default: resume after the checkpoint")
@click.option("--to-block", default="latest", show_default=True, help="Block number or 'latest'")
@click.option("--deployment-block", type=int, default=0, show_default=True, help="First block on a first run")
@click.option("--step", type=int, default=None, help="Blocks per eth_getLogs")
@click.option("--concurrency", type=int, default=None, help="Calls in flight per window")
@click.option("--manifest", "manifest_path", default="", help="JSONL manifest file, or directory for per-run files")
@click.option("--rebuild/--no-rebuild", default=False, show_default=True,
              help="Fill interior gaps and rebuild holder state afterwards")
@click.pass_obj
def sync_cmd(settings: Settings, address, kind, from_block, to_block, deployment_block, step, concurrency,
             manifest_path, rebuild):
    """Ingest transfer events for ADDRESS with a live progress bar."""
    settings = settings.with_overrides(fetch={"max_chunk": step, "concurrency": concurrency})
    kind = kind.upper()
    if to_block != "latest" and not to_block.isdigit():
        raise click.BadParameter("expected a block number or 'latest'", param_hint="--to-block")
    end = to_block if to_block == "latest" else int(to_block)
    manifest = JSONLManifest(run_manifest_path(manifest_path, address)) if manifest_path else None

    progress = Progress(SpinnerColumn(),
                        TextColumn("[bold]syncing[/]"),
                        BarColumn(),
                        MofNCompleteColumn(),
                        TextColumn("•"),
                        TimeElapsedColumn(),
                        TextColumn("→"),
                        TimeRemainingColumn(),
                        TextColumn(" • {task.description}"),
                        console=console,
                        transient=False,
                        expand=True,
                        )

    async def go(store, rpc):
        stop = asyncio.Event()
        with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
            asyncio.get_running_loop().add_signal_handler(signal.SIGINT, stop.set)
        with progress:
            task = progress.add_task(description=address.lower(), total=None)

            def on_progress(p):
                progress.update(task, total=p.total_blocks, completed=p.processed_blocks,
                                description=f"{p.percent:.0f}% • {p.events_found:,} events • {p.events_inserted:,} new")

            kw = dict(rpc=rpc, store=store, contract=Address(address), kind=kind, start_block=from_block,
                      end_block=end, config=settings.fetch, manifest=manifest, on_progress=on_progress,
                      stop=stop, deployment_block=deployment_block)
            if rebuild:
                return await use_cases.sync_and_rebuild(**kw)
            return await use_cases.sync_contract(**kw), None, None

    report, filled, rebuilt = _run(settings, go, rpc=True)
    _print_report(report)
    if filled is not None:
        _print_report(filled, "fill-gaps")
    if rebuilt is not None:
        console.print(f"[bold]rebuild[/]: holders={rebuilt.holders:,} tokens={rebuilt.tokens:,} "
                      f"records={rebuilt.records:,} supply={rebuilt.supply:,}")
    try:
        # the fill pass retried every range the sync left unresolved
        (filled or report).raise_for_residual()
    except NftLedgerError as e:
        raise click.ClickException(str(e))


@cli.command("gaps")
@click.argument("address")
@click.option("--from-block", type=int, default=None)
@click.option("--to-block", type=int, default=None)
@click.option("--min-gap", type=int, default=1, show_default=True, help="Ignore holes shorter than this")
@click.pass_obj
def gaps_cmd(settings: Settings, address, from_block, to_block, min_gap):
    """List block ranges with no ledger rows between recorded blocks."""
    gaps = _run(settings, lambda store: use_cases.find_gaps(store, Address(address), start=from_block,
                                                            end=to_block, min_gap=min_gap))
    if not gaps:
        console.print("[green]no gaps[/]")
        return
    t = Table(title=f"gaps {address.lower()}")
    t.add_column("start", justify="right"); t.add_column("end", justify="right"); t.add_column("blocks", justify="right")
    for g in gaps:
        t.add_row(f"{g.start:,}", f"{g.end:,}", f"{g.block_count:,}")
    console.print(t)
    console.print(f"[bold]{len(gaps)}[/] gaps, {sum(g.block_count for g in gaps):,} blocks")


@cli.command("fill-gaps")
@click.argument("address")
@click.option("--kind", type=KIND, required=True)
@click.option("--min-gap", type=int, default=use_cases.GAP_THRESHOLD_BLOCKS, show_default=True)
@click.option("--from-block", type=int, default=None)
@click.option("--to-block", type=int, default=None)
@click.pass_obj
def fill_gaps_cmd(settings: Settings, address, kind, min_gap, from_block, to_block):
    """Re-fetch every gap the detector reports."""
    async def go(store, rpc):
        gaps = await use_cases.find_gaps(store, Address(address), start=from_block, end=to_block, min_gap=min_gap)
        return await use_cases.fill_gaps(rpc=rpc, store=store, contract=Address(address), kind=kind.upper(),
                                         gaps=gaps, config=settings.fetch)
    report = _run(settings, go, rpc=True)
    _print_report(report, "fill-gaps")
    try:
        report.raise_for_residual()
    except NftLedgerError as e:
        raise click.ClickException(str(e))


@cli.command("rebuild")
@click.argument("address")
@click.option("--strict/--lenient", default=True, show_default=True,
              help="Abort and keep the old state on a negative balance")
@click.pass_obj
def rebuild_cmd(settings: Settings, address, strict):
    """Recompute holder balances from the ledger."""
    res = _run(settings, lambda store: rebuild_state(store, Address(address.lower()), strict=strict))
    console.print(f"[bold]rebuild[/] {res.contract_address}: holders={res.holders:,} tokens={res.tokens:,} "
                  f"records={res.records:,} minted={res.minted:,} burned={res.burned:,} supply={res.supply:,}")
    if res.negative_balances:
        console.print(f"[red]{res.negative_balances} negative balance(s) dropped[/]")


@cli.command("verify")
@click.argument("address")
@click.pass_context
def verify_cmd(ctx, address):
    """Check state supply == minted - burned; exit code 1 on mismatch."""
    rep = _run(ctx.obj, lambda store: verify_supply(store, Address(address.lower())))
    colour = "green" if rep.consistent else "red"
    console.print(f"[{colour}]{'ok' if rep.consistent else 'MISMATCH'}[/] minted={rep.minted:,} "
                  f"burned={rep.burned:,} expected={rep.expected_supply:,} state={rep.state_supply:,}")
    if not rep.consistent:
        ctx.exit(1)


@cli.command("snapshot")
@click.argument("address")
@click.option("--block", type=int, required=True, help="Balances as of the end of this block")
@click.option("--out", "out_path", default=None, help="Also write the rows to this Parquet file")
@click.option("--limit", type=int, default=50, show_default=True, help="Rows to print")
@click.pass_obj
def snapshot_cmd(settings: Settings, address, block, out_path, limit):
    """Holder balances of ADDRESS at a past block, replayed from the ledger."""
    async def go(store):
        rows = await snapshot_at(store, Address(address), block)
        if out_path:
            await write_balances(rows, out_path)
        return rows
    rows = _run(settings, go)
    t = Table(title=f"snapshot {address.lower()} @ {block:,}")
    t.add_column("holder"); t.add_column("token_id", justify="right")
    t.add_column("balance", justify="right"); t.add_column("block", justify="right")
    for b in rows[:limit]:
        t.add_row(b.holder_address, str(b.token_id), f"{b.balance:,}", f"{b.last_updated_block:,}")
    console.print(t)
    console.print(f"[bold]{len(rows):,}[/] rows, {len({b.holder_address for b in rows}):,} holders, "
                  f"supply={sum(b.balance for b in rows):,}")
    if out_path:
        console.print(f"[bold]export[/] snapshot: {len(rows):,} rows → {out_path}")


@cli.command("reconcile-ids")
@click.pass_obj
def reconcile_ids_cmd(settings: Settings):
    """Move the ledger id allocator past max(id) if it lags."""
    rep = _run(settings, lambda store: store.reconcile_id_allocator())
    state = "[yellow]corrected[/]" if rep.corrected else "[green]ok[/]"
    console.print(f"{state} {rep.table}: max_id={rep.max_id:,} next={rep.next_value:,}")


@cli.command("audit")
@click.argument("address")
@click.option("--kind", type=KIND, required=True)
@click.option("--from-block", type=int, required=True)
@click.option("--to-block", type=int, required=True)
@click.pass_context
def audit_cmd(ctx, address, kind, from_block, to_block):
    """Compare on-chain transfers in a range with the ledger; exit code 1 if any are missing."""
    settings: Settings = ctx.obj
    rep = _run(settings, lambda store, rpc: use_cases.audit_range(
        rpc, store, Address(address), kind.upper(), BlockRange(from_block, to_block), config=settings.fetch,
    ), rpc=True)
    console.print(f"[bold]audit[/] {rep.contract_address} {rep.range}: on-chain={rep.onchain_events:,} "
                  f"ledger={rep.ledger_events:,} missing={len(rep.missing):,} unresolved={len(rep.unresolved)}")
    for tx, li, xi in rep.missing[:50]:
        console.print(f"  [red]missing[/] {tx}:{li}:{xi}")
    if not rep.complete:
        ctx.exit(1)


@cli.command("export")
@click.argument("address")
@click.option("--what", type=click.Choice(["balances", "ledger"]), default="balances", show_default=True)
@click.option("--out", "out_path", required=True, help="Parquet file to write")
@click.pass_obj
def export_cmd(settings: Settings, address, what, out_path):
    """Write holder balances or the ledger of ADDRESS to Parquet."""
    fn = export_balances if what == "balances" else export_ledger
    n = _run(settings, lambda store: fn(store, Address(address), out_path))
    console.print(f"[bold]export[/] {what}: {n:,} rows → {out_path}")


if __name__ == "__main__":
    cli()
