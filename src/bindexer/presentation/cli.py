import asyncio, contextlib, json, os, time
from typing import List, Optional

import typer
import uvicorn
from rich.progress import (
    Progress, BarColumn, TextColumn, TimeElapsedColumn,
    TimeRemainingColumn, MofNCompleteColumn, SpinnerColumn
)
from rich.table import Table

from ..adapters.manifest_jsonl import JSONLManifest
from ..adapters.parquet_sink import ParquetTableExporter
from ..adapters.rpc_httpx import HttpxRPC
from ..adapters.sql_store import SqlEventStore, sqlite_url
from ..application.stats import RunStats
from ..application.use_cases import BackfillDriver, Backfiller, manifest_gaps
from ..application.utils import manifest_file
from ..application.watcher import LiveWatcher, follow
from ..config import IndexerConfig, generate_default_config, load_config
from ..errors import BindexerError, ConfigurationError
from ..log import console, format_duration, get_logger, setup_logging
from ..templates import get_template, template_names
from .api import create_app

app = typer.Typer(help="bindexer: index EVM contract events into SQL tables.", no_args_is_help=True)
logger = get_logger(__name__)


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-f", help="Config file (default: discovered)"),
    profile: Optional[str] = typer.Option(None, "--profile", help="Named profile from the config"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="debug|info|warn|error"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Errors only, no progress bar"),
):
    ctx.obj = {"config": config, "profile": profile, "log_level": log_level, "verbose": verbose, "quiet": quiet}


def _level(opts: dict, cfg: Optional[IndexerConfig]) -> str:
    if opts["verbose"]:
        return "debug"
    if opts["quiet"]:
        return "error"
    if opts["log_level"]:
        return opts["log_level"]
    return cfg.monitoring.log_level if cfg else "info"


def _overrides(contract, event, network, start_block, database, rpc_url, batch_size=None) -> dict:
    out: dict = {}
    if contract: out["contracts"] = list(contract)
    if event: out["events"] = list(event)
    if network: out["network"] = network
    if start_block is not None: out["startBlock"] = start_block
    if database: out["database"] = {"path": database}
    if rpc_url:
        out["network"] = {"name": network, "rpcUrl": rpc_url} if network else {"rpcUrl": rpc_url}
    if batch_size: out["batchSize"] = batch_size
    return out


def _load(ctx: typer.Context, overrides: dict) -> IndexerConfig:
    opts = ctx.obj
    try:
        cfg = load_config(opts["config"], overrides=overrides, profile=opts["profile"])
    except ConfigurationError as e:
        setup_logging(_level(opts, None))
        console.print(f"[red]configuration error[/]: {e.describe()}")
        raise typer.Exit(1)
    setup_logging(_level(opts, cfg), structured=cfg.monitoring.structured_logging)
    return cfg


def _progress(cfg: IndexerConfig, quiet: bool) -> Optional[Progress]:
    if quiet or not cfg.monitoring.progress_tracking or cfg.monitoring.structured_logging:
        return None
    return Progress(SpinnerColumn(),
                    TextColumn("[bold]backfill[/]"),
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


def _summary(stats: RunStats, elapsed: float) -> None:
    s = stats.total
    console.print(f"[bold]done[/]: {s.logs} logs • {format_duration(elapsed)}")
    console.print(
        f"[bold]summary[/]: "
        f"[green]inserted[/]={s.processed}  "
        f"[yellow]duplicates[/]={s.duplicates}  "
        f"[red]errors[/]={s.errors}  "
        f"[red]failed_ranges[/]={s.failed_units}  "
        f"(splits={s.split_count}, retries={s.retries}, batches={stats.batches})"
    )


async def _index(cfg: IndexerConfig, *, quiet: bool, manifest_path: Optional[str], watch: bool,
                 serve_api: bool, from_block: Optional[int], to_block: Optional[int]) -> None:
    rpc_url = cfg.network.effective_rpc_url
    if not rpc_url:
        raise ConfigurationError("no RPC endpoint configured", "network.rpcUrl",
                                 ["set RPC_URL or BINDEXER_RPC_URL", "or pass --rpc-url"])
    store = SqlEventStore(cfg.database.sqlalchemy_url, wal_mode=cfg.database.wal_mode,
                          echo=cfg.database.query_logging)
    descs = cfg.descriptors()
    targets = cfg.targets()
    store.sync_schemas(descs)
    client = HttpxRPC(rpc_url)
    stats = RunStats()
    watcher = LiveWatcher(client, store, targets, descs, stats)
    server: Optional[uvicorn.Server] = None
    server_task: Optional[asyncio.Task] = None
    try:
        if serve_api:
            app_ = create_app(store, [d.name for d in descs], cors=cfg.api.cors)
            server = uvicorn.Server(uvicorn.Config(app_, host=cfg.api.host, port=cfg.api.port, log_config=None))
            server_task = asyncio.create_task(server.serve())
            logger.info("api_listening", url=f"http://{cfg.api.host}:{cfg.api.port}")
        start = from_block if from_block is not None else cfg.effective_start_block
        backfiller: Optional[Backfiller] = None
        progress: Optional[Progress] = None
        if start is not None:
            manifest = None
            if manifest_path:
                manifest = JSONLManifest(manifest_file(manifest_path, cfg.project or cfg.network.name))
            driver = BackfillDriver(client, store, targets, descs, cfg.retry_policy(), stats, manifest)
            progress = _progress(cfg, quiet)
            backfiller = Backfiller(driver, cfg.effective_batch_size, progress)

        t0 = time.time()
        with progress if progress is not None else contextlib.nullcontext():
            if watch:
                report = await follow(watcher, backfiller, start)
            else:
                report = await backfiller.run(start, to_block)
        if report is not None and not quiet:
            _summary(stats, time.time() - t0)

        if watch or server_task is not None:
            logger.info("running", hint="press Ctrl+C to stop")
            await asyncio.Event().wait()
    finally:
        watcher.stop()
        if server is not None:
            server.should_exit = True
        if server_task is not None:
            await asyncio.gather(server_task, return_exceptions=True)
        await client.aclose()
        store.close()


def _execute(coro) -> None:
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("[yellow]stopped[/]")
    except ConfigurationError as e:
        console.print(f"[red]configuration error[/]: {e.describe()}")
        raise typer.Exit(1)
    except BindexerError as e:
        console.print(f"[red]error[/] ({e.code}): {e.message}")
        raise typer.Exit(1)


@app.command()
def run(
    ctx: typer.Context,
    contract: Optional[List[str]] = typer.Option(None, "--contract", "-c", help="Contract address; repeat for more"),
    event: Optional[List[str]] = typer.Option(None, "--event", "-e", help="Event signature; repeat for more"),
    network: Optional[str] = typer.Option(None, "--network", "-n"),
    start_block: Optional[int] = typer.Option(None, "--start-block", "-s"),
    database: Optional[str] = typer.Option(None, "--database", "-d", help="SQLite file"),
    rpc_url: Optional[str] = typer.Option(None, "--rpc-url"),
    api: Optional[bool] = typer.Option(None, "--api/--no-api", help="Serve the read API (default: config)"),
    manifest: Optional[str] = typer.Option(None, "--manifest", help="JSONL manifest file, or a directory for one file per run"),
):
    """Backfill from the start block to the head, then keep following new logs."""
    cfg = _load(ctx, _overrides(contract, event, network, start_block, database, rpc_url))
    serve_api = cfg.api.enabled if api is None else api
    _execute(_index(cfg, quiet=ctx.obj["quiet"], manifest_path=manifest, watch=True,
                    serve_api=serve_api, from_block=None, to_block=None))


@app.command()
def backfill(
    ctx: typer.Context,
    from_block: Optional[int] = typer.Option(None, "--from-block", help="Default: configured start block"),
    to_block: Optional[int] = typer.Option(None, "--to-block", help="Default: chain head"),
    contract: Optional[List[str]] = typer.Option(None, "--contract", "-c"),
    event: Optional[List[str]] = typer.Option(None, "--event", "-e"),
    network: Optional[str] = typer.Option(None, "--network", "-n"),
    database: Optional[str] = typer.Option(None, "--database", "-d"),
    rpc_url: Optional[str] = typer.Option(None, "--rpc-url"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", min=1),
    manifest: Optional[str] = typer.Option(None, "--manifest"),
):
    """Historical backfill only; exits when the range is done."""
    cfg = _load(ctx, _overrides(contract, event, network, None, database, rpc_url, batch_size))
    if from_block is None and cfg.effective_start_block is None:
        console.print("[red]error[/]: no start block; pass --from-block or set startBlock")
        raise typer.Exit(1)
    _execute(_index(cfg, quiet=ctx.obj["quiet"], manifest_path=manifest, watch=False,
                    serve_api=False, from_block=from_block, to_block=to_block))


@app.command()
def serve(
    ctx: typer.Context,
    database: Optional[str] = typer.Option(None, "--database", "-d", help="SQLite file (skips config loading)"),
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
):
    """Serve the read API over an existing database."""
    names = None
    if database:
        setup_logging(_level(ctx.obj, None))
        url, cors, h, p = sqlite_url(database), True, "localhost", 3000
    else:
        cfg = _load(ctx, {})
        url, cors, h, p = cfg.database.sqlalchemy_url, cfg.api.cors, cfg.api.host, cfg.api.port
        names = [d.name for d in cfg.descriptors()]
    store = SqlEventStore(url)
    try:
        uvicorn.run(create_app(store, names, cors=cors), host=host or h, port=port or p, log_config=None)
    finally:
        store.close()


@app.command()
def init(
    template: Optional[str] = typer.Option(None, "--template", "-t", help=f"One of: {', '.join(template_names())}"),
    out: str = typer.Option("bindexer.config.json", "--out", "-o"),
    force: bool = typer.Option(False, "--force"),
):
    """Write a starter config file."""
    if os.path.exists(out) and not force:
        console.print(f"[red]error[/]: {out} exists (use --force to overwrite)")
        raise typer.Exit(1)
    try:
        doc = generate_default_config(template)
    except ConfigurationError as e:
        console.print(f"[red]configuration error[/]: {e.describe()}")
        raise typer.Exit(1)
    with open(out, "w") as f:
        json.dump(doc, f, indent=2)
        f.write("\n")
    console.print(f"[green]wrote[/] {out}")
    t = get_template(template) if template else None
    if t is not None:
        console.print(f"[bold]{t.name}[/]: {t.description}")
        for i, step in enumerate(t.instructions, 1):
            console.print(f"  {i}. {step}")


@app.command("generate-config")
def generate_config(template: Optional[str] = typer.Option(None, "--template", "-t")):
    """Print a starter config document to stdout."""
    try:
        typer.echo(json.dumps(generate_default_config(template), indent=2))
    except ConfigurationError as e:
        console.print(f"[red]configuration error[/]: {e.describe()}")
        raise typer.Exit(1)


@app.command()
def validate(ctx: typer.Context):
    """Resolve and validate the configuration, then print what would be indexed."""
    cfg = _load(ctx, {})
    table = Table(title=f"{cfg.project or 'bindexer'} on {cfg.network.name}")
    table.add_column("contract"); table.add_column("events"); table.add_column("start block", justify="right")
    names = [d.name for d in cfg.descriptors()]
    for t in cfg.targets():
        evs = names if t.events is None else [n for n in names if n.lower() in t.events]
        start = t.start_block if t.start_block is not None else cfg.effective_start_block
        table.add_row(t.label, ", ".join(evs), "-" if start is None else f"{start:,}")
    console.print(table)
    console.print(f"batch size {cfg.effective_batch_size} • database {cfg.database.sqlalchemy_url} "
                  f"• retry {cfg.retry.strategy} x{cfg.retry.max_retries}")
    console.print("[green]configuration is valid[/]")


@app.command()
def schema(ctx: typer.Context, database: Optional[str] = typer.Option(None, "--database", "-d")):
    """Print the DDL synthesized for each configured event."""
    cfg = _load(ctx, {"database": {"path": database}} if database else {})
    store = SqlEventStore(cfg.database.sqlalchemy_url)
    try:
        for d in cfg.descriptors():
            typer.echo(f"-- {d.signature}  topic0={d.topic0}")
            for stmt in store.ddl(d):
                typer.echo(stmt + ";")
            typer.echo("")
    finally:
        store.close()


@app.command()
def export(
    ctx: typer.Context,
    event_name: str = typer.Argument(..., help="Event name, e.g. Transfer"),
    out: str = typer.Option(..., "--out", "-o", help="Parquet file to write"),
    database: Optional[str] = typer.Option(None, "--database", "-d"),
):
    """Export one stored event table to Parquet."""
    if database:
        setup_logging(_level(ctx.obj, None))
        url = sqlite_url(database)
    else:
        url = _load(ctx, {}).database.sqlalchemy_url
    store = SqlEventStore(url)
    try:
        n = ParquetTableExporter(store).export(event_name, out)
    finally:
        store.close()
    console.print(f"[green]exported[/] {n} rows → {out}")


@app.command()
def gaps(
    manifest: str = typer.Argument(..., help="JSONL manifest written by --manifest"),
    from_block: int = typer.Option(..., "--from-block"),
    to_block: int = typer.Option(..., "--to-block"),
):
    """List block ranges the manifest does not record as done."""
    found = manifest_gaps(JSONLManifest.load(manifest), from_block, to_block)
    if not found:
        console.print("[green]no gaps[/]")
        return
    for (contract, event), ranges in sorted(found.items()):
        console.print(f"[bold]{event}[/] @ {contract}: " + ", ".join(f"[{a},{b}]" for a, b in ranges))
    raise typer.Exit(2)


if __name__ == "__main__":
    app()
