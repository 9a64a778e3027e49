import typer
from pathlib import Path
from typing import List, Optional
from dataclasses import dataclass
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, BarColumn, TextColumn, TaskProgressColumn

from downtranscoder.config.loader import load_config
from downtranscoder.config.models import AppConfig
from downtranscoder.domain.models import MediaState
from downtranscoder.domain.errors import DownTranscoderError
from downtranscoder.domain.events import ItemAborted, ItemTranscoded, TranscodeProgressUpdated, TranscodeStarted
from downtranscoder.infrastructure.catalog import MediaCatalog
from downtranscoder.infrastructure.database import Database
from downtranscoder.infrastructure.event_bus import EventBus
from downtranscoder.infrastructure.ffmpeg import FFmpegTranscoder
from downtranscoder.infrastructure.file_store import LocalFileStore
from downtranscoder.infrastructure.housekeeping import HousekeepingService
from downtranscoder.infrastructure.logging import setup_logging
from downtranscoder.infrastructure.status_store import GLOBAL_SCOPE, StatusStore
from downtranscoder.pipeline.dispatcher import Dispatcher
from downtranscoder.pipeline.scanner import MediaScanner
from downtranscoder.pipeline.state_service import MediaStateService

app = typer.Typer(help="DownTranscoder - find oversized media and shrink it with ffmpeg")
console = Console()

ConfigOption = typer.Option(None, "--config", "-c", help="Path to YAML config (defaults when omitted)")
StoreRootOption = typer.Option(Path("."), "--store-root", help="Root directory holding one folder per owner")


@dataclass
class Services:
    config: AppConfig
    db: Database
    bus: EventBus
    catalog: MediaCatalog
    status_store: StatusStore
    state_service: MediaStateService
    scanner: MediaScanner
    dispatcher: Dispatcher


def format_size(size: int) -> str:
    value = float(size)
    for unit in ["B", "KB", "MB", "GB"]:
        if value < 1024.0:
            return f"{value:.1f}{unit}"
        value /= 1024.0
    return f"{value:.1f}TB"


def _fail(message: str, code: int = 1) -> None:
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=code)


def build_services(config_path: Optional[Path], store_root: Path) -> Services:
    if config_path is not None:
        try:
            config = load_config(config_path)
        except (FileNotFoundError, ValueError) as exc:
            _fail(str(exc))
    else:
        config = AppConfig()

    log_path = Path(config.general.log_path) if config.general.log_path else None
    setup_logging(log_path, debug=config.general.debug)

    bus = EventBus()
    db = Database(config.general.catalog_path)
    catalog = MediaCatalog(db)
    status_store = StatusStore(db)
    state_service = MediaStateService(catalog, bus)
    file_store = LocalFileStore(store_root)
    scanner = MediaScanner(config, file_store, state_service, status_store, bus)
    dispatcher = Dispatcher(
        config, catalog, state_service, status_store, file_store, FFmpegTranscoder(config), bus
    )
    return Services(
        config=config,
        db=db,
        bus=bus,
        catalog=catalog,
        status_store=status_store,
        state_service=state_service,
        scanner=scanner,
        dispatcher=dispatcher,
    )


@app.command()
def scan(
    owner: Optional[str] = typer.Option(None, "--owner", help="Scan only this owner"),
    config_path: Optional[Path] = ConfigOption,
    store_root: Path = StoreRootOption,
):
    """Scan the store for media files larger than the trigger size."""
    services = build_services(config_path, store_root)
    try:
        result = services.scanner.scan(owner)
    except DownTranscoderError as exc:
        _fail(exc.reason)

    trigger_gb = services.config.scan.trigger_size_gb
    console.print(f"Found [bold]{len(result.files)}[/bold] file(s) larger than {trigger_gb} GB")
    for error in result.errors:
        typer.secho(f"  skipped: {error}", fg=typer.colors.YELLOW)


@app.command()
def queue(
    item_ids: Optional[List[int]] = typer.Argument(None, help="Item ids to queue"),
    all_found: bool = typer.Option(False, "--all", help="Queue every found item"),
    user: Optional[str] = typer.Option(None, "--user", help="Act as this owner"),
    config_path: Optional[Path] = ConfigOption,
    store_root: Path = StoreRootOption,
):
    """Move found (or aborted) items to the queue."""
    services = build_services(config_path, store_root)
    if all_found:
        queued = services.state_service.queue_all_found(user)
        console.print(f"Queued {len(queued)} item(s)")
        return
    if not item_ids:
        _fail("Give item ids or --all")

    failed = False
    for item_id in item_ids:
        try:
            services.state_service.update_state(item_id, MediaState.QUEUED, user_id=user)
            console.print(f"Queued item {item_id}")
        except DownTranscoderError as exc:
            typer.secho(f"Item {item_id}: {exc.reason}", fg=typer.colors.RED, err=True)
            failed = True
    if failed:
        raise typer.Exit(code=1)


@app.command()
def transcode(
    item: Optional[int] = typer.Option(None, "--item", help="Transcode this item now instead of the next batch"),
    config_path: Optional[Path] = ConfigOption,
    store_root: Path = StoreRootOption,
):
    """Run queued items through ffmpeg."""
    services = build_services(config_path, store_root)

    with Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        tasks = {}

        @services.bus.subscribe(TranscodeStarted)
        def on_started(event: TranscodeStarted):
            tasks[event.item.id] = progress.add_task(f"[{event.index}/{event.total}] {event.item.name}", total=100)

        @services.bus.subscribe(TranscodeProgressUpdated)
        def on_progress(event: TranscodeProgressUpdated):
            task_id = tasks.get(event.item.id)
            if task_id is not None:
                progress.update(task_id, completed=event.progress_percent)

        @services.bus.subscribe(ItemTranscoded)
        def on_done(event: ItemTranscoded):
            task_id = tasks.get(event.item.id)
            if task_id is not None:
                progress.update(task_id, completed=100)

        @services.bus.subscribe(ItemAborted)
        def on_aborted(event: ItemAborted):
            progress.console.print(f"[red]Aborted[/red] {event.item.name}: {event.reason}")

        try:
            if item is not None:
                summary = services.dispatcher.dispatch_single(item)
            else:
                summary = services.dispatcher.dispatch()
        except DownTranscoderError as exc:
            _fail(exc.reason)

    if summary.skipped:
        typer.secho("Transcoding already in progress", fg=typer.colors.YELLOW)
        return
    console.print(
        f"Processed {summary.processed}: {len(summary.transcoded)} transcoded, {len(summary.aborted)} aborted"
    )
    if summary.aborted:
        raise typer.Exit(code=1)


@app.command()
def status(
    config_path: Optional[Path] = ConfigOption,
    store_root: Path = StoreRootOption,
):
    """Show scan and queue status."""
    services = build_services(config_path, store_root)
    scan_status = services.scanner.get_scan_status(GLOBAL_SCOPE)
    queue_status = services.dispatcher.get_queue_status()

    table = Table(title="DownTranscoder status", show_header=False)
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in scan_status.to_dict().items():
        table.add_row(f"scan.{key}", str(value))
    for key, value in queue_status.to_dict().items():
        table.add_row(f"queue.{key}", str(value))
    console.print(table)


@app.command()
def items(
    state: Optional[MediaState] = typer.Option(None, "--state", help="Only items in this state"),
    owner: Optional[str] = typer.Option(None, "--owner", help="Only items of this owner"),
    config_path: Optional[Path] = ConfigOption,
    store_root: Path = StoreRootOption,
):
    """List catalog items."""
    services = build_services(config_path, store_root)
    table = Table(title="Media items")
    for column in ("ID", "Owner", "Name", "Size", "State", "Preset", "Progress", "Abort reason"):
        table.add_column(column)
    for media_item in services.state_service.items(owner, state):
        table.add_row(
            str(media_item.id),
            media_item.owner_id,
            media_item.path,
            format_size(media_item.size),
            media_item.state.value,
            media_item.transcode_preset.value if media_item.transcode_preset else "-",
            f"{media_item.transcode_progress}%" if media_item.transcode_progress is not None else "-",
            media_item.abort_reason or "",
        )
    console.print(table)


@app.command()
def abort(
    item_id: int = typer.Argument(..., help="Item to abort"),
    reason: Optional[str] = typer.Option(None, "--reason", help="Reason shown on the item"),
    user: Optional[str] = typer.Option(None, "--user", help="Act as this owner"),
    config_path: Optional[Path] = ConfigOption,
    store_root: Path = StoreRootOption,
):
    """Abort a transcoding item."""
    services = build_services(config_path, store_root)
    try:
        aborted = services.dispatcher.abort(item_id, reason, user_id=user)
    except DownTranscoderError as exc:
        _fail(exc.reason)
    console.print(f"Aborted item {aborted.id}: {aborted.abort_reason}")


@app.command("delete-original")
def delete_original(
    item_id: int = typer.Argument(..., help="Transcoded item whose original should be deleted"),
    user: Optional[str] = typer.Option(None, "--user", help="Act as this owner"),
    config_path: Optional[Path] = ConfigOption,
    store_root: Path = StoreRootOption,
):
    """Delete the original file of a transcoded item."""
    services = build_services(config_path, store_root)
    try:
        deleted = services.dispatcher.delete_original(item_id, user_id=user)
    except DownTranscoderError as exc:
        _fail(exc.reason)
    if not deleted:
        _fail(f"Original of item {item_id} was not deleted (item must be transcoded and its file present)")
    console.print(f"Deleted original of item {item_id}")


@app.command()
def reset(
    owner: Optional[str] = typer.Option(None, "--owner", help="Only reset this owner's items"),
    force: bool = typer.Option(False, "--force", "-f", help="Do not ask for confirmation"),
    config_path: Optional[Path] = ConfigOption,
    store_root: Path = StoreRootOption,
):
    """Remove all catalog items and clear scan/queue flags.

    Refused while a dispatch holds the queue flag, unless --force is given
    to clear a flag left behind by a killed process.
    """
    services = build_services(config_path, store_root)
    if services.status_store.get_queue_status().is_transcoding:
        if not force:
            _fail("A dispatch is running. Wait for it, or pass --force if its process is gone.")
        console.print("[yellow]Queue flag was set; clearing it as stale[/yellow]")
    if not force:
        typer.confirm("This removes every tracked item. Continue?", abort=True)

    removed = services.state_service.reset_all(owner)
    services.status_store.clear()
    temp_dir = Path(services.config.general.temp_dir) if services.config.general.temp_dir else None
    stale = HousekeepingService().cleanup_fallback_copies(temp_dir)
    console.print(f"Removed {removed} item(s), {stale} stale temporary file(s)")


if __name__ == "__main__":
    app()
