"""CLI entry point for uploading local photos and videos to Google Photos."""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from datetime import datetime

from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeRemainingColumn,
)
from rich.table import Table
from rich.text import Text

from photos_uploader.config import UploadOptions
from photos_uploader.credentials import (
    Credential,
    CredentialStore,
    InMemoryCredentialStore,
    JsonCredentialStore,
    parse_credential,
)
from photos_uploader.manager import UploadItem, UploadManager, UploadStatus, UploadSummary
from photos_uploader.media import expand_paths

LOG_DIR = "logs"
DEFAULT_CREDENTIALS_FILE = "photos_credentials.json"


def format_size(num_bytes: int) -> str:
    """Return a human-readable file size string."""
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(num_bytes) < 1024:
            return f"{num_bytes:.1f} {unit}" if unit != "B" else f"{num_bytes} {unit}"
        num_bytes /= 1024  # type: ignore[assignment]
    return f"{num_bytes:.1f} PB"


def _build_parser(defaults: UploadOptions) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Upload photos and videos to Google Photos with hash-based deduplication."
    )
    parser.add_argument(
        "paths",
        nargs="*",
        help="Files or folders to upload",
    )
    parser.add_argument(
        "--account",
        default=os.getenv("PHOTOS_ACCOUNT"),
        help="Email of the stored account to upload with",
    )
    parser.add_argument(
        "--auth-data",
        default=os.getenv("PHOTOS_AUTH_DATA"),
        help="Device auth blob (androidId=...&Email=...&Token=...)",
    )
    parser.add_argument(
        "--credentials-file",
        default=os.getenv("PHOTOS_CREDENTIALS_FILE", DEFAULT_CREDENTIALS_FILE),
        help=f"JSON file holding stored accounts (default: {DEFAULT_CREDENTIALS_FILE})",
    )
    parser.add_argument(
        "--add-account",
        action="store_true",
        help="Validate --auth-data and save it to the credentials file, then exit",
    )
    parser.add_argument(
        "--list-accounts",
        action="store_true",
        help="List stored accounts and exit",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=defaults.max_concurrency,
        metavar="N",
        help=f"Parallel uploads (default: {defaults.max_concurrency})",
    )
    parser.add_argument(
        "--recursive",
        action=argparse.BooleanOptionalAction,
        default=defaults.recursive,
        help="Descend into sub-folders (default: on)",
    )
    parser.add_argument(
        "--force-upload",
        action="store_true",
        default=defaults.force_upload,
        help="Skip the library hash check and upload everything",
    )
    parser.add_argument(
        "--delete-after-upload",
        action="store_true",
        default=defaults.delete_after_upload,
        help="Move source files to the trash once the upload is confirmed",
    )
    parser.add_argument(
        "--storage-saver",
        action="store_true",
        default=defaults.storage_saver,
        help="Upload in storage-saver quality",
    )
    parser.add_argument(
        "--use-quota",
        action="store_true",
        default=defaults.use_quota,
        help="Upload as a quota-counted device",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=defaults.timeout,
        help=f"HTTP timeout in seconds (default: {defaults.timeout:g})",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output and progress bars",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List files that would be uploaded without uploading",
    )
    return parser


def _setup_logging(
    verbose: bool,
    console: Console,
    log_filename: str,
) -> None:
    """Configure dual logging: rich console + plain-text log file."""
    log_level = logging.DEBUG if verbose else logging.INFO
    plain_format = "%(asctime)s  %(levelname)-8s  %(threadName)s  %(message)s"

    root = logging.getLogger()
    root.setLevel(log_level)

    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    rich_handler.setLevel(log_level)
    root.addHandler(rich_handler)

    file_handler = logging.FileHandler(log_filename, encoding="utf-8")
    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter(plain_format, datefmt="%H:%M:%S"))
    root.addHandler(file_handler)

    # urllib3 logs every connection at DEBUG; keep it out of the console
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _print_accounts(console: Console, store: CredentialStore) -> None:
    table = Table(title="Stored accounts")
    table.add_column("Email", style="cyan")
    table.add_column("Added", style="dim")
    for credential in store.list():
        table.add_row(credential.email, credential.added_at.strftime("%Y-%m-%d %H:%M"))
    console.print(table)


def _print_dry_run(console: Console, files) -> None:
    table = Table(title="Files to upload (dry run)", show_lines=False)
    table.add_column("#", style="dim", justify="right")
    table.add_column("File", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Path", style="dim")

    total_bytes = 0
    for i, path in enumerate(files, 1):
        size = path.stat().st_size
        total_bytes += size
        table.add_row(str(i), path.name, format_size(size), str(path.parent))

    console.print()
    console.print(table)
    console.print(
        f"\n[bold]{len(files)}[/bold] file(s), "
        f"[bold]{format_size(total_bytes)}[/bold] total"
    )


def _print_summary(
    console: Console,
    summary: UploadSummary,
    items: list[UploadItem],
    elapsed: float,
    log_filename: str,
) -> None:
    """Print a rich summary panel at the end of an upload run."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    table.add_row("Uploaded", f"[green]{summary.completed_count}[/green]")
    table.add_row("Duplicates", str(summary.duplicate_count))
    failed_style = "red bold" if summary.failed_count else "green"
    table.add_row("Failed", f"[{failed_style}]{summary.failed_count}[/{failed_style}]")
    if summary.cancelled_count:
        table.add_row("Cancelled", str(summary.cancelled_count))
    table.add_row("Elapsed", f"{elapsed:.1f}s")

    panel_style = "green" if summary.all_ok else "red"
    title = "Upload Complete" if summary.all_ok else "Upload Complete (with errors)"
    console.print()
    console.print(Panel(table, title=title, border_style=panel_style, padding=(1, 2)))

    failed = [item for item in items if item.status is UploadStatus.ERROR]
    if failed:
        console.print()
        console.print(Text("Failed files:", style="red bold"))
        for item in failed:
            console.print(f"  - {item.file_path}: {item.status_text}", style="red")

    console.print(f"\nFull log saved to: {log_filename}", style="dim")


def _resolve_store(args) -> CredentialStore:
    if args.credentials_file and os.path.exists(args.credentials_file):
        return JsonCredentialStore(args.credentials_file)
    return InMemoryCredentialStore()


def _run_uploads(console: Console, manager: UploadManager, paths: list[str], use_color: bool) -> None:
    if not use_color:
        manager.enqueue(paths)
        manager.wait()
        return

    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeRemainingColumn(),
        console=console,
    )
    with progress:
        overall = progress.add_task("Uploading", total=None)
        file_tasks: dict[str, int] = {}

        def on_item(item: UploadItem) -> None:
            task_id = file_tasks.get(item.id)
            if item.status.is_in_flight:
                if task_id is None:
                    task_id = progress.add_task(f"  {item.file_name}", total=100)
                    file_tasks[item.id] = task_id
                progress.update(
                    task_id,
                    completed=int(item.progress * 100),
                    description=f"  {item.file_name} [dim]{item.status_text}[/dim]",
                )
            elif task_id is not None:
                progress.remove_task(file_tasks.pop(item.id))

        def on_overall(value: float) -> None:
            items = manager.items()
            done = sum(1 for i in items if i.status in (UploadStatus.COMPLETED, UploadStatus.ERROR))
            progress.update(overall, total=len(items), completed=done)

        manager.add_item_listener(on_item)
        manager.add_progress_listener(on_overall)
        manager.enqueue(paths)
        manager.wait()


def main() -> int:
    load_dotenv()
    try:
        defaults = UploadOptions.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    args = _build_parser(defaults).parse_args()

    # ── console setup ────────────────────────────────────────────────
    use_color = sys.stdout.isatty() and not args.no_color and not os.getenv("NO_COLOR")
    console = Console(force_terminal=use_color, no_color=not use_color)

    # ── logging setup ────────────────────────────────────────────────
    os.makedirs(LOG_DIR, exist_ok=True)
    log_filename = os.path.join(
        LOG_DIR, f"upload_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    )
    _setup_logging(args.verbose, console, log_filename)
    logging.info("Log file: %s", log_filename)

    # ── accounts ─────────────────────────────────────────────────────
    store = _resolve_store(args)

    if args.add_account:
        if not args.auth_data:
            logging.error("--add-account needs --auth-data or PHOTOS_AUTH_DATA.")
            return 1
        result = parse_credential(args.auth_data)
        if not result.is_valid:
            logging.error("Invalid auth data: %s", result.error)
            return 1
        file_store = JsonCredentialStore(args.credentials_file)
        file_store.put(Credential(email=result.email, auth_blob=args.auth_data))
        console.print(f"Saved account [bold]{result.email}[/bold] to {args.credentials_file}")
        return 0

    if args.list_accounts:
        _print_accounts(console, store)
        return 0

    account = args.account
    if args.auth_data:
        result = parse_credential(args.auth_data)
        if not result.is_valid:
            logging.error("Invalid auth data: %s", result.error)
            return 1
        store = InMemoryCredentialStore([Credential(email=result.email, auth_blob=args.auth_data)])
        account = result.email
    elif account is None:
        stored = store.list()
        if len(stored) == 1:
            account = stored[0].email
        elif len(stored) > 1:
            logging.error("Several accounts are stored; pick one with --account.")
            return 1

    if not args.paths:
        logging.error("No files or folders given.")
        return 1

    try:
        options = UploadOptions(
            max_concurrency=args.workers,
            force_upload=args.force_upload,
            delete_after_upload=args.delete_after_upload,
            storage_saver=args.storage_saver,
            use_quota=args.use_quota,
            recursive=args.recursive,
            timeout=args.timeout,
        )
    except ValueError as e:
        logging.error("%s", e)
        return 1

    # ── dry-run mode ─────────────────────────────────────────────────
    if args.dry_run:
        logging.info("Dry-run mode: listing files without uploading.")
        _print_dry_run(console, expand_paths(args.paths, recursive=options.recursive))
        return 0

    # ── run uploads ──────────────────────────────────────────────────
    console.print(Panel(f"Google Photos upload ({account or 'no account'})", style="bold blue", padding=(0, 2)))
    logging.info("Workers: %d, storage saver: %s, quota: %s", options.max_concurrency, options.storage_saver, options.use_quota)

    manager = UploadManager.for_account(store, account, options)

    start = time.monotonic()
    try:
        _run_uploads(console, manager, args.paths, use_color)
    except KeyboardInterrupt:
        logging.warning("Interrupt received – cancelling remaining uploads …")
        manager.cancel_all()
        manager.wait()
    elapsed = time.monotonic() - start

    summary = manager.summary()
    _print_summary(console, summary, manager.items(), elapsed, log_filename)

    return 0 if summary.all_ok else 1


if __name__ == "__main__":
    sys.exit(main())
