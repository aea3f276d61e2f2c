"""
Command-line interface for Home Registry backup administration.

Provides commands for initializing the data directory, managing snapshots
locally, serving the backup HTTP API, and issuing API tokens.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, NoReturn

from homeregistry import __version__
from homeregistry.config.settings import (
    ConfigurationError,
    Settings,
    get_config_path,
    load_config,
    save_config,
)

# Set up logging
logger = logging.getLogger(__name__)

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0

USER_ENV_VAR = "HOMEREGISTRY_USER"


def set_output_mode(quiet: bool = False, verbose: int = 0) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1+=verbose).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the Home Registry CLI."""
    parser = argparse.ArgumentParser(
        prog="homeregistry",
        description="Home Registry backup and restore administration",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"homeregistry {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.homeregistry/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Create the configuration, database and snapshot directory",
        description="Write a default config file (if absent) and create the database schema.",
    )
    init_parser.set_defaults(func=cmd_init)

    # backup command group
    user_parent = argparse.ArgumentParser(add_help=False)
    user_parent.add_argument(
        "--user",
        "-u",
        metavar="USERNAME",
        default=os.environ.get(USER_ENV_VAR),
        help=f"Administrator to act as (default: ${USER_ENV_VAR})",
    )

    backup_parser = subparsers.add_parser(
        "backup",
        help="Create, list, restore and manage snapshots",
        description="Snapshot management. Every command requires an administrator.",
    )
    backup_subparsers = backup_parser.add_subparsers(
        title="backup commands",
        dest="backup_command",
        metavar="<backup-command>",
    )
    backup_parser.set_defaults(func=cmd_backup_help, backup_parser=backup_parser)

    create_p = backup_subparsers.add_parser(
        "create", parents=[user_parent], help="Snapshot the current dataset"
    )
    create_p.add_argument(
        "--description",
        "-d",
        metavar="TEXT",
        help="Free-text description stored in the snapshot",
    )
    create_p.set_defaults(func=cmd_backup_create)

    list_p = backup_subparsers.add_parser(
        "list", parents=[user_parent], help="List snapshots, newest first"
    )
    list_p.add_argument("--json", action="store_true", help="Output as JSON")
    list_p.set_defaults(func=cmd_backup_list)

    download_p = backup_subparsers.add_parser(
        "download", parents=[user_parent], help="Copy a snapshot out of the catalog"
    )
    download_p.add_argument("name", metavar="NAME", help="Snapshot name")
    download_p.add_argument(
        "--output",
        "-o",
        metavar="PATH",
        help="Destination file or directory (default: current directory)",
    )
    download_p.set_defaults(func=cmd_backup_download)

    upload_p = backup_subparsers.add_parser(
        "upload", parents=[user_parent], help="Add a snapshot file to the catalog"
    )
    upload_p.add_argument("file", metavar="FILE", help="Snapshot file to upload")
    upload_p.add_argument(
        "--name",
        metavar="NAME",
        help="Catalog name (default: the file's name)",
    )
    upload_p.set_defaults(func=cmd_backup_upload)

    restore_p = backup_subparsers.add_parser(
        "restore", parents=[user_parent], help="Replace the dataset with a snapshot"
    )
    restore_p.add_argument("name", metavar="NAME", help="Snapshot name")
    restore_p.add_argument(
        "--force",
        action="store_true",
        help="Skip confirmation prompt",
    )
    restore_p.set_defaults(func=cmd_backup_restore)

    delete_p = backup_subparsers.add_parser(
        "delete", parents=[user_parent], help="Delete a snapshot"
    )
    delete_p.add_argument("name", metavar="NAME", help="Snapshot name")
    delete_p.add_argument(
        "--force",
        action="store_true",
        help="Skip confirmation prompt",
    )
    delete_p.set_defaults(func=cmd_backup_delete)

    info_p = backup_subparsers.add_parser(
        "info", parents=[user_parent], help="Show a snapshot's metadata and record counts"
    )
    info_p.add_argument("name", metavar="NAME", help="Snapshot name")
    info_p.add_argument("--json", action="store_true", help="Output as JSON")
    info_p.set_defaults(func=cmd_backup_info)

    # serve command
    serve_parser = subparsers.add_parser(
        "serve",
        help="Serve the backup HTTP API",
        description="Run the backup HTTP API in the foreground until interrupted.",
    )
    serve_parser.add_argument("--host", metavar="HOST", help="Bind address")
    serve_parser.add_argument("--port", "-p", type=int, metavar="PORT", help="Port")
    serve_parser.set_defaults(func=cmd_serve)

    # token command
    token_parser = subparsers.add_parser(
        "token",
        help="Generate an API token",
        description="Generate a bearer token for the HTTP API. Only its digest is stored.",
    )
    token_parser.add_argument(
        "--user",
        "-u",
        metavar="USERNAME",
        required=True,
        help="Administrator the token acts as",
    )
    token_parser.add_argument(
        "--save",
        action="store_true",
        help="Add the token digest to the config file",
    )
    token_parser.set_defaults(func=cmd_token)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_settings(args: argparse.Namespace) -> Settings:
    config_path = Path(args.config) if args.config else None
    return load_config(config_path)


def _get_service_and_caller(args: argparse.Namespace) -> tuple[Any, Any]:
    """Build the backup service and resolve the acting administrator."""
    from homeregistry.backup import BackupService

    settings = _load_settings(args)
    service = BackupService.from_settings(settings)

    if not args.user:
        raise ConfigurationError(
            f"No administrator given; use --user or set {USER_ENV_VAR}"
        )
    return service, service.identity.resolve(args.user)


def _report_backup_error(error: Any) -> int:
    """Print a BackupError, including the recovery path for restores."""
    output_error(f"Error ({error.kind}): {error.message}")
    if error.safety_snapshot:
        output_error(f"Safety snapshot of the previous state: {error.safety_snapshot}")
        output_error(f"To go back, run: homeregistry backup restore {error.safety_snapshot}")
    return 1


def _confirm(prompt: str) -> bool:
    response = input(f"{prompt} [y/N]: ").strip().lower()
    return response in ("y", "yes")


def cmd_init(args: argparse.Namespace) -> int:
    """Initialize configuration, database and snapshot directory."""
    from homeregistry.backup import SnapshotCatalog
    from homeregistry.storage import LiveStore

    config_path = Path(args.config) if args.config else get_config_path()

    output("Home Registry Initialization")
    output("=" * 50)
    output()

    settings = load_config(config_path)
    if config_path.exists():
        output(f"Using existing configuration: {config_path}")
    else:
        save_config(settings, config_path)
        output(f"Configuration file created: {config_path}")

    store = LiveStore(settings.database_path)
    stats = store.get_statistics()
    output(f"Database ready: {store.db_path} ({stats['total_records']} records)")

    catalog = SnapshotCatalog(settings.backup_dir)
    catalog.list()
    output(f"Snapshot directory ready: {catalog.directory}")
    output()
    output("Next steps:")
    output("  1. Run 'homeregistry token --user <admin> --save' to enable the HTTP API")
    output("  2. Run 'homeregistry backup create --user <admin>' to take a snapshot")
    return 0


def cmd_backup_help(args: argparse.Namespace) -> int:
    """Show backup command help when no backup command is given."""
    args.backup_parser.print_help()
    return 0


def cmd_backup_create(args: argparse.Namespace) -> int:
    """Snapshot the current dataset."""
    from homeregistry.backup import BackupError

    service, caller = _get_service_and_caller(args)
    try:
        entry = service.create(caller, description=args.description)
    except BackupError as e:
        return _report_backup_error(e)

    output("Backup created successfully!")
    output()
    output(f"  Name: {entry.name}")
    output(f"  Size: {entry.size}")
    output(f"  File: {service.catalog.directory / entry.name}")
    return 0


def cmd_backup_list(args: argparse.Namespace) -> int:
    """List snapshots."""
    from homeregistry.backup import BackupError

    service, caller = _get_service_and_caller(args)
    try:
        entries = service.list(caller)
    except BackupError as e:
        return _report_backup_error(e)

    if args.json:
        output(json.dumps([entry.to_dict() for entry in entries], indent=2), force=True)
        return 0

    if not entries:
        output("No backups found.")
        return 0

    output(f"{'NAME':<60} {'KIND':<9} {'SIZE':>10}  DATE")
    for entry in entries:
        output(
            f"{entry.name:<60} {entry.kind:<9} {entry.size:>10}  "
            f"{entry.modified_at.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            force=True,
        )
    return 0


def cmd_backup_download(args: argparse.Namespace) -> int:
    """Copy a snapshot out of the catalog."""
    from homeregistry.backup import BackupError

    service, caller = _get_service_and_caller(args)
    try:
        download = service.download(caller, args.name)
    except BackupError as e:
        return _report_backup_error(e)

    destination = Path(args.output) if args.output else Path.cwd()
    if destination.is_dir():
        destination = destination / download.filename

    destination.write_bytes(download.content)
    output(f"Downloaded {download.filename} to {destination}")
    return 0


def cmd_backup_upload(args: argparse.Namespace) -> int:
    """Add a snapshot file to the catalog."""
    from homeregistry.backup import BackupError

    source = Path(args.file)
    if not source.is_file():
        output_error(f"Error: File not found: {source}")
        return 1

    service, caller = _get_service_and_caller(args)
    try:
        entry = service.upload(caller, source.read_bytes(), args.name or source.name)
    except BackupError as e:
        return _report_backup_error(e)

    output(f"Backup uploaded as {entry.name} ({entry.size})")
    return 0


def cmd_backup_restore(args: argparse.Namespace) -> int:
    """Replace the dataset with a snapshot."""
    from homeregistry.backup import BackupError

    service, caller = _get_service_and_caller(args)
    try:
        metadata = service.snapshot_info(caller, args.name)
    except BackupError as e:
        return _report_backup_error(e)

    output("Home Registry Restore")
    output("=" * 50)
    output()
    output(f"Snapshot: {args.name}")
    output(f"  Created: {metadata.created_at}")
    output(f"  Format version: {metadata.format_version}")
    if metadata.description:
        output(f"  Description: {metadata.description}")
    output()

    if not args.force:
        output("WARNING: This will replace ALL existing Home Registry data.")
        output("(A safety snapshot of the current data will be created first)")
        output()
        if not _confirm("Proceed with restore?"):
            output("Restore cancelled.")
            return 0

    output("Restoring...")
    try:
        outcome = service.restore(caller, args.name)
    except BackupError as e:
        return _report_backup_error(e)

    output()
    output("Restore completed successfully!")
    output()
    output(f"  Records restored: {outcome.total_records}")
    for name, count in outcome.restored_counts.items():
        if count:
            output(f"    - {name}: {count}")
    output(f"  Previous data saved as: {outcome.safety_snapshot}")
    if outcome.resequence_warnings:
        output(
            "  Warning: id sequences not reset for: "
            + ", ".join(outcome.resequence_warnings)
        )
    return 0


def cmd_backup_delete(args: argparse.Namespace) -> int:
    """Delete a snapshot."""
    from homeregistry.backup import BackupError

    service, caller = _get_service_and_caller(args)

    if not args.force and not _confirm(f"Delete backup {args.name}?"):
        output("Delete cancelled.")
        return 0

    try:
        service.delete(caller, args.name)
    except BackupError as e:
        return _report_backup_error(e)

    output(f"Backup {args.name} deleted")
    return 0


def cmd_backup_info(args: argparse.Namespace) -> int:
    """Show a snapshot's metadata."""
    from homeregistry.backup import BackupError, parse_snapshot

    service, caller = _get_service_and_caller(args)
    try:
        metadata = service.snapshot_info(caller, args.name)
        entry = service.catalog.entry(args.name)
        counts = parse_snapshot(service.catalog.read(args.name)).record_counts()
    except BackupError as e:
        return _report_backup_error(e)

    if args.json:
        info = {
            "entry": entry.to_dict(),
            "metadata": metadata.to_dict(),
            "record_counts": counts,
        }
        output(json.dumps(info, indent=2), force=True)
        return 0

    output(f"Snapshot: {entry.name}")
    output(f"  Kind: {entry.kind}")
    output(f"  Size: {entry.size}")
    output(f"  Created: {metadata.created_at}")
    output(f"  Format version: {metadata.format_version}")
    output(f"  Producer version: {metadata.producer_version}")
    output(f"  Database: {metadata.database_kind}")
    output(f"  Secrets sealed: {'yes' if metadata.secrets else 'no'}")
    if metadata.description:
        output(f"  Description: {metadata.description}")
    output(f"  Records: {sum(counts.values())}")
    for name, count in counts.items():
        if count:
            output(f"    - {name}: {count}")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Serve the backup HTTP API in the foreground."""
    from homeregistry.api import BackupApiServer
    from homeregistry.auth import TokenAuthenticator
    from homeregistry.backup import BackupService

    settings = _load_settings(args)
    service = BackupService.from_settings(settings)

    if not settings.api.tokens:
        output_error("Warning: no API tokens configured; every backup request will be rejected.")
        output_error("Run 'homeregistry token --user <admin> --save' to create one.")

    server = BackupApiServer(
        service,
        TokenAuthenticator(settings.api.tokens, service.identity),
        host=args.host or settings.api.host,
        port=args.port if args.port is not None else settings.api.port,
    )

    output(f"Serving backup API at {server.get_url()} (Ctrl+C to stop)")
    try:
        started = server.start(blocking=True)
    finally:
        server.stop()

    if not started:
        output_error(f"Error: could not bind to {server.host}:{server.port}")
        return 1
    return 0


def cmd_token(args: argparse.Namespace) -> int:
    """Generate an API token."""
    from homeregistry.auth import generate_token

    token, digest = generate_token()

    if args.save:
        config_path = Path(args.config) if args.config else get_config_path()
        settings = load_config(config_path)
        settings.api.tokens[digest] = args.user
        save_config(settings, config_path)
        output(f"Token digest saved to {config_path}")
    else:
        output("Add this entry under api.tokens in the config file:")
        output(f"  {digest}: {args.user}")

    output()
    output("API token (shown once, store it securely):", force=True)
    output(token, force=True)
    return 0


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for the Home Registry CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
