"""
tether CLI - inspect and drive sync from the command line.

Usage:
    tether status [--json]
    tether sync [--force] [--json]
    tether watch [--duration SECONDS]
    tether tombstones list
    tether tombstones retry

Connection settings come from TETHER_* environment variables or a .env file
(see tether.config). ``status`` and ``tombstones list`` only read the local
store and work offline.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from tether.config import TetherSettings, get_settings
from tether.logging_config import setup_tether_logging
from tether.protocols import TetherError
from tether.storage.local import LocalRepository
from tether.storage.sqlite import SQLiteStore
from tether.sync.engine import SyncEngine

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def store_path(settings: TetherSettings, owner_id: str) -> Path:
    """Each owner gets its own local database."""
    return settings.data_dir / "owners" / owner_id / "local.db"


def open_repo(settings: TetherSettings, owner_id: Optional[str]) -> LocalRepository:
    if not owner_id:
        raise ValueError("No owner: pass --owner or set TETHER_OWNER_ID")
    return LocalRepository(SQLiteStore(store_path(settings, owner_id)))


async def start_engine(settings: TetherSettings, **callbacks):
    """Connect to Supabase, sign in and start a session.

    Returns:
        (engine, sync result of the initial reconciliation)
    """
    from tether.storage.remote import SupabaseIdentity, SupabaseRemoteStore

    if not settings.email or not settings.password:
        raise ValueError("TETHER_EMAIL and TETHER_PASSWORD must be set to sync")
    remote = await SupabaseRemoteStore.connect(settings)
    identity = SupabaseIdentity(remote.client)
    owner_id = await identity.sign_in(settings.email, settings.password)
    setup_tether_logging(owner_id, data_dir=settings.data_dir)

    engine = SyncEngine(
        remote,
        identity=identity,
        settings=settings,
        store_factory=lambda owner: SQLiteStore(store_path(settings, owner)),
        on_prompt=callbacks.pop("on_prompt", _print_prompt),
        **callbacks,
    )
    result = await engine.on_login(owner_id)
    return engine, result


def _print_prompt(prompt: str, message: str) -> None:
    print(f"[{prompt}] {message}", file=sys.stderr)


def _print_result(result, as_json: bool = False, forced: int = 0) -> None:
    if as_json:
        print(
            json.dumps(
                {
                    "success": result.success,
                    "pushed": result.pushed,
                    "pulled": result.pulled,
                    "renames": result.renames,
                    "evicted": result.evicted,
                    "conflicts": result.conflict_count,
                    "errors": result.errors,
                    "forced": forced,
                },
                indent=2,
            )
        )
        return
    if result.success:
        print(f"Sync complete: {result.pushed} queued for upload, {result.pulled} pulled")
        if forced:
            print(f"Force upload: {forced} item(s) re-uploaded")
    else:
        print("Sync failed:")
        for error in result.errors:
            print(f"  - {error}")
    for old, new in result.renames.items():
        print(f"  renamed {old!r} -> {new!r}")
    for name in result.evicted:
        print(f"  evicted {name!r}")
    if result.conflict_count:
        print(f"  {result.conflict_count} conflict(s) resolved")


def cmd_status(args, settings: TetherSettings):
    """Show local store contents and outstanding work."""
    owner_id = args.owner or settings.owner_id
    repo = open_repo(settings, owner_id)
    counts = repo.counts()
    local_settings = repo.load_settings()
    if args.json:
        print(json.dumps({"owner_id": owner_id, **counts, "settings": local_settings}, indent=2, default=str))
        return
    print(f"Local Sync Status for {owner_id}")
    print("=" * 40)
    print(f"Records:     {counts['records']}")
    for name, record in sorted(repo.load_records().items()):
        print(f"  - {name} (id={record.id}, updated_at={record.updated_at})")
    print(f"Log days:    {counts['log_days']}")
    print(f"Tombstones:  {counts['tombstones']}")
    print(f"Watermarks:  {counts['watermarks']}")
    last_opened = local_settings.get("last_opened_record")
    if last_opened:
        print(f"Last opened: {last_opened}")


def cmd_tombstones(args, settings: TetherSettings):
    """List or retry pending deletes."""
    if args.tombstones_action == "list":
        repo = open_repo(settings, args.owner or settings.owner_id)
        tombstones = sorted(repo.load_tombstones().values(), key=lambda t: t.created_at)
        if not tombstones:
            print("No pending deletes.")
            return
        for t in tombstones:
            error = f" last_error={t.last_error}" if t.last_error else ""
            print(f"  {t.name} (attempts={t.attempts}){error}")
        return

    async def _retry():
        engine, _ = await start_engine(settings)
        try:
            await engine.retry()
            await engine.queue.join(timeout=settings.upload_timeout_seconds)
            remaining = engine.pending_tombstones()
        finally:
            await engine.on_logout()
        if remaining:
            print(f"{len(remaining)} delete(s) still pending: {', '.join(t.name for t in remaining)}")
        else:
            print("All deletes confirmed.")

    asyncio.run(_retry())


def cmd_sync(args, settings: TetherSettings):
    """Run one full reconciliation and wait for uploads.

    With ``--force``, every local record, log day and the settings blob is
    then re-uploaded regardless of what the remote holds.
    """

    async def _sync():
        engine, result = await start_engine(settings)
        forced = 0
        try:
            if args.force and result.success:
                forced = await engine.upload_all()
            if not await engine.queue.join(timeout=settings.upload_timeout_seconds):
                print("Uploads still pending; they will resume on the next sync.", file=sys.stderr)
            status = engine.status
        finally:
            await engine.on_logout()
        _print_result(result, as_json=args.json, forced=forced)
        if not args.json:
            print(f"Status: {status.value}")
        return result

    result = asyncio.run(_sync())
    if not result.success:
        sys.exit(1)


def _print_change(change) -> None:
    key = change.row.key if change.row else change.key
    print(f"  {change.source}: {change.change_type.value} {change.collection} {key}")


def cmd_watch(args, settings: TetherSettings):
    """Reconcile, then follow push and poll updates until interrupted."""

    async def _watch():
        engine, result = await start_engine(
            settings,
            on_status=lambda status: print(f"Status: {status.value}"),
            on_remote_change=_print_change,
        )
        _print_result(result)
        try:
            if args.duration:
                await asyncio.sleep(args.duration)
            else:
                await asyncio.Event().wait()
        finally:
            await engine.on_logout()

    try:
        asyncio.run(_watch())
    except KeyboardInterrupt:
        print("\nStopped.")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="tether",
        description="Offline-first sync between a local store and Supabase",
    )
    parser.add_argument("--owner", "-o", help="Owner ID (local commands)", default=None)
    parser.add_argument("--data-dir", help="Local data directory", default=None)

    subparsers = parser.add_subparsers(dest="command", required=True)

    # status
    p_status = subparsers.add_parser("status", help="Show local sync state")
    p_status.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # sync
    p_sync = subparsers.add_parser("sync", help="Run a full reconciliation")
    p_sync.add_argument(
        "--force", "-f", action="store_true", help="Re-upload all local data after reconciling"
    )
    p_sync.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # watch
    p_watch = subparsers.add_parser("watch", help="Reconcile, then follow remote changes")
    p_watch.add_argument("--duration", "-d", type=float, default=None, help="Stop after N seconds")

    # tombstones
    p_tomb = subparsers.add_parser("tombstones", help="Pending deletes")
    tomb_sub = p_tomb.add_subparsers(dest="tombstones_action", required=True)
    tomb_sub.add_parser("list", help="List pending deletes")
    tomb_sub.add_parser("retry", help="Retry pending deletes now")

    args = parser.parse_args(argv)

    settings = get_settings()
    if args.data_dir:
        settings = settings.model_copy(update={"data_dir": Path(args.data_dir)})

    try:
        if args.command == "status":
            cmd_status(args, settings)
        elif args.command == "sync":
            cmd_sync(args, settings)
        elif args.command == "watch":
            cmd_watch(args, settings)
        elif args.command == "tombstones":
            cmd_tombstones(args, settings)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except TetherError as e:
        logger.error(f"Sync failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
