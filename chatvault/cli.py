#!/usr/bin/env python3
"""
chatvault CLI: local conversation store and encrypted sync, from a shell.

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    serve           start           Run the reference sync server
    status          ping            Sync status and server health
    push                            Full encrypted push to the sync server
    pull                            Catch up on remote changes (delta)
    sync                            Conflict-aware two-way sync
    export          backup          Write an encrypted offline backup
    import          restore         Restore from an offline backup
    stats           info            Local database counts
    compact         fold            Fold older messages into a summary
    enable                          Turn sync on (runtime override)
    disable                         Turn sync off (runtime override)
"""

import argparse
import asyncio
import getpass
import json
import logging
import sys
from pathlib import Path

from chatvault import __version__


def _setup_logging(cfg: dict, verbose: bool = False):
    log_cfg = cfg.get("logging", {})
    level_name = "DEBUG" if verbose else str(log_cfg.get("level", "INFO"))
    level = getattr(logging, level_name.upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def _load(args) -> dict:
    from chatvault.config import get_config

    cfg = get_config()
    _setup_logging(cfg, getattr(args, "verbose", False))
    return cfg


def _open_tree(cfg: dict):
    from chatvault.storage.sqlite_store import SQLiteStore
    from chatvault.tree import MessageTree

    return MessageTree(SQLiteStore(cfg["storage"]["sqlite_path"]))


def _build_engine(cfg: dict, args=None):
    from chatvault.config import SyncSettings, get_runtime_config
    from chatvault.sync.client import SyncClient
    from chatvault.sync.engine import SyncEngine

    settings = SyncSettings.from_config(cfg, get_runtime_config())
    if args is not None and getattr(args, "passphrase", None):
        settings.passphrase = args.passphrase
    client = SyncClient(
        settings.api_url,
        timeout=settings.timeout_seconds,
        retry_count=settings.retry_count,
        retry_delay=settings.retry_delay_seconds,
    )
    return SyncEngine(_open_tree(cfg), client, settings)


def _passphrase(args, cfg: dict) -> str:
    value = getattr(args, "passphrase", None) or cfg.get("sync", {}).get("passphrase")
    if not value:
        value = getpass.getpass("  Passphrase: ")
    return value


def _print_result(result) -> int:
    if result is None:
        print("  ·  Skipped (sync disabled, not configured, or already running)")
        return 0
    if result.conflicts:
        print(f"  ⚠  {len(result.conflicts)} conflict(s) need a decision; nothing applied")
        for c in result.conflicts[:20]:
            print(f"     {c.type.value:<13} {c.id}  (Δ {c.time_diff} ms)")
        return 2
    if not result.success:
        print(f"  ✗  {result.error}")
        return 1
    print(
        f"  ✓  Done: {result.resolved} resolved, {result.applied} applied, "
        f"{result.skipped} skipped"
    )
    return 0


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Run the reference sync server."""
    import uvicorn
    from chatvault.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]

    print(f"  chatvault sync server v{__version__}")
    print(f"  Listening on {host}:{port}")
    print(f"  Database: {cfg['server']['sqlite_path']}")
    print()

    uvicorn.run(
        "chatvault.server:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_status(args):
    """Show sync status and probe the sync server."""
    cfg = _load(args)
    engine = _build_engine(cfg, args)
    settings = engine.settings

    print(f"  Sync:       {'enabled' if settings.enabled else 'disabled'}"
          f" (auto: {'on' if settings.auto_sync else 'off'}, strategy: {settings.strategy})")
    print(f"  Server:     {settings.api_url or '(not set)'}")
    if settings.api_url:
        up = asyncio.run(engine.health.check(force=True))
        print(f"  Health:     {'UP' if up else 'DOWN'}")
    state = engine.status()
    print(f"  Last state: {state['syncStatus']}")
    print(f"  Last sync:  {state['lastSyncTime'] or 'never'}")
    if state.get("lastError"):
        print(f"  Last error: {state['lastError']}")
    return 0


def cmd_push(args):
    cfg = _load(args)
    engine = _build_engine(cfg, args)
    return _print_result(asyncio.run(engine.sync_to_cloud(force=args.force)))


def cmd_pull(args):
    cfg = _load(args)
    engine = _build_engine(cfg, args)
    if args.snapshot:
        return _print_result(asyncio.run(engine.sync_from_cloud()))
    return _print_result(asyncio.run(engine.pull_changes(args.strategy)))


def cmd_sync(args):
    cfg = _load(args)
    engine = _build_engine(cfg, args)
    return _print_result(asyncio.run(engine.sync_with_conflict_resolution(args.strategy)))


def cmd_export(args):
    """Write an encrypted offline backup."""
    from chatvault.sync.backup import export_backup

    cfg = _load(args)
    tree = _open_tree(cfg)
    content = export_backup(tree, _passphrase(args, cfg))
    Path(args.output).write_text(content)
    stats = tree.store.get_stats()
    print(f"  📦 {stats['conversations']} conversations, {stats['messages']} messages → {args.output}")
    return 0


def cmd_import(args):
    """Restore from an offline backup (replaces all local conversations)."""
    from chatvault.sync.backup import import_backup
    from chatvault.sync.errors import SyncError

    cfg = _load(args)
    tree = _open_tree(cfg)
    try:
        result = import_backup(tree, Path(args.file).read_text(), _passphrase(args, cfg))
    except SyncError as e:
        print(f"  ✗  {e}")
        return 1
    stats = result["stats"]
    print(f"  ✓  Restored {stats['conversations']} conversations, {stats['messages']} messages"
          f" (exported {result['exportDate']})")
    return 0


def cmd_stats(args):
    cfg = _load(args)
    tree = _open_tree(cfg)
    stats = tree.store.get_stats()
    if args.json:
        print(json.dumps(stats, indent=2))
        return 0
    print(f"  📼 Database: {cfg['storage']['sqlite_path']}")
    print(f"  💬 Conversations: {stats['conversations']}")
    print(f"  ✉  Messages: {stats['messages']}")
    for status, count in sorted(stats["by_status"].items()):
        print(f"       {status}: {count}")
    print(f"  🪦 Tombstones: {stats['tombstones']}")
    return 0


def cmd_enable(args):
    from chatvault.config import update_runtime_config

    _load(args)
    update_runtime_config("sync_enabled", True)
    if args.url:
        update_runtime_config("sync_api_url", args.url)
    if args.strategy:
        update_runtime_config("sync_strategy", args.strategy)
    print("  ✓  Sync enabled")
    return 0


def cmd_disable(args):
    from chatvault.config import update_runtime_config

    _load(args)
    update_runtime_config("sync_enabled", False)
    print("  ✓  Sync disabled")
    return 0


def cmd_compact(args):
    """Fold older messages of a conversation into a summary."""
    from chatvault.backends import create_backend
    from chatvault.summarizer import maybe_summarize, summarize

    cfg = _load(args)
    tree = _open_tree(cfg)
    if tree.get_conversation(args.conversation_id) is None:
        print(f"  ✗  No conversation {args.conversation_id}")
        return 1
    backend = create_backend(cfg)
    if backend is None:
        print("  ✗  No backend configured (backend.url)")
        return 1

    if args.if_needed:
        summary_id = asyncio.run(maybe_summarize(tree, backend, args.conversation_id, cfg))
    else:
        summ_cfg = cfg.get("auto_summarization", {})
        keep_last = args.keep_last if args.keep_last is not None else int(summ_cfg.get("keep_last", 4))
        model = args.model or summ_cfg.get("summary_model") or None
        summary_id = asyncio.run(
            summarize(tree, backend, args.conversation_id, keep_last=keep_last, model=model)
        )

    if summary_id is None:
        print("  ·  Nothing folded")
        return 0
    print(f"  ✓  Folded into summary {summary_id}")
    return 0


def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under its name and aliases."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


STRATEGIES = ["local_wins", "remote_wins", "timestamp", "merge", "manual"]


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="chatvault",
        description="chatvault: local-first conversations with encrypted sync.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"chatvault {__version__}",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes")

    _add_command(sub, ["serve", "start"], "Run the reference sync server", cmd_serve, setup_serve)

    def setup_passphrase(p):
        p.add_argument("--passphrase", default=None, help="Sync passphrase (default: from config)")

    _add_command(sub, ["status", "ping"], "Sync status and server health", cmd_status, setup_passphrase)

    def setup_push(p):
        setup_passphrase(p)
        p.add_argument("--force", action="store_true",
                       help="Push even if this device has never synced (overwrites remote)")

    _add_command(sub, ["push"], "Full encrypted push", cmd_push, setup_push)

    def setup_pull(p):
        setup_passphrase(p)
        p.add_argument("--snapshot", action="store_true",
                       help="Apply the full remote snapshot wholesale instead of a delta merge")
        p.add_argument("--strategy", choices=STRATEGIES, default=None)

    _add_command(sub, ["pull"], "Catch up on remote changes", cmd_pull, setup_pull)

    def setup_sync(p):
        setup_passphrase(p)
        p.add_argument("--strategy", "-s", choices=STRATEGIES, default=None,
                       help="Conflict strategy (default: from config)")

    _add_command(sub, ["sync"], "Conflict-aware two-way sync", cmd_sync, setup_sync)

    def setup_export(p):
        setup_passphrase(p)
        p.add_argument("--output", "-o", default="chatvault_backup.json", help="Output file")

    _add_command(sub, ["export", "backup"], "Write an encrypted offline backup", cmd_export, setup_export)

    def setup_import(p):
        setup_passphrase(p)
        p.add_argument("file", help="Backup file written by 'chatvault export'")

    _add_command(sub, ["import", "restore"], "Restore from an offline backup", cmd_import, setup_import)

    def setup_stats(p):
        p.add_argument("--json", action="store_true", help="Raw JSON output")

    _add_command(sub, ["stats", "info"], "Local database counts", cmd_stats, setup_stats)

    def setup_compact(p):
        p.add_argument("conversation_id", help="Conversation to fold")
        p.add_argument("--keep-last", type=int, default=None,
                       help="Messages to keep unfolded (default: from config)")
        p.add_argument("--model", default=None, help="Summary model (default: from config)")
        p.add_argument("--if-needed", action="store_true",
                       help="Only fold when auto_summarization is enabled and over budget")

    _add_command(sub, ["compact", "fold"], "Fold older messages into a summary", cmd_compact, setup_compact)

    def setup_enable(p):
        p.add_argument("--url", default=None, help="Sync server URL")
        p.add_argument("--strategy", choices=STRATEGIES, default=None)

    _add_command(sub, ["enable"], "Turn sync on", cmd_enable, setup_enable)
    _add_command(sub, ["disable"], "Turn sync off", cmd_disable)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    return args.func(args) or 0


if __name__ == "__main__":
    sys.exit(main())
