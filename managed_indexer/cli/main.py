"""CLI entry point: argparse dispatcher for all subcommands."""
from __future__ import annotations

import argparse
import json
import sys
import traceback


# ---------------------------------------------------------------------------
# Command registry: command name -> (module_path, function_name)
# Lazy-imported at dispatch time to keep startup fast.
# ---------------------------------------------------------------------------
COMMANDS = {
    "sync":     ("managed_indexer.cli.commands.sync",     "cmd_sync"),
    "watch":    ("managed_indexer.cli.commands.watch",    "cmd_watch"),
    "scan":     ("managed_indexer.cli.commands.scan",     "cmd_scan"),
    "manifest": ("managed_indexer.cli.commands.manifest", "cmd_manifest"),
}


# ---------------------------------------------------------------------------
# Shared argparse helpers
# ---------------------------------------------------------------------------
def _add_env_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--env-file", help="dotenv file with credentials (reloaded on change in watch mode)")
    p.add_argument("--api-url", help="Indexing service base URL")
    p.add_argument("--default-branch", help="Base branch override (skips auto-detection)")


# ---------------------------------------------------------------------------
# Parser builder
# ---------------------------------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    from managed_indexer.cli._version import __version__

    parser = argparse.ArgumentParser(
        prog="managed-indexer",
        description="Keep a remote code index in sync with local git working copies",
    )
    parser.add_argument("--debug", action="store_true", help="Show stack traces on error")
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    # sync
    p = sub.add_parser("sync", help="Scan and upload once, then print per-root state")
    p.add_argument("roots", nargs="*", help="Workspace roots (default: current directory)")
    _add_env_args(p)

    # watch
    p = sub.add_parser("watch", help="Keep roots in sync as branches and commits change (daemon)")
    p.add_argument("roots", nargs="*", help="Workspace roots (default: current directory)")
    p.add_argument("--status-interval", type=float, default=60.0,
                   help="Seconds between state snapshots in the log (0 disables)")
    _add_env_args(p)

    # scan
    p = sub.add_parser("scan", help="Print watcher events for a root as JSON lines (no upload)")
    p.add_argument("root", nargs="?", default=".", help="Repository root")
    p.add_argument("--default-branch", help="Base branch override (skips auto-detection)")

    # manifest
    p = sub.add_parser("manifest", help="Fetch the server manifest for a root's current branch")
    p.add_argument("root", nargs="?", default=".", help="Repository root")
    p.add_argument("--branch", help="Branch to fetch (default: current branch)")
    _add_env_args(p)

    return parser


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------
def main() -> None:
    parser = build_parser()
    argv = sys.argv[1:]
    debug = False
    if "--debug" in argv:
        debug = True
        argv = [arg for arg in argv if arg != "--debug"]
    args = parser.parse_args(argv)
    args.debug = bool(debug or getattr(args, "debug", False))

    entry = COMMANDS.get(args.command)
    if not entry:
        parser.print_help()
        sys.exit(1)

    mod_path, fn_name = entry
    try:
        import importlib
        mod = importlib.import_module(mod_path)
        fn = getattr(mod, fn_name)
        fn(args)
    except KeyboardInterrupt:
        sys.exit(130)
    except Exception as exc:
        json.dump({"ok": False, "error": str(exc)}, sys.stdout, default=str)
        sys.stdout.write("\n")
        if args.debug:
            traceback.print_exc(file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
