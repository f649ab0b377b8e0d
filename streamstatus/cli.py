#!/usr/bin/env python3
"""
streamstatus: Stream Status CLI

Usage:
    streamstatus status                          Config and ledger diagnostics
    streamstatus streams [--status S] [--category C] [--priority P]
    streamstatus show <id>                       Stream with commits and history
    streamstatus add <id> <title> --category C --priority P [--branch B]
                     [--worktree PATH] [--number N]
    streamstatus update <id> [--status S] [--progress N] [--phase N] [--blocked-by ID]
    streamstatus complete <id> [--summary TEXT]
    streamstatus commit <id> <hash> <message> [--author A] [--files N]
    streamstatus scan [<id>]                     Record new git commits
    streamstatus reconcile [--apply] [--archive-stale]
    streamstatus worktrees                       List git worktrees
    streamstatus merged [--base BRANCH]          Branches merged into main
    streamstatus archive <id> [--summary TEXT] [--keep-worktree] [--keep-plan]
    streamstatus archive-bulk <id>... [--summary TEXT] [--keep-worktree] [--keep-plan]
    streamstatus process [--max N]               Run pending summary jobs
    streamstatus jobs [--status S]               List summary jobs
    streamstatus discover                        Find or propose the API server port
    streamstatus serve                           Run the API server
    streamstatus version
"""

from __future__ import annotations

import json
import sys

_VALUE_FLAGS = (
    "--status", "--category", "--priority", "--branch", "--worktree", "--number",
    "--progress", "--phase", "--blocked-by", "--summary", "--author", "--files",
    "--base", "--max",
)


def _json_out(data):
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _config():
    from streamstatus.core.config import Config
    from streamstatus.server import configure_logging

    cfg = Config.load()
    cfg.validate()
    configure_logging(cfg.log_level)
    return cfg


def _db(cfg):
    from streamstatus.core.db import open_db
    return open_db(cfg.resolved_db_path)


def cmd_status(args):
    from streamstatus.api import stats, summary_jobs
    cfg = _config()
    info = cfg.as_dict()
    for key in ("project_name", "project_root", "worktree_root", "db_path"):
        print(f"  {key + ':':<15} {info[key]}")
    key_err = cfg.check_api_key()
    print(f"  {'api_key:':<15} {'OK' if key_err is None else 'MISSING: ' + key_err}")
    db = _db(cfg)
    pending = summary_jobs(db=db, status="pending")["total"]
    print(f"  {'summary jobs:':<15} {pending} pending")
    _json_out(stats(db=db))


def cmd_streams(args):
    from streamstatus.api import list_streams
    cfg = _config()
    _json_out(list_streams(
        db=_db(cfg),
        status=_get_opt(args, "--status"),
        category=_get_opt(args, "--category"),
        priority=_get_opt(args, "--priority"),
    ))


def cmd_show(args):
    from streamstatus.api import commits, get_stream, history
    pos = _positional(args)
    if not pos:
        _err("Usage: streamstatus show <id>")
    cfg = _config()
    db = _db(cfg)
    recent = commits(db=db, stream_id=pos[0])
    _json_out({
        "stream": get_stream(pos[0], db=db),
        "commit_count": recent["total"],
        "commits": recent["commits"],
        "history": history(pos[0], db=db),
    })


def cmd_add(args):
    from streamstatus.api import add_stream
    pos = _positional(args)
    if len(pos) < 2:
        _err("Usage: streamstatus add <id> <title> --category C --priority P")
    cfg = _config()
    stream_id, title = pos[0], " ".join(pos[1:])
    _json_out(add_stream(
        stream_id,
        title,
        db=_db(cfg),
        category=_get_opt(args, "--category") or "backend",
        priority=_get_opt(args, "--priority") or "medium",
        branch=_get_opt(args, "--branch") or stream_id,
        worktree_path=_get_opt(args, "--worktree") or str(cfg.resolved_worktree_root / stream_id),
        stream_number=_get_opt(args, "--number"),
    ))


def cmd_update(args):
    from streamstatus.api import update_stream
    pos = _positional(args)
    if not pos:
        _err("Usage: streamstatus update <id> [--status S] [--progress N]")
    cfg = _config()
    _json_out(update_stream(
        pos[0],
        db=_db(cfg),
        status=_get_opt(args, "--status"),
        progress=_get_int(args, "--progress"),
        current_phase=_get_int(args, "--phase"),
        blocked_by=_get_opt(args, "--blocked-by"),
    ))


def cmd_complete(args):
    from streamstatus.api import complete_stream
    pos = _positional(args)
    if not pos:
        _err("Usage: streamstatus complete <id> [--summary TEXT]")
    cfg = _config()
    _json_out(complete_stream(pos[0], db=_db(cfg), summary=_get_opt(args, "--summary")))


def cmd_commit(args):
    from streamstatus.api import add_commit
    pos = _positional(args)
    if len(pos) < 3:
        _err("Usage: streamstatus commit <id> <hash> <message>")
    cfg = _config()
    _json_out(add_commit(
        pos[0],
        pos[1],
        " ".join(pos[2:]),
        db=_db(cfg),
        author=_get_opt(args, "--author"),
        files_changed=_get_int(args, "--files") or 0,
    ))


def cmd_scan(args):
    from streamstatus.api import scan_commits
    pos = _positional(args)
    cfg = _config()
    _json_out(scan_commits(db=_db(cfg), config=cfg, stream_id=pos[0] if pos else None))


def cmd_reconcile(args):
    from streamstatus.api import reconcile
    cfg = _config()
    result = reconcile(
        db=_db(cfg),
        config=cfg,
        dry_run="--apply" not in args,
        auto_archive_stale="--archive-stale" in args,
    )
    print(result["report"])


def cmd_worktrees(args):
    from streamstatus.api import worktrees
    _json_out(worktrees(config=_config()))


def cmd_merged(args):
    from streamstatus.api import merged_branches
    _json_out(merged_branches(config=_config(), base=_get_opt(args, "--base")))


def cmd_archive(args):
    from streamstatus.api import archive_stream
    pos = _positional(args)
    if not pos:
        _err("Usage: streamstatus archive <id> [--summary TEXT]")
    cfg = _config()
    result = archive_stream(
        pos[0],
        db=_db(cfg),
        config=cfg,
        summary=_get_opt(args, "--summary"),
        delete_worktree="--keep-worktree" not in args,
        cleanup_plan_files="--keep-plan" not in args,
    )
    print(result["message"], file=sys.stderr)
    for err in result["retirement"]["errors"]:
        print(f"  ! {err}", file=sys.stderr)
    _json_out(result)


def cmd_archive_bulk(args):
    from streamstatus.api import archive_bulk
    pos = _positional(args)
    if not pos:
        _err("Usage: streamstatus archive-bulk <id>...")
    cfg = _config()
    result = archive_bulk(
        pos,
        db=_db(cfg),
        config=cfg,
        summary=_get_opt(args, "--summary"),
        delete_worktree="--keep-worktree" not in args,
        cleanup_plan_files="--keep-plan" not in args,
    )
    print(result["message"], file=sys.stderr)
    _json_out(result)


def cmd_process(args):
    from streamstatus.api import process
    cfg = _config()
    key_err = cfg.check_api_key()
    if key_err:
        _err(key_err)
    _json_out(process(db=_db(cfg), config=cfg, max_jobs=_get_int(args, "--max") or 10))


def cmd_jobs(args):
    from streamstatus.api import summary_jobs
    cfg = _config()
    _json_out(summary_jobs(db=_db(cfg), status=_get_opt(args, "--status")))


def cmd_discover(args):
    from dataclasses import asdict
    from streamstatus.discovery import discover_server
    found = discover_server(_config())
    _json_out(asdict(found))


def cmd_serve(args):
    from streamstatus.server import run_server
    cfg = _config()
    if not cfg.api_enabled:
        _err("API server disabled (API_ENABLED=false)")
    result = run_server(cfg)
    if result["existing"]:
        print(f"Server already running on port {result['port']}", file=sys.stderr)


def cmd_version(args):
    from streamstatus.api import version
    print(version()["version"])


COMMANDS = {
    "status": cmd_status,
    "streams": cmd_streams,
    "show": cmd_show,
    "add": cmd_add,
    "update": cmd_update,
    "complete": cmd_complete,
    "commit": cmd_commit,
    "scan": cmd_scan,
    "reconcile": cmd_reconcile,
    "worktrees": cmd_worktrees,
    "merged": cmd_merged,
    "archive": cmd_archive,
    "archive-bulk": cmd_archive_bulk,
    "process": cmd_process,
    "jobs": cmd_jobs,
    "discover": cmd_discover,
    "serve": cmd_serve,
    "version": cmd_version,
}


def _get_opt(args, flag):
    """Extract value after a flag from args list."""
    if flag in args:
        idx = args.index(flag)
        if idx + 1 < len(args):
            return args[idx + 1]
    return None


def _get_int(args, flag):
    value = _get_opt(args, flag)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        _err(f"{flag} expects an integer, got {value!r}")


def _positional(args):
    """Arguments that are neither flags nor flag values."""
    out = []
    skip = False
    for arg in args:
        if skip:
            skip = False
            continue
        if arg in _VALUE_FLAGS:
            skip = True
            continue
        if arg.startswith("--"):
            continue
        out.append(arg)
    return out


def _err(msg):
    print(msg, file=sys.stderr)
    sys.exit(1)


def main(argv=None):
    from streamstatus.core.errors import StreamStatusError

    argv = sys.argv[1:] if argv is None else argv
    if not argv or argv[0] in ("-h", "--help", "help"):
        print(__doc__.strip())
        sys.exit(0)

    cmd = argv[0]
    handler = COMMANDS.get(cmd)
    if not handler:
        print(f"Unknown command: {cmd}", file=sys.stderr)
        print(f"Available: {', '.join(COMMANDS.keys())}", file=sys.stderr)
        sys.exit(1)

    try:
        handler(argv[1:])
    except StreamStatusError as e:
        _err(f"Error: {e}")


if __name__ == "__main__":
    main()
