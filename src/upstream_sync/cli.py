"""Command-line entry point (``upstream-sync``)."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from upstream_sync import __version__
from upstream_sync.config import load_config
from upstream_sync.config_loader import (
    discover_config_files,
    load_hierarchical_config,
    load_yaml_file,
)
from upstream_sync.core.git import GitPythonClient
from upstream_sync.errors import UserCancelled, handle_error
from upstream_sync.logger import setup_logging
from upstream_sync.prompts import TerminalDecisions, confirm_preview
from upstream_sync.release import GrayReleaseManager
from upstream_sync.sync import SyncOrchestrator, format_sync_report, report_to_json

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="upstream-sync",
        description="Sync selected directories from an upstream repository into this one",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Sync two directories from the upstream main branch, asking before applying
  upstream-sync --repo https://github.com/acme/platform.git --dirs src/core,docs

  # Unattended run that commits and pushes
  upstream-sync --non-interactive --push

  # Show what would change without touching the working tree or the hash index
  upstream-sync --preview-only

  # Expose 30% of the changed files, validate, then promote or roll back
  upstream-sync --gray-release

  # Restore the snapshot taken by the last release
  upstream-sync --rollback

Configuration is read from .upstream_sync/config.yml (or $UPSTREAM_SYNC_CONFIG)
and UPSTREAM_SYNC_* environment variables; command-line flags win.
        """,
    )
    parser.add_argument("--repo", help="Upstream repository URL")
    parser.add_argument("--branch", help="Upstream branch to sync from")
    parser.add_argument("--target-branch", help="Local branch receiving the changes")
    parser.add_argument("--dirs", help="Comma-separated directories to sync (src or src:dest)")
    parser.add_argument("--message", "-m", help="Commit message")
    parser.add_argument("--push", action="store_true", default=None, help="Push after committing")
    parser.add_argument(
        "--force", action="store_true", default=None, help="Re-stage every file, not only changed ones"
    )
    parser.add_argument(
        "--preview-only",
        action="store_true",
        default=None,
        help="Stop after the diff preview; nothing is applied or persisted",
    )
    parser.add_argument(
        "--non-interactive",
        "-y",
        action="store_true",
        default=None,
        help="Never prompt; unresolvable prompt-user conflicts stay unresolved",
    )
    parser.add_argument("--concurrency", type=int, help="Worker pool size")
    parser.add_argument("--retry-max", type=int, help="Retries for fetch and push")
    parser.add_argument("--retry-delay", type=int, help="Initial retry delay in milliseconds")
    parser.add_argument("--retry-backoff", type=float, help="Retry backoff factor")
    parser.add_argument("--config", "-c", help="Config file (skips discovery)")
    parser.add_argument("--repo-root", help="Local repository (default: current directory)")

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--gray-release", action="store_true", help="Canary release with validation")
    mode.add_argument("--full-release", action="store_true", help="Release all staged changes at once")
    mode.add_argument("--rollback", action="store_true", help="Restore the last release snapshot")

    output = parser.add_mutually_exclusive_group()
    output.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    output.add_argument("--silent", "-s", action="store_true", help="Only log errors")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument("--log-format", choices=["text", "json"], help="Log line format")
    parser.add_argument(
        "--version", action="version", version=f"upstream-sync version {__version__}"
    )
    return parser


def _parse_dirs(value: str) -> list[Any]:
    mappings: list[Any] = []
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        if ":" in item:
            source, target = item.split(":", 1)
            mappings.append({"source": source, "target": target})
        else:
            mappings.append(item)
    return mappings


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    """``SyncConfig`` values given on the command line."""
    overrides: dict[str, Any] = {
        "upstream_repo": args.repo,
        "upstream_branch": args.branch,
        "target_branch": args.target_branch,
        "commit_message": args.message,
        "auto_push": args.push,
        "force_overwrite": args.force,
        "preview_only": args.preview_only,
        "non_interactive": args.non_interactive,
        "concurrency_limit": args.concurrency,
    }
    if args.dirs:
        overrides["mappings"] = _parse_dirs(args.dirs)
    retry = {
        "max_retries": args.retry_max,
        "initial_delay": args.retry_delay,
        "backoff_factor": args.retry_backoff,
    }
    retry = {k: v for k, v in retry.items() if v is not None}
    if retry:
        overrides["retry"] = retry
    return {k: v for k, v in overrides.items() if v is not None}


def _read_yaml(args: argparse.Namespace) -> dict[str, Any]:
    if args.config:
        return load_yaml_file(Path(args.config))
    if discover_config_files():
        return load_hierarchical_config()
    return {}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv()

    try:
        yaml_data = _read_yaml(args)
        log_section = yaml_data.get("logging") or {}
        setup_logging(
            debug=args.verbose or str(log_section.get("level", "")).upper() == "DEBUG",
            log_file=args.log_file or log_section.get("file"),
            debug_format=args.log_format or log_section.get("format", "text"),
            silent=args.silent,
        )
        repo_root = Path(args.repo_root or ".").resolve()
        config = load_config(_overrides(args), yaml_data, require_source=not args.rollback)

        if args.rollback:
            plan = GrayReleaseManager(config.sync, repo_root).rollback()
            print(f"Rolled back release {plan.release_id}")
            return 0

        sync = config.sync
        git = GitPythonClient(repo_root, auth=sync.auth)
        interactive = not sync.non_interactive and sys.stdin.isatty()
        if not sync.non_interactive and not interactive:
            logger.info("stdin is not a terminal; running non-interactively")
            sync = sync.model_copy(update={"non_interactive": True})

        release_mode = "gray" if args.gray_release else "full" if args.full_release else "apply"
        orchestrator = SyncOrchestrator(
            sync,
            git,
            repo_root=git.working_dir,
            decisions=TerminalDecisions() if interactive else None,
            confirm=confirm_preview if interactive else None,
            release_mode=release_mode,
        )
        report = orchestrator.run()
    except KeyboardInterrupt:
        return handle_error(UserCancelled("Interrupted"))
    except Exception as exc:
        return handle_error(exc)

    if args.json:
        print(json.dumps(report_to_json(report), indent=2))
    else:
        print(format_sync_report(report))
    if report.unresolved:
        logger.warning(
            "%d conflicts need attention; see the report above", len(report.unresolved)
        )
    return 0


def run() -> None:
    """Console-script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
