"""CLI entry point for the session engine.

Usage:
    python -m taskdeck.engine run "Add a dark mode toggle" --feature dark-mode
    python -m taskdeck.engine run --provider cursor --model auto "Fix the login test"
    python -m taskdeck.engine probe
    python -m taskdeck.engine worktrees --cwd ~/src/webapp
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .config import EngineConfig
from .engine import Engine
from .errors import EngineError
from .models import Message, MessageRole, QueryKind, QueryOptions, SessionState

_PROJECT_ID = "cli"


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="taskdeck",
        description="Run coding-agent CLIs as isolated, scheduled sessions",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file (default: TASKDECK_* environment only)",
    )
    parser.add_argument(
        "--cwd",
        default=None,
        help="Project root (default: current dir)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a streaming query and print its messages")
    run.add_argument("prompt", nargs="?", default=None, help="The prompt (inline string)")
    run.add_argument(
        "--prompt-file", "-f",
        default=None,
        help="Read the prompt from a file (.md, .txt, etc.)",
    )
    run.add_argument("--provider", default=None, help="claude, cursor or opencode")
    run.add_argument("--model", default=None, help="Model id or alias (default: from config)")
    run.add_argument(
        "--feature",
        default=None,
        help="Feature id; runs in its own git worktree",
    )
    run.add_argument(
        "--read-only",
        action="store_true",
        help="Deny filesystem-mutating tools",
    )
    run.add_argument(
        "--max-concurrency",
        type=int,
        default=None,
        help="Concurrent sessions for the project (default: 3)",
    )

    sub.add_parser("probe", help="Show provider availability")
    sub.add_parser("worktrees", help="List the project's worktrees")

    args = parser.parse_args(argv)

    config = _load_config(args.config)
    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    engine = Engine(config=config)
    root = Path(args.cwd or ".").expanduser().resolve()

    try:
        if args.command == "run":
            prompt = _resolve_prompt(args.prompt, args.prompt_file)
            engine.register_project(_PROJECT_ID, root, args.max_concurrency)
            code = asyncio.run(_run(engine, args, prompt))
        elif args.command == "probe":
            code = asyncio.run(_probe(engine))
        else:
            engine.register_project(_PROJECT_ID, root)
            code = asyncio.run(_worktrees(engine))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        asyncio.run(engine.shutdown())
        sys.exit(130)
    except EngineError as exc:
        print(f"Error ({exc.kind.value}): {exc}")
        sys.exit(1)
    sys.exit(code)


def _load_config(path: str | None) -> EngineConfig:
    if path is None:
        return EngineConfig.from_env()
    from .yaml_config import load_yaml_config

    try:
        return load_yaml_config(path)
    except FileNotFoundError:
        print(f"Error: Config file not found: {path}")
        sys.exit(1)
    except ValueError as exc:
        print(f"Error: Invalid config {path}: {exc}")
        sys.exit(1)


def _resolve_prompt(inline: str | None, file_path: str | None) -> str:
    """Get the prompt from the inline arg or a file. Exactly one must be provided."""
    if inline and file_path:
        print("Error: Provide either a prompt or --prompt-file, not both.")
        sys.exit(1)

    if file_path:
        p = Path(file_path)
        if not p.is_file():
            print(f"Error: Prompt file not found: {file_path}")
            sys.exit(1)
        return p.read_text(encoding="utf-8").strip()

    if inline:
        return inline

    print("Error: Provide a prompt or --prompt-file.")
    sys.exit(1)


async def _run(engine: Engine, args: argparse.Namespace, prompt: str) -> int:
    try:
        session = await engine.submit_query(
            QueryKind.STREAMING,
            args.provider,
            args.model,
            prompt,
            project_id=_PROJECT_ID,
            feature_id=args.feature,
            options=QueryOptions(read_only=args.read_only),
        )
        async for message in session.stream():
            _print_message(message)
        state = await session.wait()
    finally:
        await engine.shutdown()

    print(f"\n=== Session {session.session_id}: {state.value} ===")
    if session.worktree is not None:
        print(f"Worktree: {session.worktree.path} ({session.worktree.branch})")
    return 0 if state == SessionState.COMPLETED else 1


def _print_message(message: Message) -> None:
    if message.role == MessageRole.USER:
        return
    if message.text:
        prefix = "" if message.role == MessageRole.AGENT else f"[{message.role.value}] "
        print(f"{prefix}{message.text}")
    for block in message.tool_uses:
        print(f"  -> {block.tool_name} {dict(block.tool_input or {}) or ''}")
    for block in message.tool_results:
        if block.error_kind is not None:
            print(f"  <- {block.tool_name or block.tool_id}: {block.error_kind.value}")
        elif block.is_error:
            print(f"  <- {block.tool_name or block.tool_id}: error")


async def _probe(engine: Engine) -> int:
    report = await engine.provider_status()
    for provider_id, status in sorted(report.items()):
        version = status.version or "-"
        detail = f"  {status.detail}" if status.detail else ""
        print(f"{provider_id:<10} {status.status.value:<16} {version}{detail}")
    return 0 if any(s.is_ready for s in report.values()) else 1


async def _worktrees(engine: Engine) -> int:
    for worktree in await engine.get_worktrees(_PROJECT_ID):
        marker = "*" if worktree.is_main else " "
        dirty = f"{worktree.changed_files} changed" if worktree.is_dirty else "clean"
        print(f"{marker} {worktree.branch:<30} {dirty:<12} {worktree.path}")
    return 0


if __name__ == "__main__":
    main()
