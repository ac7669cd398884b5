"""CLI entry point: python -m orchestra <command>"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

import yaml

from orchestra.config import OrchestraConfig, load_config, set_config_value
from orchestra.context import OrchestratorContext
from orchestra.errors import OrchestraError
from orchestra.models import Agent, IsolationTier
from orchestra.orchestrator import AgentOrchestrator
from orchestra.paths import PathContext, to_context

logger = logging.getLogger("orchestra")


def _batch_count(value: str) -> int:
    try:
        count = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}") from None
    if count < 1:
        raise argparse.ArgumentTypeError(f"count must be at least 1, got {count}")
    return count


def _format_agent(agent: Agent) -> str:
    diff = agent.diff_stats
    changes = f"+{diff.insertions}/-{diff.deletions} ({diff.files_changed} files)"
    status = agent.status.value
    if agent.pending_approval:
        status = f"{status}: {agent.pending_approval}"
    return (
        f"{agent.id:>3}  {agent.name:<12} {agent.isolation_tier.value:<9} "
        f"{agent.branch:<20} {changes:<22} {to_context(agent.worktree_path, PathContext.DISPLAY)}"
        f"\n     {status}"
    )


# ── Commands ─────────────────────────────────────────────────────────────────


async def _create(orch: AgentOrchestrator, args: argparse.Namespace) -> None:
    tier = IsolationTier(args.tier) if args.tier else None
    result = await orch.create_agents(
        args.count, tier=tier, allow_fallback=args.allow_fallback, start_sessions=not args.no_session
    )
    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)
    for agent in result.created:
        print(f"Created {agent.name} ({agent.branch}, {agent.isolation_tier.value})")
    for agent in result.adopted:
        print(f"Adopted existing worktree as {agent.name}")
    for agent in result.restored:
        print(f"Restored {agent.name}")
    if result.errors:
        for name, error in result.errors.items():
            print(f"Error: {name}: {error}", file=sys.stderr)
        raise OrchestraError(f"{len(result.errors)} of {args.count} agents failed")


async def _list(orch: AgentOrchestrator, args: argparse.Namespace) -> None:
    await orch.refresh_status()
    await orch.refresh_diff_stats()
    agents = orch.agents()
    if not agents:
        print("No agents.")
        return
    for agent in agents:
        print(_format_agent(agent))
    waiting = orch.waiting_count()
    if waiting:
        print(f"\n{waiting} agent(s) waiting for you")


async def _delete(orch: AgentOrchestrator, args: argparse.Namespace) -> None:
    agent = await orch.delete_agent(args.agent)
    print(f"Deleted {agent.name}")


async def _rename(orch: AgentOrchestrator, args: argparse.Namespace) -> None:
    old = orch.get(args.agent).name
    agent = await orch.rename_agent(args.agent, args.new_name)
    print(f"Renamed {old} -> {agent.name} ({agent.branch})")


async def _focus(orch: AgentOrchestrator, args: argparse.Namespace) -> list[str]:
    return await orch.focus_session(args.agent)


async def _cleanup(orch: AgentOrchestrator, args: argparse.Namespace) -> None:
    # restore_from_disk already reclaimed orphans for this command
    print("Cleanup complete")


_COMMANDS = {
    "create": _create,
    "list": _list,
    "delete": _delete,
    "rename": _rename,
    "focus": _focus,
    "cleanup": _cleanup,
}


async def _run(repo: Path, config: OrchestraConfig, args: argparse.Namespace):
    ctx = await OrchestratorContext.create(repo, config)
    orch = AgentOrchestrator(ctx)
    try:
        summary = await orch.restore_from_disk(reclaim_orphans=args.command == "cleanup")
        if args.command == "cleanup":
            print(f"Reclaimed {summary['orphans_reclaimed']} orphaned backend(s)")
        return await _COMMANDS[args.command](orch, args)
    finally:
        await orch.dispose()


def _config_command(repo: Path, args: argparse.Namespace) -> None:
    if args.config_command == "set":
        set_config_value(repo, args.key, args.value)
        print(f"Set {args.key} = {args.value}")
        return
    config = load_config(repo)
    print(yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False), end="")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orchestra",
        description="Run parallel coding agents, one git worktree (and sandbox) each",
    )
    parser.add_argument(
        "--repo",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository (default: current directory)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command")

    # orchestra create
    create_parser = subparsers.add_parser("create", help="Create (or restore) agents")
    create_parser.add_argument(
        "-n", "--count", type=_batch_count, default=1, help="Number of agents (default: 1)"
    )
    create_parser.add_argument(
        "--tier",
        choices=[t.value for t in IsolationTier],
        help="Isolation tier (default: the repository's recommended tier)",
    )
    create_parser.add_argument(
        "--allow-fallback",
        action="store_true",
        help="Use the best available weaker tier if the requested one is unavailable",
    )
    create_parser.add_argument(
        "--no-session", action="store_true", help="Do not start tmux sessions"
    )

    subparsers.add_parser("list", help="List agents with status and change stats")

    delete_parser = subparsers.add_parser("delete", help="Delete an agent and its worktree")
    delete_parser.add_argument("agent", help="Agent name or id")

    rename_parser = subparsers.add_parser("rename", help="Rename an agent")
    rename_parser.add_argument("agent", help="Agent name or id")
    rename_parser.add_argument("new_name", help="New name")

    focus_parser = subparsers.add_parser("focus", help="Attach to an agent's tmux session")
    focus_parser.add_argument("agent", help="Agent name or id")

    # orchestra config show|set
    config_parser = subparsers.add_parser("config", help="Show or change configuration")
    config_sub = config_parser.add_subparsers(dest="config_command", required=True)
    config_sub.add_parser("show", help="Print the effective configuration")
    set_parser = config_sub.add_parser("set", help="Set a key in the repository config")
    set_parser.add_argument("key", help="Dotted key, e.g. isolation.minimum_tier")
    set_parser.add_argument("value", help="Value (parsed as YAML)")

    subparsers.add_parser("cleanup", help="Reclaim sandboxes whose worktree is gone")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    repo = args.repo.expanduser().resolve()
    try:
        if args.command == "config":
            _config_command(repo, args)
            return 0

        config = load_config(repo)
        if args.command == "create" and args.count > config.max_batch:
            print(
                f"Error: agent count must be between 1 and {config.max_batch}, got {args.count}",
                file=sys.stderr,
            )
            return 1

        result = asyncio.run(_run(repo, config, args))
    except (OrchestraError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if args.command == "focus":
        logger.debug("attach: %s", result)
        os.execvp(result[0], result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
