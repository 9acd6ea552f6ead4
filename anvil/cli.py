"""Command line interface for Anvil.

Exit codes: 0 on success, 1 when an operation ran but did not succeed (a
conflict, nothing committed, an unhealthy trunk) or git failed, 2 when a
precondition was not met.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from anvil.core.exceptions import AnvilError, PreconditionError
from anvil.core.models import ReconciliationOutcome, TrunkHealth
from anvil.core.simple_config import AnvilConfig
from anvil.core.worktree_manager import WorktreeManager

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PRECONDITION = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="anvil",
        description="Isolated git worktrees for concurrent agents, merged into one trunk",
    )
    parser.add_argument("--config", help="YAML config file (default: $ANVIL_CONFIG or ./anvil.yaml)")
    parser.add_argument("--root", help="Directory holding the trunk and worktrees")
    parser.add_argument(
        "--database",
        help="SQLite file for the journal and merge queue (default: database_path, in memory)",
    )
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create the trunk repository")

    for name, help_text in (
        ("create", "Create a workspace for an agent"),
        ("destroy", "Remove an agent's workspace and branch"),
        ("merge", "Merge an agent's branch into the trunk"),
        ("sync", "Rebase an agent's branch onto the trunk"),
        ("diff", "Show what an agent's branch changes relative to the trunk"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("agent_id")

    status = sub.add_parser("status", help="Uncommitted changes in a workspace, or in the trunk")
    status.add_argument("agent_id", nargs="?")

    sub.add_parser("list", help="List live workspaces")

    commit = sub.add_parser("commit", help="Commit everything in an agent's workspace")
    commit.add_argument("agent_id")
    commit.add_argument("-m", "--message", required=True)

    sub.add_parser(
        "check",
        help="Check the trunk is safe to merge into; interrupted merges are only seen with a database file",
    )
    sub.add_parser("recover", help="Abort a merge left behind by a crash")

    history = sub.add_parser(
        "history",
        help="Journaled merges and syncs; empty across runs without a database file",
    )
    history.add_argument("agent_id", nargs="?")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)

    return parser


def load_config(args: argparse.Namespace) -> AnvilConfig:
    config = AnvilConfig.load(config_file=args.config)
    updates = {}
    if args.root:
        updates["root_path"] = Path(args.root)
    if args.database:
        updates["database_path"] = args.database
    if args.log_level:
        updates["log_level"] = args.log_level.upper()
    if updates:
        config = AnvilConfig(**{**config.model_dump(), **updates})
    return config


def _print_outcome(outcome: ReconciliationOutcome) -> int:
    print(outcome.message)
    for path in outcome.conflicting_paths:
        print(f"  conflict: {path}")
    return EXIT_OK if outcome.success else EXIT_FAILED


def _print_health(health: TrunkHealth) -> int:
    print(f"branch: {health.branch or '(detached)'}")
    print(f"tip: {health.tip or '(unknown)'}")
    print(f"clean: {health.clean}")
    print(f"merge in progress: {health.merge_in_progress}")
    print(f"interrupted operations: {health.interrupted_operations}")
    if health.status.strip():
        print(health.status.rstrip())
    return EXIT_OK if health.healthy else EXIT_FAILED


def _serve(manager: WorktreeManager, config: AnvilConfig, args: argparse.Namespace) -> int:
    import uvicorn

    from anvil.api.server import create_app
    from anvil.queue.merge_queue import MergeQueue

    merge_queue = MergeQueue(manager, manager.db_manager)
    merge_queue.recover()
    app = create_app(manager, merge_queue)
    uvicorn.run(app, host=args.host or config.api_host, port=args.port or config.api_port)
    return EXIT_OK


def run_command(manager: WorktreeManager, config: AnvilConfig, args: argparse.Namespace) -> int:
    command = args.command

    if command == "init":
        manager.init_repo()
        print(f"Trunk ready at {manager.repo_path}")
        return EXIT_OK

    if command == "create":
        workspace = manager.create_worktree(args.agent_id)
        print(f"{workspace.branch_name} -> {workspace.worktree_path}")
        return EXIT_OK

    if command == "destroy":
        manager.destroy_worktree(args.agent_id)
        print(f"Destroyed workspace for {args.agent_id}")
        return EXIT_OK

    if command == "merge":
        return _print_outcome(manager.merge_branch(args.agent_id))

    if command == "sync":
        return _print_outcome(manager.update_worktree(args.agent_id))

    if command == "diff":
        print(manager.get_branch_diff(args.agent_id).rstrip())
        return EXIT_OK

    if command == "status":
        if args.agent_id:
            print(manager.get_branch_status(args.agent_id).rstrip())
        else:
            print(manager.get_trunk_status().rstrip())
        return EXIT_OK

    if command == "list":
        for workspace in manager.list_worktrees():
            print(
                f"{workspace.agent_id}\t{workspace.branch_name}\t"
                f"+{workspace.ahead}/-{workspace.behind}\t{workspace.worktree_path}"
            )
        return EXIT_OK

    if command == "commit":
        workspace = manager.get_worktree(args.agent_id)
        if workspace is None:
            print(f"No workspace for agent {args.agent_id}", file=sys.stderr)
            return EXIT_PRECONDITION
        if manager.commit(workspace.worktree_path, args.message):
            print(f"Committed in {workspace.worktree_path}")
            return EXIT_OK
        print("Nothing to commit")
        return EXIT_FAILED

    if command == "check":
        return _print_health(manager.check_trunk())

    if command == "recover":
        return _print_health(manager.recover_trunk())

    if command == "history":
        for entry in manager.history(args.agent_id):
            print(f"{entry['started_at']}\t{entry['agent_id']}\t{entry['operation']}\t{entry['status']}\t"
                  f"{entry['message'] or ''}")
        return EXIT_OK

    if command == "serve":
        return _serve(manager, config, args)

    raise ValueError(f"Unknown command: {command}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_PRECONDITION

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    manager = WorktreeManager.from_config(config)
    try:
        return run_command(manager, config, args)
    except PreconditionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_PRECONDITION
    except AnvilError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
