"""CLI entry point for taskpipe."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rich.table import Table

    from taskpipe.config import TaskpipeConfig
    from taskpipe.models import PipelineResult


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the taskpipe CLI."""
    parser = argparse.ArgumentParser(
        prog="taskpipe",
        description="Task pipeline: tests, self-review and PR for the current change",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Generate .taskpipe/taskpipe.toml from source defaults",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run the pipeline for a task")
    run_parser.add_argument("task_id", help="Task id")
    autofix = run_parser.add_mutually_exclusive_group()
    autofix.add_argument(
        "--yes", action="store_true", help="Send the autofix prompt without asking"
    )
    autofix.add_argument(
        "--no-autofix", action="store_true", help="Never send the autofix prompt"
    )
    run_parser.add_argument("--title", default=None, help="PR title override")
    run_parser.add_argument("--commit-message", default=None, help="Commit message override")
    run_parser.add_argument("--base", default=None, help="PR base branch override")
    run_parser.add_argument("--task-type", default=None, help="Task type (feat, fix, ...)")

    start_parser = subparsers.add_parser("start", help="Hand a task to the agent")
    start_parser.add_argument("task_id", help="Task id")
    start_parser.add_argument("--task-type", default=None, help="Task type (feat, fix, ...)")

    conv_parser = subparsers.add_parser(
        "convention", help="Preview branch, commit and PR title for a task"
    )
    conv_parser.add_argument("title", help="Task title")
    conv_parser.add_argument("--id", required=True, dest="task_id", help="Task id")
    conv_parser.add_argument("--task-type", default=None, help="Task type")
    conv_parser.add_argument("--workspace", default=None, help="Workspace id")
    conv_parser.add_argument("--preset", default=None, help="Use a built-in preset")

    subparsers.add_parser("profiles", help="List workspace profiles")

    _args = parser.parse_args(argv)
    _setup_logging(_args.verbose)

    if _args.init:
        from taskpipe.config import init_config

        path = init_config(Path.cwd())
        print(f"Wrote {path}")
        return 0

    if _args.command == "run":
        return _cmd_run(_args)
    if _args.command == "start":
        return _cmd_start(_args)
    if _args.command == "convention":
        return _cmd_convention(_args)
    if _args.command == "profiles":
        return _cmd_profiles()

    parser.print_help()
    return 0


def _setup_logging(verbose: bool) -> None:
    from rich.logging import RichHandler

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(show_path=False)],
        force=True,
    )


def _get_version() -> str:
    from taskpipe import __version__

    return __version__


def _load() -> tuple[Path, TaskpipeConfig]:
    from taskpipe.config import load_config
    from taskpipe.git_ops import find_project_root

    root = find_project_root()
    return root, load_config(root)


def _cmd_run(args: argparse.Namespace) -> int:
    from rich.console import Console

    from taskpipe.models import Task
    from taskpipe.pipeline import Pipeline, PullRequestOptions
    from taskpipe.shell import ConsolePrompt, ConsoleReporter, ScriptedPrompt

    root, config = _load()
    console = Console()
    if args.yes:
        prompt = ScriptedPrompt(answer=True)
    elif args.no_autofix:
        prompt = ScriptedPrompt(answer=False)
    else:
        prompt = ConsolePrompt()

    pipeline = Pipeline.from_config(
        root, config, reporter=ConsoleReporter(), prompt=prompt
    )
    task: Task | str = args.task_id
    if pipeline.client is None or not pipeline.client.has_credentials:
        # Offline: build the task locally instead of fetching it.
        task = Task(id=args.task_id, title=args.title or args.task_id)

    options = PullRequestOptions(
        title=args.title,
        commit_message=args.commit_message,
        base_branch=args.base,
        task_type=args.task_type,
    )
    try:
        result = pipeline.run(task, options)
    finally:
        pipeline.close()

    console.print(_render_result(result))
    return 0 if result.success else 1


def _render_result(result: PipelineResult) -> Table:
    from rich.table import Table

    status = "[bold green]success[/]" if result.success else "[bold red]failed[/]"
    table = Table(title=f"Pipeline {status}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    table.add_row("Stages", " → ".join(result.stages_completed) or "-")
    if result.test_result is not None:
        summary = result.test_result.summary
        table.add_row(
            "Tests",
            f"{result.test_result.result} ({summary.passed}/{summary.total} passed)",
        )
    if result.review_result is not None:
        table.add_row("Review risk", result.review_result.risk_level)
    if result.autofix_attempted:
        table.add_row("Autofix", "handed to agent, re-run required" if result.rerun_required else "skipped")
    if result.pr_url:
        table.add_row("PR", result.pr_url)
    for blocker in result.blockers:
        table.add_row("[red]Blocker[/]", blocker)
    for warning in result.warnings:
        table.add_row("[yellow]Warning[/]", warning)
    if result.cancelled:
        table.add_row("Cancelled", "yes")
    return table


def _cmd_start(args: argparse.Namespace) -> int:
    from taskpipe.agent import AgentService, generate_prompt
    from taskpipe.api import ApiError, TaskosClient, describe_api_error
    from taskpipe.convention import ConventionManager
    from taskpipe.git_ops import GitRepo
    from taskpipe.profiles import ProfileManager
    from taskpipe.shell import ConsolePrompt

    root, config = _load()
    prompt = ConsolePrompt()
    with TaskosClient(
        config.api.base_url, config.api.api_key, timeout_seconds=config.timeouts.network
    ) as client:
        try:
            task = client.get_task(args.task_id)
        except ApiError as exc:
            prompt.notify("error", describe_api_error(exc))
            return 1

        workspace_id = task.workspace_id or config.api.workspace_id or None
        profiles = ProfileManager(
            client, workspace_id, ttl_seconds=config.cache.profile_ttl_seconds
        )
        git = GitRepo(
            root,
            conventions=ConventionManager(
                client,
                ttl_seconds=config.cache.convention_ttl_seconds,
                timeout_seconds=config.timeouts.convention,
            ),
            timeout_seconds=config.timeouts.git,
            host=config.pipeline.host,
        )
        agent = AgentService(
            root,
            git=git,
            client=client,
            prompt=prompt,
            api_base_url=config.api.base_url,
            workspace_id=workspace_id,
            agent_command=config.pipeline.agent_command,
        )
        text = generate_prompt(
            task, profiles.get_active_style_profile(), profiles.get_active_review_profile()
        )
        dispatch = agent.send(task, text, task_type=args.task_type)

    if not dispatch.success:
        prompt.notify("warning", f"Task not started ({dispatch.method})")
        return 1
    if dispatch.branch:
        prompt.notify("info", f"On branch {dispatch.branch}")
    prompt.notify("info", f"Prompt written to {dispatch.prompt_path} (via {dispatch.method})")
    return 0


def _cmd_convention(args: argparse.Namespace) -> int:
    from rich.console import Console

    from taskpipe.api import TaskosClient
    from taskpipe.convention import (
        ConventionManager,
        preset_convention,
        render_convention,
        validate_convention,
    )
    from taskpipe.models import RenderContext

    console = Console()
    ctx = RenderContext(task_title=args.title, task_id=args.task_id, task_type=args.task_type)
    if args.preset:
        try:
            config = preset_convention(args.preset)
        except KeyError:
            console.print(f"[red]Unknown preset: {args.preset}[/]")
            return 1
        rendered = render_convention(config, ctx)
    else:
        _root, cfg = _load()
        workspace_id = args.workspace or cfg.api.workspace_id or None
        with TaskosClient(
            cfg.api.base_url, cfg.api.api_key, timeout_seconds=cfg.timeouts.network
        ) as client:
            manager = ConventionManager(client, timeout_seconds=cfg.timeouts.convention)
            config = manager.get_config(workspace_id)
            rendered = manager.render(workspace_id, ctx)

    console.print(f"[cyan]branch[/]  {rendered.branch_name}")
    console.print(f"[cyan]commit[/]  {rendered.commit_message}")
    console.print(f"[cyan]PR title[/] {rendered.pr_title}")
    console.print(f"[cyan]base[/]    {rendered.base_branch}")
    for issue in validate_convention(config):
        console.print(f"[yellow]{issue.field}: {issue.message}[/]")
    return 0


def _cmd_profiles() -> int:
    from rich.console import Console
    from rich.table import Table

    from taskpipe.api import TaskosClient
    from taskpipe.profiles import ProfileManager

    _root, config = _load()
    console = Console()
    workspace_id = config.api.workspace_id or None
    if not workspace_id:
        console.print("[yellow]No workspace configured; using built-in profiles.[/]")

    with TaskosClient(
        config.api.base_url, config.api.api_key, timeout_seconds=config.timeouts.network
    ) as client:
        manager = ProfileManager(client, workspace_id)
        profiles = manager.get_all_profiles()

    table = Table(title=f"Profiles ({workspace_id or 'built-in'})")
    table.add_column("Type", style="cyan")
    table.add_column("Name")
    table.add_column("Default", style="green")
    table.add_column("Id", style="dim")
    for kind in ("code_review", "code_style"):
        of_kind = [p for p in profiles if p.type == kind]
        active = next((p for p in of_kind if p.is_default), of_kind[0] if of_kind else None)
        if active is None:
            table.add_row(kind, "built-in default", "✓", "-")
        for profile in of_kind:
            table.add_row(kind, profile.name, "✓" if profile is active else "", profile.id)
    console.print(table)
    return 0


if __name__ == "__main__":
    sys.exit(main())
