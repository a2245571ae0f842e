# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from matrixci.cache import DEFAULT_CACHE_DIR
from matrixci.matrix import expand_pipelines
from matrixci.provision import DEFAULT_WORK_DIR
from matrixci.runner import RunConfig, default_workers, load_workflow, run_workflow
from matrixci.ui.console import Console, get_console, set_console


DEFAULT_WORKFLOW = "matrixci_workflow.py"


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    default_workflow = current_dir / DEFAULT_WORKFLOW
    found = [default_workflow] if default_workflow.exists() else []
    found.extend(p for p in current_dir.glob("*_workflow.py") if p != default_workflow)
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  matrixci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if not workflow_files:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", "  *_workflow.py"],
            suggestion=f"Create {DEFAULT_WORKFLOW} or pass --workflow.",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[f"  {f}" for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  matrixci run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(1)

    return workflow_files[0]


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    envvar="MATRIXCI_DEBUG",
    help="Enable debug mode (show stack traces and phase output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print warnings, errors and results")
@click.pass_context
def cli(ctx, debug, quiet):
    """matrixci: matrix build-and-test orchestrator."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.pass_context
def plan(ctx, workflow):
    """Print the jobs a workflow expands to, without running them."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        jobs = expand_pipelines(load_workflow(workflow_path))
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    console.print_plan(jobs)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--workers", default=None, type=click.IntRange(min=1), envvar="MATRIXCI_WORKERS", help="Max parallel jobs")
@click.option("--repo-root", default=".", show_default=True, type=click.Path(file_okay=False), help="Repository copied into each job's private checkout")
@click.option("--cache-dir", default=DEFAULT_CACHE_DIR, show_default=True, envvar="MATRIXCI_CACHE_DIR", help="Dependency cache directory")
@click.option("--work-dir", default=DEFAULT_WORK_DIR, show_default=True, envvar="MATRIXCI_WORK_DIR", help="Root of per-job work dirs")
@click.option(
    "--provision-retries",
    default=0,
    show_default=True,
    type=click.IntRange(min=0),
    envvar="MATRIXCI_PROVISION_RETRIES",
    help="Retries for a failing toolchain install",
)
@click.option("--keep-cache/--clear-cache", default=False, show_default=True, help="Keep the dependency cache after the run")
@click.option("--check-host/--no-check-host", default=True, show_default=True, help="Fail jobs whose platform needs another host OS")
@click.pass_context
def run(ctx, workflow, workers, repo_root, cache_dir, work_dir, provision_retries, keep_cache, check_host):
    """Expand a workflow's matrices and run every job."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        pipelines = load_workflow(workflow_path)
        config = RunConfig(
            repo_root=Path(repo_root),
            cache_root=Path(cache_dir),
            work_root=Path(work_dir),
            max_workers=workers,
            provision_retries=provision_retries,
            keep_cache=keep_cache,
            check_host=check_host,
        )

        console.print_run_started(
            workflow=workflow_path.name,
            pipeline_count=len(pipelines),
            job_count=len(expand_pipelines(pipelines)),
            workers=workers or default_workers(),
        )

        report = run_workflow(pipelines, config=config, console=console)
        console.print_results(report)

        sys.exit(report.exit_code)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


if __name__ == "__main__":
    cli()
