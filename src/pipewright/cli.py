# cli.py
from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path

import click

from pipewright.actions import job_cache_config
from pipewright.cache import CacheGate, FileCacheStorage, RedisCacheStorage
from pipewright.declaration import dumps, load_declaration
from pipewright.environment import EnvironmentProvisioner
from pipewright.errors import CIError
from pipewright.executor import StepExecutor
from pipewright.git_facts import event_from_checkout, is_dirty, repo_root
from pipewright.model import EVENT_KINDS
from pipewright.runner import JobRunner
from pipewright.scheduler import PipelineScheduler
from pipewright.settings import Settings
from pipewright.ui.console import Console, get_console, set_console


def _load(declaration: Path):
    """Load a declaration or exit(2) with a readable error."""
    console = get_console()
    try:
        return load_declaration(declaration)
    except CIError as e:
        console.print_error(
            "Invalid declaration",
            e.message,
            details=[f"at {e.details['location']}"] if e.details.get("location") else None,
        )
    except Exception as e:
        console.print_error("Failed to load declaration", f"Could not load {declaration}", details=[str(e)])
        if console.debug:
            console.print_exception(e)
    sys.exit(2)


def _default_source() -> Path:
    try:
        return repo_root()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(".").resolve()


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """pipewright: run CI pipelines locally, one isolated workspace per job."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("declaration", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--job", "jobs", multiple=True, help="Run only this job (repeatable). Defaults to all jobs.")
@click.option("--event", "event_kind", type=click.Choice(EVENT_KINDS), default="push", show_default=True)
@click.option("--ref", default=None, help="Git ref for the event (defaults to the current branch)")
@click.option("--sha", default=None, help="Commit SHA for the event (defaults to HEAD)")
@click.option(
    "--source",
    default=None,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Directory checked out into each job (defaults to the git repository root)",
)
@click.option("--cache-dir", default=None, help="Cache directory (env: PIPEWRIGHT_CACHE_DIR)")
@click.option("--redis-url", default=None, help="Use a shared Redis cache (env: PIPEWRIGHT_REDIS_URL)")
@click.option("--no-cache", is_flag=True, default=False, help="Skip cache restore and save")
@click.option("--work-dir", default=None, help="Where job workspaces are created (env: PIPEWRIGHT_WORK_DIR)")
@click.option("--keep-workspaces", is_flag=True, default=False, help="Don't delete job workspaces afterwards")
@click.option("--fail-fast/--no-fail-fast", default=False, show_default=True, help="Cancel running jobs after the first failure")
@click.option("--timeout", "timeout_s", type=click.FloatRange(min=0, min_open=True), default=None, help="Per-job timeout in seconds")
@click.option("--grace-period", "grace_period_s", type=click.FloatRange(min=0, min_open=True), default=None, help="Seconds between SIGTERM and SIGKILL")
@click.option("--workers", type=click.IntRange(min=1), default=None, help="Max jobs running at once (defaults to one per job)")
@click.option("--quiet", is_flag=True, default=False, help="Only print results and errors")
@click.pass_context
def run(
    ctx,
    declaration,
    jobs,
    event_kind,
    ref,
    sha,
    source,
    cache_dir,
    redis_url,
    no_cache,
    work_dir,
    keep_workspaces,
    fail_fast,
    timeout_s,
    grace_period_s,
    workers,
    quiet,
):
    """Run a pipeline declaration (all jobs, or the ones named with --job)."""
    console = get_console()
    console.quiet = quiet

    try:
        settings = Settings.from_env()
    except ValueError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(2)

    pipeline = _load(declaration)
    source = (source or _default_source()).resolve()
    event = event_from_checkout(event_kind, cwd=source, ref=ref, sha=sha)

    try:
        if is_dirty(source):
            console.print_debug(f"{source} has uncommitted changes; they are part of the checkout")
    except (subprocess.CalledProcessError, FileNotFoundError):
        pass

    gate = None
    if not no_cache:
        url = redis_url or settings.redis_url
        storage = RedisCacheStorage(url) if url else FileCacheStorage(cache_dir or settings.cache_dir)
        gate = CacheGate(storage, keep=settings.cache_keep)

    grace = grace_period_s if grace_period_s is not None else settings.grace_period_s
    runner = JobRunner(
        EnvironmentProvisioner(work_dir or settings.work_dir, source=source, keep_workspaces=keep_workspaces),
        cache=gate,
        executor=StepExecutor(grace_period_s=grace),
    )
    scheduler = PipelineScheduler(
        runner,
        job_timeout_s=timeout_s if timeout_s is not None else settings.job_timeout_s,
        grace_period_s=grace,
        fail_fast=fail_fast,
        max_workers=workers,
    )

    try:
        selected = pipeline.select(list(jobs))
        console.print_run_started(
            pipeline=pipeline.name or declaration.stem,
            declaration=declaration.name,
            job_count=len(selected),
            event=event,
        )
        result = scheduler.run(pipeline, event, jobs=list(jobs))
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except CIError as e:
        console.print_error("Pipeline not run", e.message, details=[f"{k}: {v}" for k, v in e.details.items()])
        sys.exit(2)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_results(result)
    if not result.succeeded:
        console.print_error(
            "Pipeline failed",
            f"{len(result.failed_jobs)} job(s) did not succeed:",
            details=result.failed_jobs,
        )
        if result.tolerated_failures:
            console.print_info(f"Allowed to fail (continue-on-error): {', '.join(result.tolerated_failures)}")
        sys.exit(1)


@cli.command()
@click.argument("declaration", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(declaration):
    """Parse a declaration and print it back in normalized form."""
    pipeline = _load(declaration)
    click.echo(dumps(pipeline), nl=False)


@cli.command()
@click.argument("declaration", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def plan(declaration):
    """List the jobs and steps a declaration would run."""
    pipeline = _load(declaration)
    console = get_console()
    console.print_header(pipeline.name or declaration.stem)
    console.print_info(f"on: {', '.join(pipeline.triggers)}")
    for job in pipeline.jobs:
        console.print_info(f"\n{job.id} ({job.display_name}) runs-on {job.runs_on}")
        cache = job_cache_config(job)
        if cache is not None:
            paths = ", ".join(cache.paths) or "-"
            console.print_info(f"  cache: key={cache.key or '<default>'} paths={paths}")
        for i, step in enumerate(job.steps, start=1):
            kind = f"uses {step.uses}" if step.uses is not None else "run"
            console.print_info(f"  {i}. {step.display_name} [{kind}]")


if __name__ == "__main__":
    cli()
