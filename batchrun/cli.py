"""
CLI interface for batchrun.

Provides commands to discover, run and inspect batch jobs.

Jobs are either builtin (batchrun.jobs) or defined as YAML/JSON files in
the configured definitions directory. Runs are recorded in the SQLite job
repository at the configured repository_path.
"""

import sys
from pathlib import Path
from typing import Optional

import click
import yaml
from rich.table import Table

from batchrun import __version__


def _get_config(ctx):
    """Config from the context, or exit with the load error."""
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Fix the file or run 'batchrun init --force' to rewrite it.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _get_repository(config):
    from batchrun.repository import SqliteJobRepository

    return SqliteJobRepository(config.get_repository_path())


@click.group()
@click.version_option(version=__version__, prog_name="batchrun")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: $BATCHRUN_HOME/config.yaml)",
)
@click.pass_context
def main(ctx, config_path: Optional[Path]):
    """
    batchrun - Chunk-oriented batch job runner.

    Run jobs made of tasklet and chunk steps, with run bookkeeping in a
    local job repository.
    """
    from batchrun.config import ConfigError, load_config_or_default
    from batchrun.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config_or_default(config_path)
    except ConfigError as e:
        # init can still run; other commands check ctx.obj via _get_config
        ctx.obj["config_error"] = str(e)
        return

    ctx.obj["config"] = config
    setup_logging(
        log_level=config.log_level,
        log_format=config.log_format,
        log_file=config.get_log_file_path(),
    )


def _resolve_job(config, job: str):
    """
    Find a job by name among builtin and defined jobs.

    Returns:
        CompiledJob

    Raises:
        SystemExit: If the job is unknown or invalid
    """
    from batchrun.compiler import CompileError, CompiledJob, compile_job
    from batchrun.jobs import get_builtin_job
    from batchrun.registry import JobNotFoundError, JobRegistry, JobValidationError

    builtin = get_builtin_job(job)
    if builtin is not None:
        return CompiledJob(job=builtin.factory(), identity=builtin.identity)

    registry = JobRegistry(config.get_definitions_dir())
    try:
        job_def = registry.load(job)
        return compile_job(job_def, config=config, base_dir=registry.path_of(job).parent)
    except JobNotFoundError:
        click.echo(f"✗ Unknown job: {job}", err=True)
        click.echo("\nAvailable jobs:", err=True)
        for name in _available_jobs(config):
            click.echo(f"  {name}", err=True)
        raise SystemExit(1)
    except (JobValidationError, CompileError) as e:
        click.echo(f"✗ Invalid job {job}: {e}", err=True)
        raise SystemExit(1)


def _available_jobs(config) -> list[str]:
    from batchrun.jobs import BUILTIN_JOBS
    from batchrun.registry import JobRegistry

    return sorted(set(BUILTIN_JOBS) | set(JobRegistry(config.get_definitions_dir()).list_jobs()))


@main.command("run")
@click.argument("job")
@click.option(
    "-p",
    "--param",
    "params",
    multiple=True,
    help="Job parameter as name(type)=value; type is string, long, double, date or datetime",
)
@click.option(
    "--identity",
    type=click.Choice(["none", "unique", "daily"]),
    default=None,
    help="Run identity (default: the job's own)",
)
@click.pass_context
def run(ctx, job: str, params: tuple[str, ...], identity: Optional[str]):
    """
    Run a job by name.

    Prints the job instance id and the final status. Exits 0 only when
    the execution COMPLETED.

    Examples:

        batchrun run hello

        batchrun run import_movies -p "run.date(date)=2024-01-31"

        batchrun run import_movies --identity daily
    """
    from batchrun.errors import DuplicateRunError, JobExecutionAlreadyRunningError
    from batchrun.run_identity import JobLauncher, get_run_identity
    from batchrun.schemas import BatchStatus, JobParametersBuilder, parse_parameter_arg

    config = _get_config(ctx)

    builder = JobParametersBuilder()
    for arg in params:
        try:
            name, parameter = parse_parameter_arg(arg)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--param")
        builder.add(name, parameter.value, identifying=parameter.identifying)
    parameters = builder.to_job_parameters()

    compiled = _resolve_job(config, job)
    with compiled:
        launcher = JobLauncher(_get_repository(config))
        try:
            execution = launcher.launch(
                compiled.job,
                parameters,
                identity=get_run_identity(identity or compiled.identity),
            )
        except (DuplicateRunError, JobExecutionAlreadyRunningError) as e:
            click.echo(f"✗ {e}", err=True)
            raise SystemExit(1)

    click.echo(f"InstanceId: {execution.instance_id}")
    click.echo(f"Status: {execution.status.value}")
    if execution.status != BatchStatus.COMPLETED:
        if execution.exit_description:
            click.echo(f"✗ {execution.exit_description}", err=True)
        raise SystemExit(1)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize batchrun configuration."""
    from batchrun.config import BatchConfig, get_batchrun_home

    home = get_batchrun_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    jobs_dir = home / "jobs"
    jobs_dir.mkdir(exist_ok=True)

    default_cfg = BatchConfig(
        definitions_dir=str(jobs_dir),
        env_file=str(home / ".env"),
    ).to_dict()
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# BATCHRUN_REPOSITORY_PATH=...\n# BATCHRUN_LOG_LEVEL=DEBUG\n")

    click.echo(f"Initialized batchrun config at {cfg_path}")
    click.echo(f"Put job definitions in {jobs_dir}")


@main.group("jobs")
def jobs_group():
    """List and inspect jobs."""
    pass


@jobs_group.command("list")
@click.pass_context
def list_jobs(ctx):
    """List builtin and defined jobs."""
    from batchrun.jobs import BUILTIN_JOBS
    from batchrun.registry import JobRegistry

    config = _get_config(ctx)

    click.echo("builtin:")
    for name in sorted(BUILTIN_JOBS):
        description = BUILTIN_JOBS[name].description
        click.echo(f"  {name}" + (f" - {description}" if description else ""))

    registry = JobRegistry(config.get_definitions_dir())
    defined = registry.list_jobs()
    click.echo(f"defined ({registry.definitions_dir}):")
    if not defined:
        click.echo("  (none)")
    for name in defined:
        click.echo(f"  {name}")


@jobs_group.command("show")
@click.argument("job")
@click.pass_context
def show_job(ctx, job: str):
    """Show a job definition."""
    from batchrun.jobs import get_builtin_job
    from batchrun.registry import JobNotFoundError, JobRegistry, JobValidationError

    config = _get_config(ctx)

    builtin = get_builtin_job(job)
    if builtin is not None:
        built = builtin.factory()
        click.echo(f"Job: {job} (builtin)")
        click.echo(f"Identity: {builtin.identity}")
        click.echo(f"Steps: {', '.join(s.name for s in built.steps)}")
        return

    registry = JobRegistry(config.get_definitions_dir())
    try:
        job_def = registry.load(job)
    except JobNotFoundError:
        click.echo(f"✗ Unknown job: {job}", err=True)
        raise SystemExit(1)
    except JobValidationError as e:
        click.echo(f"✗ Invalid job {job}: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Job: {job}")
    click.echo(f"Definition: {registry.path_of(job)}")
    click.echo(f"Hash: {JobRegistry.compute_hash(job_def)}")
    click.echo()
    click.echo(yaml.safe_dump(job_def.to_dict(), sort_keys=False))


@main.command("executions")
@click.argument("job")
@click.option("--limit", default=20, show_default=True, help="Most recent executions to show")
@click.pass_context
def executions(ctx, job: str, limit: int):
    """Show recorded executions of a job."""
    from batchrun.utils import console

    config = _get_config(ctx)
    repository = _get_repository(config)

    rows = []
    for instance in repository.find_instances(job):
        for execution in repository.list_executions(instance):
            rows.append((instance, execution))
    if not rows:
        click.echo(f"No executions recorded for {job}")
        return

    rows.sort(key=lambda r: r[1].execution_id, reverse=True)
    table = Table(title=f"Executions of {job}")
    table.add_column("Instance", justify="right")
    table.add_column("Execution", justify="right")
    table.add_column("Status")
    table.add_column("Exit Code")
    table.add_column("Started")
    table.add_column("Duration (ms)", justify="right")
    table.add_column("Steps")

    for instance, execution in rows[:limit]:
        status_style = {
            "COMPLETED": "green",
            "FAILED": "red",
            "STOPPED": "yellow",
        }.get(execution.status.value, "")
        duration = execution.duration_ms
        table.add_row(
            str(instance.instance_id),
            str(execution.execution_id),
            f"[{status_style}]{execution.status.value}[/]" if status_style else execution.status.value,
            execution.exit_code or "",
            execution.start_time.isoformat(timespec="seconds") if execution.start_time else "",
            str(duration) if duration is not None else "",
            ", ".join(f"{s.step_name}={s.status.value}" for s in execution.step_executions),
        )
    console.print(table)


if __name__ == "__main__":
    sys.exit(main())
