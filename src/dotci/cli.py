# cli.py
from __future__ import annotations

import os
import sys
from pathlib import Path

import click

from dotci import __build_date__, __commit__, __version__
from dotci.config import (
    ARTIFACTS_DIR,
    JOB_TIMEOUT_SECONDS,
    RunConfig,
    parse_env_assignment,
)
from dotci.deadline import Deadline
from dotci.engine import TOOL_HINTS, DockerCLI
from dotci.errors import ArtifactError, ConfigError
from dotci.manifest import DEFAULT_JOB_FILE, load_manifest
from dotci.scheduler import execute
from dotci.ui.console import Console, get_console, set_console


def _parse_env(ctx, param, values) -> dict[str, str]:
    env: dict[str, str] = {}
    for raw in values or ():
        try:
            key, value = parse_env_assignment(raw)
        except ValueError as e:
            raise click.BadParameter(str(e), ctx=ctx, param=param)
        env[key] = value
    return env


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """dot: a minimal, local-first CI that runs jobs in docker containers.

    Jobs are read from a job file (dot.yml by default) and grouped into
    stages; jobs within a stage run concurrently.
    """
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "-f",
    "--job-file-path",
    default=DEFAULT_JOB_FILE,
    show_default=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Path to the job file.",
)
@click.option(
    "-m",
    "--mount-docker-socket",
    is_flag=True,
    default=False,
    help="Mount the docker socket into every job container.",
)
@click.option("-u", "--registry-username", default="", envvar="DOT_REGISTRY_USERNAME", help="Username for the container registry")
@click.option("-p", "--registry-password", default="", envvar="DOT_REGISTRY_PASSWORD", help="Password / token for the container registry")
@click.option(
    "-e",
    "--environment-variable",
    "env",
    multiple=True,
    callback=_parse_env,
    help="Environment variable for every job, KEY=VALUE. Repeatable.",
)
@click.option(
    "--job-timeout",
    default=JOB_TIMEOUT_SECONDS,
    show_default=True,
    type=click.FloatRange(min=0, min_open=True),
    help="Seconds a single job may run before it is stopped.",
)
@click.option(
    "--artifacts-dir",
    default=ARTIFACTS_DIR,
    show_default=True,
    type=click.Path(file_okay=False, path_type=Path),
    help="Local artifact cache; archives from earlier runs are removed at start.",
)
@click.option(
    "--export-artifacts",
    default=None,
    type=click.Path(file_okay=False, path_type=Path),
    help="Copy every published artifact to this directory after a successful run.",
)
@click.option("--show-image-pull/--no-show-image-pull", default=True, show_default=True, help="Print image pull progress")
def run(
    job_file_path,
    mount_docker_socket,
    registry_username,
    registry_password,
    env,
    job_timeout,
    artifacts_dir,
    export_artifacts,
    show_image_pull,
):
    """Run the jobs of a job file."""
    console = get_console()

    try:
        manifest = load_manifest(job_file_path)
    except ConfigError as e:
        console.print_error("Invalid job file", str(e))
        sys.exit(1)

    engine = DockerCLI()
    if not engine.available():
        console.print_error(
            "Docker is not available",
            f"Could not reach the container engine: {engine.describe()}.",
            suggestion=TOOL_HINTS["docker"],
        )
        sys.exit(1)

    config = RunConfig(
        artifacts_dir=artifacts_dir,
        job_timeout=job_timeout,
        mount_docker_socket=mount_docker_socket,
        show_image_pull=show_image_pull,
        registry_username=registry_username,
        registry_password=registry_password,
        global_env=env,
        export_dir=export_artifacts,
    )

    console.print_run_started(
        job_file=os.fspath(job_file_path),
        stages=list(manifest.stages),
        job_count=len(manifest.jobs),
    )

    parent = Deadline()
    try:
        report = execute(manifest, config, engine=engine, parent=parent)
    except KeyboardInterrupt:
        parent.cancel()
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except (ConfigError, ArtifactError) as e:
        console.print_error("Run aborted", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_results(report.results)
    if not report.ok:
        console.print_exception(report.error)
        sys.exit(1)


@cli.command()
def version():
    """Show the version of dot."""
    get_console().print_version(__version__, __build_date__, __commit__)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
