"""Import command."""

from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from ..ingest import ImportJob, JobStatus, Priority
from ..services import Services
from . import cli
from .logger import configure_logging
from .options import common_options, load_cli_config


def jobs_table(jobs: list[ImportJob]) -> Table:
    """Render import jobs as a rich Table."""
    table = Table(title="Import jobs")
    table.add_column("Station")
    table.add_column("File")
    table.add_column("Status")
    table.add_column("Inserted", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Duration", justify="right")
    for job in jobs:
        result = job.result
        table.add_row(
            job.station,
            job.file_path.name,
            job.status.value if job.error is None else f"{job.status.value}: {job.error}",
            str(result.processed) if result else "-",
            str(result.skipped) if result else "-",
            str(result.errors) if result else "-",
            f"{result.duration_ms:.0f}ms" if result else "-",
        )
    return table


@cli.command("import")
@click.argument("station")
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.option(
    "-p",
    "--priority",
    type=click.Choice([p.value for p in Priority]),
    default=Priority.NORMAL.value,
    show_default=True,
    help="Job priority",
)
@click.option("--aggregate", is_flag=True, help="Refresh the rollups after importing")
@common_options
def import_cmd(
    station: str,
    path: Path,
    priority: str,
    aggregate: bool,
    config_file: str | None,
    data_dir: str | None,
    verbose: bool,
) -> None:
    """Import a file, or every CSV file of a directory, for STATION."""
    configure_logging(verbose)
    config = load_cli_config(config_file, data_dir)
    services = Services.from_config(config, watch=False)

    services.store.ensure_schema()
    services.engine.ensure_default_policies()
    services.coordinator.start()
    try:
        if path.is_dir():
            job_ids = services.coordinator.submit_directory(station, path, priority)
        else:
            job_ids = [services.coordinator.submit(station, path, priority)]
        services.coordinator.wait_idle()
    finally:
        services.coordinator.stop(wait=True)

    jobs = [job for job in (services.coordinator.get_job(job_id) for job_id in job_ids) if job]
    if aggregate:
        services.engine.refresh()
    services.store.close()

    if not jobs:
        click.echo("Nothing to import.")
        return
    Console().print(jobs_table(jobs))
    if any(job.status == JobStatus.FAILED for job in jobs):
        raise SystemExit(1)
