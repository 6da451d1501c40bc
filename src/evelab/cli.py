"""
evelab CLI — bring a lab up, stop it, reset it or tear it down.

Entry point: evelab.cli:main

Every run prints the Status Record as JSON, including when the run fails
part-way (the record then shows how far it got) in which case the exit
code is 1.
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from . import __version__
from .config import DEFAULT_CONFIG_FILE, load_lab_spec
from .errors import LabError
from .lab import build_orchestrator
from .models import Operation

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    # paramiko's transport chatter drowns out the lab's own progress.
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def _cancel_on_signals(cancel: threading.Event) -> None:
    def _handle_signal(signum, frame):
        logger.warning(
            "Received signal %s, cancelling after the current step",
            signal.Signals(signum).name,
        )
        cancel.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, _handle_signal)


@click.group()
@click.version_option(version=__version__, prog_name="evelab")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
def main(verbose: bool):
    """evelab — single-node virtual labs on Google Compute Engine."""
    _setup_logging(verbose)


@main.command("run")
@click.option(
    "--config", "config_path", default=DEFAULT_CONFIG_FILE,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Lab YAML file.",
)
@click.option("--instance-name", default=None, help="Override the config's instance name.")
@click.option(
    "--operation", "-o", default=Operation.CREATE.value,
    type=click.Choice([op.value for op in Operation]),
    help="Lifecycle path to run.",
)
@click.option(
    "--create-custom-image", is_flag=True,
    help="Build the custom image first if it does not exist.",
)
@click.option("--cloud", default="gcp", help="Cloud gateway to use.")
def run_cmd(
    config_path: Path,
    instance_name: Optional[str],
    operation: str,
    create_custom_image: bool,
    cloud: str,
):
    """Run one lifecycle operation against a lab.

    \b
    Example:
        evelab run --config lab.yaml
        evelab run --config lab.yaml --create-custom-image
        evelab run --config lab.yaml -o stop
        evelab run --config lab.yaml -o teardown
    """
    cancel = threading.Event()
    _cancel_on_signals(cancel)

    try:
        orchestrator = build_orchestrator(
            config_path, instance_name=instance_name, cloud=cloud, cancel=cancel,
        )
    except LabError as exc:
        err_console.print(f"[red]{exc}[/]")
        sys.exit(1)

    failure: Optional[LabError] = None
    with console.status(
        f"[bold cyan]{operation} {orchestrator.spec.instance_name}...[/]"
    ):
        try:
            orchestrator.run(operation, create_image=create_custom_image)
        except LabError as exc:
            failure = exc
            logger.error("%s failed: %s", operation, exc)

    console.print_json(data=orchestrator.status.to_dict())
    if failure is not None:
        err_console.print(f"[red]{operation} failed:[/] {failure}")
        sys.exit(1)


@main.command("show-config")
@click.option(
    "--config", "config_path", default=DEFAULT_CONFIG_FILE,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Lab YAML file.",
)
@click.option("--instance-name", default=None, help="Override the config's instance name.")
def show_config(config_path: Path, instance_name: Optional[str]):
    """Validate a lab file and print the resolved configuration."""
    try:
        spec = load_lab_spec(config_path, instance_name=instance_name)
    except LabError as exc:
        err_console.print(f"[red]{exc}[/]")
        sys.exit(1)
    console.print_json(data=spec.model_dump(mode="json"))


if __name__ == "__main__":
    main()
