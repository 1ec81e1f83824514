# cli.py
from __future__ import annotations

import json
import logging
import subprocess
import sys
from pathlib import Path

import click
import yaml

from cigraph.errors import ConfigurationError
from cigraph.git import current_ref
from cigraph.loader import load_workflow
from cigraph.model import Event, EventKind
from cigraph.runner import plan_pipeline, run_pipeline
from cigraph.secrets import ChainSecretProvider, EnvSecretProvider, MappingSecretProvider
from cigraph.settings import load_settings
from cigraph.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOWS = ("cigraph.yml", "cigraph.yaml", "cigraph_workflow.py")

EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def find_workflow_files() -> list[Path]:
    """Find all default-named workflow files in the current directory."""
    current_dir = Path(".")
    return [current_dir / name for name in DEFAULT_WORKFLOWS if (current_dir / name).exists()]


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  cigraph run --workflow ci.yml",
            )
            sys.exit(EXIT_CONFIG)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_WORKFLOWS)],
            suggestion="Create cigraph.yml or specify a workflow explicitly:\n  cigraph run --workflow ci.yml",
        )
        sys.exit(EXIT_CONFIG)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  cigraph run --workflow cigraph.yml",
        )
        sys.exit(EXIT_CONFIG)

    return workflow_files[0]


def build_event(kind: str, ref: str | None, ref_type: str | None, base: str | None, action: str | None) -> Event:
    """Build the triggering event, falling back to the local checkout for the ref."""
    console = get_console()
    if ref is None:
        try:
            ref = current_ref()
            console.print_debug(f"Using git ref: {ref}")
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_error(
                "Could not determine git ref",
                "No --ref given and the current directory is not a usable git checkout.",
                suggestion="Specify the ref explicitly:\n  cigraph run --ref refs/tags/1.2.3",
            )
            sys.exit(EXIT_CONFIG)

    event_kind = EventKind(kind)
    if event_kind is EventKind.PULL_REQUEST and action is None:
        action = "opened"
    return Event(kind=event_kind, ref=ref, base_ref=base, action=action, ref_type=ref_type)


def _secret_provider(secrets_file: str | None, prefix: str):
    env = EnvSecretProvider(prefix=prefix)
    if not secrets_file:
        return env
    try:
        data = yaml.safe_load(Path(secrets_file).read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not read secrets file {secrets_file}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Secrets file {secrets_file} must be a mapping")
    return ChainSecretProvider(MappingSecretProvider(data), env)


def event_options(fn):
    options = [
        click.option(
            "--workflow",
            default=None,
            help="Workflow file (.yml/.yaml/.py); defaults to cigraph.yml if present",
        ),
        click.option(
            "--event",
            "event_kind",
            type=click.Choice([k.value for k in EventKind]),
            default=EventKind.PUSH.value,
            show_default=True,
            help="Kind of triggering event",
        ),
        click.option("--ref", default=None, help="Ref being built (defaults to the local checkout)"),
        click.option(
            "--tag",
            "ref_type",
            flag_value="tag",
            default=None,
            help="Treat a bare --ref as a tag",
        ),
        click.option("--branch", "ref_type", flag_value="branch", help="Treat a bare --ref as a branch"),
        click.option("--base", default=None, help="Pull request target branch"),
        click.option("--action", default=None, help="Pull request action (default: opened)"),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """cigraph: dependency-aware CI pipeline orchestrator."""
    set_console(Console(debug=debug))
    try:
        settings = load_settings()
    except ConfigurationError as e:
        get_console().print_error("Invalid configuration", str(e))
        sys.exit(EXIT_CONFIG)
    logging.basicConfig(
        level=logging.DEBUG if debug else getattr(logging, settings.log_level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = settings


@cli.command()
@event_options
@click.option("--workers", default=None, type=int, help="Maximum concurrently running jobs")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Stop dispatching new jobs after the first failure")
@click.option(
    "--cancelled-satisfies-needs/--cancelled-blocks-needs",
    default=None,
    help="Whether always()/failure() jobs still run when an upstream job was cancelled",
)
@click.option("--timeout", default=None, type=float, help="Per-step timeout in seconds")
@click.option("--secrets-file", default=None, help="YAML mapping of secret names to values")
@click.option("--secret-prefix", default="", help="Environment prefix for secret lookups")
@click.option("--show-output", is_flag=True, default=False, help="Print step output for every job")
@click.option("--report-json", default=None, type=click.Path(dir_okay=False), help="Write the run report as JSON")
@click.pass_context
def run(
    ctx, workflow, event_kind, ref, ref_type, base, action, workers, fail_fast,
    cancelled_satisfies_needs, timeout, secrets_file, secret_prefix, show_output, report_json,
):
    """Run a cigraph workflow for one event."""
    console = Console(debug=ctx.obj["debug"], show_output=show_output)
    set_console(console)

    workflow_path = discover_workflow(workflow)
    event = build_event(event_kind, ref, ref_type, base, action)
    settings = ctx.obj["settings"].override(
        max_workers=workers,
        fail_fast=fail_fast,
        cancelled_satisfies_needs=cancelled_satisfies_needs,
        step_timeout=timeout,
    )

    try:
        pipeline = load_workflow(workflow_path)
        console.print_run_started(
            pipeline=pipeline.name,
            workflow=workflow_path.name,
            event=f"{event.kind.value} {event.ref}",
            job_count=len(pipeline.jobs),
        )
        report = run_pipeline(
            pipeline,
            event,
            secrets=_secret_provider(secrets_file, secret_prefix),
            settings=settings,
            console=console,
        )
    except ConfigurationError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(EXIT_CONFIG)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    if report.triggered:
        console.print_results(report)
    if report_json:
        Path(report_json).write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")
        console.print_debug(f"Report written to {report_json}")

    sys.exit(report.exit_code)


@cli.command()
@event_options
@click.pass_context
def plan(ctx, workflow, event_kind, ref, ref_type, base, action):
    """Show the trigger decision and execution stages without running anything."""
    console = get_console()

    workflow_path = discover_workflow(workflow)
    event = build_event(event_kind, ref, ref_type, base, action)

    try:
        pipeline = load_workflow(workflow_path)
        result = plan_pipeline(pipeline, event)
    except ConfigurationError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(EXIT_CONFIG)

    console.print_header(f"Plan: {pipeline.name}")
    console.print_trigger(result.trigger.run, result.trigger.reason)
    console.print_plan(result.levels)


if __name__ == "__main__":
    cli()
