"""Stack operator CLI (stackop).

Usage:
    stackop validate              # Check config, spec and tools; print the order
    stackop plan                  # Resolve every resource, apply nothing
    stackop deploy                # Bring the stack to its desired state
    stackop destroy --yes         # Tear the stack down and verify

Configuration comes from the environment (see stackop.config.Config.from_env);
--spec overrides SPEC_FILE. The report goes to stdout, logs to stderr.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import NoReturn

import click

from .config import Config, ConfigurationError
from .main import (
    EXIT_CONFIGURATION_ERROR,
    EXIT_FAILURE,
    EXIT_SUCCESS,
    execute,
    exit_code,
    setup_logging,
)
from .models import StackSpec
from .reconciler import StackReconciler, check_prerequisites
from .report import Operation, OrchestrationReport
from .security import SecretlessViolationError
from .spec_loader import SpecLoadError, load_stack_spec

OUTPUT_FORMATS = ("text", "json")

spec_option = click.option(
    "--spec",
    "spec_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Stack spec YAML (default: $SPEC_FILE)",
)
output_option = click.option(
    "--output",
    "-o",
    type=click.Choice(OUTPUT_FORMATS),
    default="text",
    show_default=True,
    help="Report format",
)


def fail(message: str, code: int = EXIT_CONFIGURATION_ERROR) -> NoReturn:
    click.secho(f"Error: {message}", fg="red", err=True)
    sys.exit(code)


def load(ctx: click.Context, spec_path: Path | None) -> tuple[Config, StackSpec]:
    """Load config and spec, set up logging and check required tools."""
    try:
        config = Config.from_env(spec_file=spec_path)
    except ConfigurationError as e:
        fail(str(e))

    setup_logging(
        json_output=config.security.enable_audit_logging,
        level=logging.DEBUG if ctx.obj.get("verbose") else logging.INFO,
        stream=sys.stderr,
    )

    try:
        spec = load_stack_spec(config.spec_file, config.security.max_resources_per_stack)
        check_prerequisites(spec)
    except (SpecLoadError, ConfigurationError) as e:
        fail(str(e))
    return config, spec


def run_operation(
    config: Config, spec: StackSpec, operation: Operation, output: str
) -> NoReturn:
    try:
        reconciler = StackReconciler.from_config(config, spec)
    except SecretlessViolationError as e:
        fail(f"Security violation: {e}")

    try:
        report = asyncio.run(execute(reconciler, operation))
    except Exception as e:
        logging.getLogger(__name__).exception("Unhandled exception", extra={"error": str(e)})
        fail(f"{type(e).__name__}: {e}", EXIT_FAILURE)

    print_report(report, output)
    sys.exit(exit_code(report))


def print_report(report: OrchestrationReport, output: str) -> None:
    if output == "json":
        click.echo(report.to_json())
        return
    click.secho(report.to_text(), fg="green" if report.succeeded else "red")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="stackop")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Stack operator CLI (stackop).

    Reconciles a network, AKS cluster, Redis cache and Helm releases
    against what already exists, and tears them down again.

    \b
    Quick Start:
        stackop validate --spec stack.yaml
        stackop plan --spec stack.yaml
        stackop deploy --spec stack.yaml
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@cli.command()
@spec_option
@click.pass_context
def validate(ctx: click.Context, spec_path: Path | None) -> None:
    """Validate config and spec; print the dependency order."""
    config, spec = load(ctx, spec_path)
    order = spec.graph().topological_sort()

    click.echo(f"Stack {config.stack_id} (resource group {config.resource_group})")
    for index, name in enumerate(order, start=1):
        resource = spec.resource(name)
        depends = f" <- {', '.join(resource.depends_on)}" if resource.depends_on else ""
        click.echo(f"  {index}. {name} [{resource.kind.value}] {resource.stable_name}{depends}")
    click.secho(f"✓ {len(order)} resources valid", fg="green")
    sys.exit(EXIT_SUCCESS)


@cli.command()
@spec_option
@click.option("--dry-run", is_flag=True, help="Resolve and report without applying")
@output_option
@click.pass_context
def deploy(ctx: click.Context, spec_path: Path | None, dry_run: bool, output: str) -> None:
    """Deploy the stack."""
    config, spec = load(ctx, spec_path)
    operation = Operation.PLAN if dry_run or config.dry_run else Operation.DEPLOY
    run_operation(config, spec, operation, output)


@cli.command()
@spec_option
@output_option
@click.pass_context
def plan(ctx: click.Context, spec_path: Path | None, output: str) -> None:
    """Show what deploy would do, without applying anything."""
    config, spec = load(ctx, spec_path)
    run_operation(config, spec, Operation.PLAN, output)


@cli.command()
@spec_option
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@output_option
@click.pass_context
def destroy(ctx: click.Context, spec_path: Path | None, yes: bool, output: str) -> None:
    """Destroy every resource this stack created."""
    config, spec = load(ctx, spec_path)
    if not yes:
        click.confirm(
            f"Destroy stack {config.stack_id} ({len(spec.resources)} resources) "
            f"in resource group {config.resource_group}?",
            abort=True,
        )
    run_operation(config, spec, Operation.DESTROY, output)


if __name__ == "__main__":
    cli()
