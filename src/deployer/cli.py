"""capzctl: phase commands for an ARO/CAPZ workload cluster deployment.

Each command is one phase and one process. Phases agree on generated
identifiers through the deployment state file.

Usage:
    capzctl check       # Verify tools and configuration
    capzctl config      # Show the resolved configuration
    capzctl generate    # Generate (or reuse) cluster manifests
    capzctl apply       # Apply manifests and wait for the cluster
    capzctl status      # Show what still exists for the cluster
    capzctl delete      # Delete the cluster and wait until it is gone
    capzctl cleanup     # Remove the management cluster and state file
"""

from __future__ import annotations

import json
import shutil

import click

from .cloud import resource_group_lookup
from .config import (
    ConfigurationError,
    DesiredConfig,
    check_timeout_bounds,
    format_duration,
    resolve_desired_config,
)
from .drift import check_output_dir, provisioned_cluster_name
from .errors import DeployerError
from .generation import ManifestGenerator
from .kube import KubectlClient
from .main import setup_logging
from .poller import PollProgress
from .mce import MCEEnabler
from .reconciler import LifecycleReconciler, ReconcileResult
from .runner import run_command
from .state import DeploymentStateStore, StateFileError

VERSION = "0.1.0"

REQUIRED_TOOLS = ("kubectl", "az", "bash")
LOCAL_CLUSTER_TOOLS = ("kind",)
KIND_DELETE_TIMEOUT_SECONDS = 300


def load_config() -> DesiredConfig:
    """Resolve configuration, turning validation failures into CLI errors."""
    try:
        config = resolve_desired_config()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    for warning in config.resolution_warnings:
        click.secho(f"! {warning}", fg="yellow", err=True)
    return config


def build_reconciler(config: DesiredConfig) -> LifecycleReconciler:
    return LifecycleReconciler(
        config,
        KubectlClient.from_config(config),
        resource_groups=resource_group_lookup(config),
    )


def persisted_resource_group(config: DesiredConfig) -> str:
    """Resource group recorded by the run, falling back to the derived name."""
    try:
        state = DeploymentStateStore(config.state_path).read()
    except StateFileError as e:
        click.secho(f"! Ignoring unreadable state file: {e}", fg="yellow", err=True)
        state = None
    if state is not None and state.resource_group:
        return state.resource_group
    return config.resource_group


def echo_progress(progress: PollProgress) -> None:
    click.echo(
        f"  [{progress.iteration}] {progress.percentage:3d}% "
        f"elapsed {format_duration(progress.elapsed)}, "
        f"remaining {format_duration(progress.remaining)}: {progress.status or 'no status yet'}"
    )


def format_failure(result: ReconcileResult) -> str:
    lines = [
        f"{result.operation} of cluster {result.namespace}/{result.cluster_name} "
        f"ended in state {result.state.value}"
    ]
    if result.failed_artifact:
        lines.append(f"  Failed artifact: {result.failed_artifact} (attempt {result.attempts})")
    elif result.attempts:
        lines.append(f"  Attempts: {result.attempts}")
    if result.last_status:
        lines.append(f"  Last status: {result.last_status}")
    if result.error is not None:
        lines.append(f"  Error: {result.error}")
    return "\n".join(lines)


def format_mismatched_clusters(mismatched: list[str], expected_prefix: str, namespace: str) -> str:
    lines = [
        "Existing Cluster resources do not match the current configuration:",
        *(f"  - {name}" for name in mismatched),
        f"Expected cluster names starting with: {expected_prefix}",
        "This usually means CAPZ_USER or CS_CLUSTER_NAME changed without cleaning up",
        "the previous cluster. Deploying alongside it can cause conflicts.",
        "To clean up:",
        f"  kubectl delete cluster {mismatched[0]} -n {namespace}",
    ]
    if len(mismatched) > 1:
        lines.append(f"  kubectl delete cluster --all -n {namespace}")
    return "\n".join(lines)


def enable_mce_components(config: DesiredConfig) -> None:
    """Enable MCE Cluster API components on an external cluster, if MCE is installed."""
    result = MCEEnabler(config, KubectlClient.from_config(config)).enable(on_progress=echo_progress)
    if not result.installed:
        click.echo("MultiClusterEngine not installed; skipping component enablement")
        return
    for name in result.already_enabled:
        click.secho(f"✓ MCE component {name} already enabled", fg="green")
    for name in result.enabled:
        click.secho(f"✓ MCE component {name} enabled", fg="green")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="capzctl")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(json_logs: bool, verbose: bool) -> None:
    """capzctl: ARO/CAPZ deployment phases.

    Configuration comes from environment variables (CAPZ_USER,
    DEPLOYMENT_ENV, CS_CLUSTER_NAME, REGION, WORKLOAD_CLUSTER_NAMESPACE, ...).

    \b
    Typical run:
        capzctl check
        capzctl generate
        capzctl apply
        capzctl delete
        capzctl cleanup
    """
    setup_logging(json_output=json_logs, verbose=verbose)


@cli.command()
def check() -> None:
    """Verify required tools, configuration and timeout bounds."""
    failures = 0

    try:
        config = resolve_desired_config()
    except ConfigurationError as e:
        click.secho(f"✗ {e}", fg="red")
        config = None
        failures += 1

    tools = list(REQUIRED_TOOLS)
    if config is None or not config.use_kubeconfig:
        tools += LOCAL_CLUSTER_TOOLS
    for tool in tools:
        if shutil.which(tool):
            click.secho(f"✓ {tool} found", fg="green")
        else:
            click.secho(f"✗ {tool} not found on PATH", fg="red")
            failures += 1

    if config is not None:
        click.secho(
            f"✓ configuration valid (namespace {config.resolved_namespace}, "
            f"{config.namespace_source.value})",
            fg="green",
        )
        for warning in config.resolution_warnings:
            click.secho(f"! {warning}", fg="yellow")
        for problem in check_timeout_bounds(config):
            click.secho(f"! {problem}", fg="yellow")

    if failures:
        raise click.ClickException(f"{failures} check(s) failed")


@cli.command("config")
def show_config() -> None:
    """Print the resolved configuration as JSON."""
    config = load_config()
    click.echo(json.dumps(config.summary(), indent=2))


@cli.command()
@click.option("--force", is_flag=True, help="Regenerate even if existing manifests match")
def generate(force: bool) -> None:
    """Generate cluster manifests, reusing them when they still match."""
    config = load_config()
    try:
        result = ManifestGenerator(config).prepare(force=force)
    except DeployerError as e:
        raise click.ClickException(str(e)) from e

    verb = "Generated" if result.regenerated else "Reusing"
    click.echo(f"{verb} manifests in {result.output_dir} ({result.decision.reason})")
    for path in result.artifacts:
        click.echo(f"  {path.name}")
    click.secho(
        f"✓ State written to {config.state_path} (namespace {result.state.resolved_namespace})",
        fg="green",
    )


@cli.command()
@click.option("--skip-controllers", is_flag=True, help="Do not wait for controller readiness")
def apply(skip_controllers: bool) -> None:
    """Apply generated manifests and wait for the cluster to be provisioned."""
    config = load_config()
    decision = check_output_dir(config.output_dir, config)
    if not decision.reuse:
        raise click.ClickException(
            f"Manifests are not usable ({decision.reason}); run 'capzctl generate' first"
        )

    reconciler = build_reconciler(config)
    if not skip_controllers:
        try:
            if config.use_kubeconfig and config.mce_auto_enable:
                enable_mce_components(config)
            for namespace, deployment in config.controller_deployments:
                click.echo(f"Waiting for {namespace}/{deployment}...")
                reconciler.wait_for_controller(deployment, namespace)
        except DeployerError as e:
            raise click.ClickException(str(e)) from e

    try:
        mismatched = reconciler.find_mismatched_clusters()
    except DeployerError as e:
        # Clusters without the CAPI CRDs cannot be listed yet
        click.secho(f"! Could not check existing clusters: {e}", fg="yellow")
        click.echo("Continuing with deployment...")
        mismatched = []
    if mismatched:
        raise click.ClickException(
            format_mismatched_clusters(
                mismatched, config.cluster_name_prefix, config.resolved_namespace
            )
        )

    artifacts = ManifestGenerator(config).artifact_paths
    result = reconciler.create(artifacts, on_progress=echo_progress)
    if not result.success:
        raise click.ClickException(format_failure(result))

    click.secho(
        f"✓ Cluster {result.cluster_name} provisioned in {format_duration(result.duration_seconds)}",
        fg="green",
    )


@cli.command()
def status() -> None:
    """Show a deletion-status snapshot for the workload cluster."""
    config = load_config()
    reconciler = build_reconciler(config)
    snapshot = reconciler.deletion_status(
        provisioned_cluster_name(config), persisted_resource_group(config)
    )
    click.echo(snapshot.summary())
    for item in snapshot.blocking:
        click.echo(f"  still present: {item}")
    for error in snapshot.errors:
        click.secho(f"  ! {error}", fg="yellow")


@cli.command()
def delete() -> None:
    """Delete the workload cluster and wait until it is gone."""
    config = load_config()
    reconciler = build_reconciler(config)
    result = reconciler.delete(
        resource_group=persisted_resource_group(config), on_progress=echo_progress
    )
    if not result.success:
        raise click.ClickException(format_failure(result))

    click.secho(f"✓ Cluster {result.cluster_name} deleted", fg="green")
    for item in result.remaining_dependents:
        click.secho(f"! Still present: {item}", fg="yellow")


@cli.command()
@click.option("--keep-state", is_flag=True, help="Keep the deployment state file")
def cleanup(keep_state: bool) -> None:
    """Delete the local management cluster and the deployment state file."""
    config = load_config()

    if config.use_kubeconfig:
        click.echo("External cluster in use (USE_KUBECONFIG); leaving it in place")
    else:
        result = run_command(
            ["kind", "delete", "cluster", "--name", config.management_cluster_name],
            timeout=KIND_DELETE_TIMEOUT_SECONDS,
        )
        if not result.success:
            raise click.ClickException(
                f"Failed to delete kind cluster {config.management_cluster_name}: "
                f"{result.output.strip() or result.error}"
            )
        click.echo(f"Deleted kind cluster {config.management_cluster_name}")

    if keep_state:
        click.echo(f"Keeping state file {config.state_path}")
        return

    removed = DeploymentStateStore(config.state_path).delete()
    click.echo(
        f"Removed state file {config.state_path}" if removed else "No state file to remove"
    )
    click.secho("✓ Cleanup complete", fg="green")
