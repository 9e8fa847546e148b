"""Lifecycle reconciler for the workload cluster.

Create path:
    NOT_APPLIED -> APPLYING -> WAITING_READY -> READY | FAILED | TIMED_OUT

Delete path:
    REQUESTED -> DELETING -> WAITING_ABSENT -> ABSENT | FAILED | TIMED_OUT

Steps run one at a time. Apply failures abort the create path and name the
artifact that failed. Timeouts carry the last observed status. While a
deletion is in progress, each check records which dependent resources are
still present.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from .cloud import ResourceGroupLookup, diagnose_azure_error
from .config import DesiredConfig
from .drift import provisioned_cluster_name
from .errors import (
    ArtifactApplyError,
    DeployerError,
    OperationFailedError,
    PollFailedError,
    PollTimeoutError,
)
from .kube import CLUSTER_KIND, CONTROL_PLANE_KIND, MACHINE_POOL_KIND, ClusterPhase, KubectlClient
from .poller import DEFAULT_POLL_INTERVAL_SECONDS, ProgressCallback, ReadinessPoller
from .retry import HEALTH_CHECK_POLICY, RetryExecutor

logger = logging.getLogger(__name__)

CONTROLLER_POLL_INTERVAL_SECONDS = 10.0


class CreateState(str, Enum):
    """States of the create path."""

    NOT_APPLIED = "NotApplied"
    APPLYING = "Applying"
    WAITING_READY = "WaitingReady"
    READY = "Ready"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"


class DeleteState(str, Enum):
    """States of the delete path."""

    REQUESTED = "Requested"
    DELETING = "Deleting"
    WAITING_ABSENT = "WaitingAbsent"
    ABSENT = "Absent"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"


@dataclass(frozen=True)
class DeletionStatus:
    """Snapshot of everything that can hold up a cluster deletion.

    ``None`` means the value could not be read during this check; the
    reasons are in ``errors``.
    """

    cluster_name: str
    namespace: str
    cluster_exists: bool | None
    cluster_phase: str | None = None
    finalizers: tuple[str, ...] = ()
    control_plane_count: int | None = None
    machine_pool_count: int | None = None
    resource_group: str | None = None
    resource_group_exists: bool | None = None
    resource_group_state: str | None = None
    errors: tuple[str, ...] = ()

    @property
    def blocking(self) -> list[str]:
        """Resources still present, most significant first."""
        remaining: list[str] = []
        if self.cluster_exists:
            remaining.append(f"cluster {self.cluster_name}")
        if self.control_plane_count:
            remaining.append(f"{self.control_plane_count} AROControlPlane(s)")
        if self.machine_pool_count:
            remaining.append(f"{self.machine_pool_count} MachinePool(s)")
        if self.resource_group_exists:
            remaining.append(f"resource group {self.resource_group}")
        return remaining

    def summary(self) -> str:
        def count(value: int | None) -> str:
            return "unknown" if value is None else str(value)

        if self.cluster_exists is None:
            cluster = "unknown"
        elif self.cluster_exists:
            cluster = self.cluster_phase or ClusterPhase.UNKNOWN.value
        else:
            cluster = "deleted"

        parts = [f"cluster={cluster}"]
        if self.finalizers:
            parts.append(f"finalizers=[{', '.join(self.finalizers)}]")
        parts.append(f"arocontrolplanes={count(self.control_plane_count)}")
        parts.append(f"machinepools={count(self.machine_pool_count)}")
        if self.resource_group:
            if self.resource_group_exists is None:
                group = "unknown"
            elif self.resource_group_exists:
                group = self.resource_group_state or "exists"
            else:
                group = "deleted"
            parts.append(f"resource_group[{self.resource_group}]={group}")
        if self.errors:
            parts.append(f"errors={len(self.errors)}")
        return " ".join(parts)


@dataclass
class ReconcileResult:
    """Result of one create or delete run."""

    operation: str
    cluster_name: str
    namespace: str
    state: CreateState | DeleteState
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    artifacts_applied: list[str] = field(default_factory=list)
    failed_artifact: str | None = None
    attempts: int = 0
    last_status: str | None = None
    remaining_dependents: list[str] = field(default_factory=list)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None and self.state in (CreateState.READY, DeleteState.ABSENT)


class LifecycleReconciler:
    """Drives the workload cluster through creation or deletion."""

    def __init__(
        self,
        config: DesiredConfig,
        kube: KubectlClient,
        *,
        resource_groups: ResourceGroupLookup | None = None,
        retry: RetryExecutor | None = None,
        poller: ReadinessPoller | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._config = config
        self._kube = kube
        self._resource_groups = resource_groups
        self._retry = retry or RetryExecutor()
        self._poller = poller or ReadinessPoller()
        self._poll_interval = poll_interval

    @property
    def namespace(self) -> str:
        return self._config.resolved_namespace

    # ------------------------------------------------------------------
    # Create path
    # ------------------------------------------------------------------

    def ensure_api_reachable(self) -> None:
        """Retry a cheap API request until the management cluster answers.

        Raises:
            OperationFailedError: If the API server stays unreachable.
        """
        self._retry.run(self._kube.ping, policy=HEALTH_CHECK_POLICY, step="API server health check")

    def apply_artifact(self, path: Path) -> None:
        """Apply one manifest with retries.

        Raises:
            ArtifactApplyError: Naming the artifact, the attempt and any
                recognised Azure remediation.
        """
        try:
            self._retry.run(lambda: self._kube.apply(path), step=f"apply {path.name}")
        except OperationFailedError as e:
            info = diagnose_azure_error(e.last_output)
            raise ArtifactApplyError(path.name, e, info.format() if info else None) from e
        logger.info("Artifact applied", extra={"artifact": path.name})

    def wait_for_cluster_ready(
        self, cluster_name: str, on_progress: ProgressCallback | None = None
    ) -> str:
        """Poll the Cluster phase until Provisioned.

        Raises:
            PollFailedError: If the phase becomes Failed.
            PollTimeoutError: If the deployment timeout passes first.
        """
        return self._poller.wait_for_phase(
            lambda: self._kube.cluster_phase(cluster_name, self.namespace),
            target=ClusterPhase.PROVISIONED.value,
            failed=(ClusterPhase.FAILED.value,),
            timeout=self._config.deployment_timeout_seconds,
            interval=self._poll_interval,
            description=f"cluster {self.namespace}/{cluster_name} to be provisioned",
            on_progress=on_progress,
        )

    def wait_for_controller(self, deployment: str, namespace: str | None = None) -> None:
        """Wait for a controller Deployment to report Available.

        Raises:
            PollTimeoutError: If the controller timeout passes first.
        """
        target_namespace = namespace or self._config.controller_namespace
        self._poller.wait_until_true(
            lambda: self._kube.deployment_available(deployment, target_namespace),
            timeout=self._config.controller_timeout_seconds,
            interval=CONTROLLER_POLL_INTERVAL_SECONDS,
            description=f"deployment {target_namespace}/{deployment} to be available",
        )

    def create(
        self,
        artifacts: Sequence[Path],
        cluster_name: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ReconcileResult:
        """Apply artifacts in order, then wait for the cluster to be provisioned."""
        name = cluster_name or provisioned_cluster_name(self._config)
        result = ReconcileResult(
            operation="create",
            cluster_name=name,
            namespace=self.namespace,
            state=CreateState.NOT_APPLIED,
        )

        try:
            result.state = CreateState.APPLYING
            self.ensure_api_reachable()
            for path in artifacts:
                self.apply_artifact(path)
                result.artifacts_applied.append(path.name)

            result.state = CreateState.WAITING_READY
            phase = self.wait_for_cluster_ready(name, on_progress)
            result.state = CreateState.READY
            result.last_status = f"phase={phase}"

        except ArtifactApplyError as e:
            result.state = CreateState.FAILED
            result.failed_artifact = e.artifact
            result.attempts = e.attempts
            result.last_status = e.last_output.strip() or None
            result.error = e
        except OperationFailedError as e:
            result.state = CreateState.FAILED
            result.attempts = e.attempts
            result.error = e
        except PollFailedError as e:
            result.state = CreateState.FAILED
            result.last_status = e.status
            result.error = e
        except PollTimeoutError as e:
            result.state = CreateState.TIMED_OUT
            result.last_status = e.last_status
            result.error = e
        finally:
            result.end_time = datetime.now(UTC)

        self._log_result(result)
        return result

    # ------------------------------------------------------------------
    # Delete path
    # ------------------------------------------------------------------

    def deletion_status(self, cluster_name: str, resource_group: str | None = None) -> DeletionStatus:
        """Gather one deletion snapshot.

        Read failures are recorded in the snapshot rather than raised.
        """
        namespace = self.namespace
        errors: list[str] = []

        cluster_exists: bool | None = None
        phase: str | None = None
        finalizers: tuple[str, ...] = ()
        try:
            phase = self._kube.cluster_phase(cluster_name, namespace) or None
            cluster_exists = self._kube.exists(CLUSTER_KIND, cluster_name, namespace)
            if cluster_exists:
                finalizers = tuple(self._kube.finalizers(CLUSTER_KIND, cluster_name, namespace))
        except DeployerError as e:
            errors.append(f"cluster: {e}")

        control_planes: int | None = None
        try:
            control_planes = len(self._kube.list_names(CONTROL_PLANE_KIND, namespace))
        except DeployerError as e:
            errors.append(f"{CONTROL_PLANE_KIND}: {e}")

        machine_pools: int | None = None
        try:
            machine_pools = len(self._kube.list_names(MACHINE_POOL_KIND, namespace))
        except DeployerError as e:
            errors.append(f"{MACHINE_POOL_KIND}: {e}")

        group_exists: bool | None = None
        group_state: str | None = None
        if resource_group and self._resource_groups is not None:
            try:
                group = self._resource_groups.status(resource_group)
                group_exists = group.exists
                group_state = group.provisioning_state
            except DeployerError as e:
                errors.append(f"resource group: {e}")

        return DeletionStatus(
            cluster_name=cluster_name,
            namespace=namespace,
            cluster_exists=cluster_exists,
            cluster_phase=phase if cluster_exists else None,
            finalizers=finalizers,
            control_plane_count=control_planes,
            machine_pool_count=machine_pools,
            resource_group=resource_group if self._resource_groups is not None else None,
            resource_group_exists=group_exists,
            resource_group_state=group_state,
            errors=tuple(errors),
        )

    def delete(
        self,
        cluster_name: str | None = None,
        resource_group: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ReconcileResult:
        """Request cluster deletion and wait until the Cluster resource is gone.

        Dependents still present afterwards are reported in
        ``remaining_dependents``; they do not fail the deletion.
        """
        name = cluster_name or provisioned_cluster_name(self._config)
        group = resource_group or self._config.resource_group
        result = ReconcileResult(
            operation="delete",
            cluster_name=name,
            namespace=self.namespace,
            state=DeleteState.REQUESTED,
        )

        try:
            if not self._kube.exists(CLUSTER_KIND, name, self.namespace):
                logger.info(
                    "Cluster already absent, nothing to delete",
                    extra={"cluster": name, "namespace": self.namespace},
                )
                result.state = DeleteState.ABSENT
                result.last_status = "cluster not found"
            else:
                result.state = DeleteState.DELETING
                self._retry.run(
                    lambda: self._kube.delete(CLUSTER_KIND, name, self.namespace, wait=False),
                    step=f"delete cluster {name}",
                )

                result.state = DeleteState.WAITING_ABSENT
                final = self._poller.wait_until_absent(
                    lambda: self.deletion_status(name, group),
                    exists=lambda status: status.cluster_exists is not False,
                    describe=DeletionStatus.summary,
                    timeout=self._config.deployment_timeout_seconds,
                    interval=self._poll_interval,
                    description=f"cluster {self.namespace}/{name} deletion",
                    on_progress=on_progress,
                )
                result.state = DeleteState.ABSENT
                result.last_status = final.summary()

            remaining = self.deletion_status(name, group)
            result.remaining_dependents = remaining.blocking
            if result.remaining_dependents:
                logger.warning(
                    "Dependent resources still present after cluster deletion",
                    extra={"cluster": name, "remaining": result.remaining_dependents},
                )

        except OperationFailedError as e:
            result.state = DeleteState.FAILED
            result.attempts = e.attempts
            result.last_status = e.last_output.strip() or None
            result.error = e
        except PollTimeoutError as e:
            result.state = DeleteState.TIMED_OUT
            result.last_status = e.last_status
            result.error = e
        except DeployerError as e:
            result.state = DeleteState.FAILED
            result.error = e
        finally:
            result.end_time = datetime.now(UTC)

        self._log_result(result)
        return result

    def find_mismatched_clusters(self, expected_prefix: str | None = None) -> list[str]:
        """Clusters in the namespace whose names do not start with the expected prefix.

        These are left over from runs with a different CS_CLUSTER_NAME.
        """
        prefix = expected_prefix or self._config.cluster_name_prefix
        names = self._kube.list_names(CLUSTER_KIND, self.namespace)
        mismatched = [name for name in names if not name.startswith(prefix)]
        if mismatched:
            logger.warning(
                "Found clusters from a different configuration",
                extra={"namespace": self.namespace, "expected_prefix": prefix, "clusters": mismatched},
            )
        return mismatched

    def _log_result(self, result: ReconcileResult) -> None:
        extra = {
            "operation": result.operation,
            "cluster": result.cluster_name,
            "namespace": result.namespace,
            "state": result.state.value,
            "duration_seconds": result.duration_seconds,
            "artifacts_applied": result.artifacts_applied,
            "last_status": result.last_status,
        }
        if result.success:
            logger.info("Reconciliation completed", extra=extra)
        else:
            extra["failed_artifact"] = result.failed_artifact
            extra["attempts"] = result.attempts
            extra["error"] = str(result.error)
            logger.error("Reconciliation failed", extra=extra)
