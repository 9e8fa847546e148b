"""MultiClusterEngine component enablement for external management clusters.

On an MCE-managed cluster the Cluster API controllers ship as MCE
components that may be disabled. Enabling one is a merge patch of the
component overrides on the ``multiclusterengine`` resource. The operator
then needs time to roll the controllers out, so enablement ends with a
wait for every controller Deployment.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from .config import DesiredConfig
from .errors import CommandFailedError, DeployerError, OperationFailedError
from .kube import KubectlClient
from .poller import ProgressCallback, ReadinessPoller
from .retry import ErrorClass, RetryExecutor, classify_command_error
from .runner import CommandResult

logger = logging.getLogger(__name__)

MCE_KIND = "mce"
MCE_RESOURCE_NAME = "multiclusterengine"

# Component names in spec.overrides.components
MCE_COMPONENT_CAPI = "cluster-api"
MCE_COMPONENT_CAPZ = "cluster-api-provider-azure-preview"
DEFAULT_MCE_COMPONENTS = (MCE_COMPONENT_CAPI, MCE_COMPONENT_CAPZ)

MCE_SETTLE_SECONDS = 30.0
MCE_CONTROLLER_POLL_INTERVAL_SECONDS = 15.0

EXCLUSIVITY_MARKERS = ("component exclusivity violation", "hypershift")

EXCLUSIVITY_REMEDIATION = """\
  HyperShift and Cluster API components cannot be enabled at the same time.
  Disable the HyperShift components first:
    kubectl patch mce multiclusterengine --type=merge -p \\
      '{"spec":{"overrides":{"components":[{"name":"hypershift","enabled":false},{"name":"hypershift-local-hosting","enabled":false}]}}}'"""

TROUBLESHOOTING = """\
  Troubleshooting steps:
    1. Verify the MCE operator is healthy: kubectl get csv -n multicluster-engine
    2. Check MCE conditions: kubectl get mce multiclusterengine -o yaml
    3. Verify you have cluster-admin permissions"""


class MCEEnablementError(DeployerError):
    """Raised when an MCE component cannot be enabled."""

    def __init__(self, component: str, cause: Exception) -> None:
        self.component = component
        text = str(cause)
        self.exclusivity = any(marker in text.lower() for marker in EXCLUSIVITY_MARKERS)
        hint = EXCLUSIVITY_REMEDIATION if self.exclusivity else TROUBLESHOOTING
        super().__init__(f"Failed to enable MCE component {component}: {text}\n{hint}")


@dataclass(frozen=True)
class ComponentStatus:
    name: str
    exists: bool
    enabled: bool


@dataclass
class EnablementResult:
    """What an enablement run found and changed."""

    installed: bool
    already_enabled: list[str] = field(default_factory=list)
    enabled: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.enabled)


def classify_enablement_error(output: str, error: str | None) -> ErrorClass:
    """Exclusivity violations never clear up; everything else is classified as usual."""
    text = f"{output}\n{error or ''}".lower()
    if any(marker in text for marker in EXCLUSIVITY_MARKERS):
        return ErrorClass.FATAL
    return classify_command_error(output, error)


def component_overrides_patch(resource: dict, component: str, enabled: bool) -> dict:
    """Build a merge patch setting one component, keeping all others as they are.

    A merge patch replaces the whole components list, so every existing
    entry is carried over. A component missing from the list is appended.
    """
    overrides = (resource.get("spec") or {}).get("overrides") or {}
    components = list(overrides.get("components") or [])

    updated = []
    found = False
    for entry in components:
        if isinstance(entry, dict) and entry.get("name") == component:
            updated.append({**entry, "enabled": enabled})
            found = True
        else:
            updated.append(entry)
    if not found:
        updated.append({"name": component, "enabled": enabled})

    return {"spec": {"overrides": {"components": updated}}}


class MCEEnabler:
    """Enables the Cluster API components of a MultiClusterEngine install."""

    def __init__(
        self,
        config: DesiredConfig,
        kube: KubectlClient,
        *,
        retry: RetryExecutor | None = None,
        poller: ReadinessPoller | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._kube = kube
        self._retry = retry or RetryExecutor()
        self._poller = poller or ReadinessPoller()
        self._sleep = sleep

    def is_installed(self) -> bool:
        """True if the cluster has a multiclusterengine resource."""
        try:
            return self._kube.exists(MCE_KIND, MCE_RESOURCE_NAME)
        except CommandFailedError as e:
            # No MCE CRD on this cluster
            logger.info("MultiClusterEngine not found", extra={"error": str(e)})
            return False

    def component_status(self, name: str) -> ComponentStatus:
        value = self._kube.get_field(
            MCE_KIND,
            MCE_RESOURCE_NAME,
            f"{{.spec.overrides.components[?(@.name=='{name}')].enabled}}",
        )
        return ComponentStatus(name=name, exists=bool(value), enabled=value == "true")

    def set_component(self, name: str, enabled: bool = True) -> CommandResult:
        """Patch one component's enabled flag.

        Returns the patch result, or a failed result if the resource could
        not be read, so the retry executor can classify either.
        """
        try:
            resource = self._kube.get_json(MCE_KIND, MCE_RESOURCE_NAME)
        except CommandFailedError as e:
            return CommandResult(
                args=("kubectl", "get", MCE_KIND, MCE_RESOURCE_NAME),
                success=False,
                output=e.output,
                return_code=e.return_code,
                error=str(e),
            )
        patch = component_overrides_patch(resource, name, enabled)
        return self._kube.patch_merge(MCE_KIND, MCE_RESOURCE_NAME, patch)

    def enable(
        self,
        components: Sequence[str] = DEFAULT_MCE_COMPONENTS,
        on_progress: ProgressCallback | None = None,
    ) -> EnablementResult:
        """Enable any disabled components, then wait for the controllers.

        Raises:
            MCEEnablementError: If a component cannot be read or enabled.
            PollTimeoutError: If a controller is not available within
                the MCE enablement timeout.
        """
        if not self.is_installed():
            logger.info("Skipping MCE enablement, MultiClusterEngine is not installed")
            return EnablementResult(installed=False)

        result = EnablementResult(installed=True)
        for name in components:
            try:
                status = self.component_status(name)
            except CommandFailedError as e:
                raise MCEEnablementError(name, e) from e

            if status.enabled:
                logger.info("MCE component already enabled", extra={"component": name})
                result.already_enabled.append(name)
                continue

            logger.info("Enabling MCE component", extra={"component": name})
            try:
                self._retry.run(
                    lambda: self.set_component(name),
                    classify=classify_enablement_error,
                    step=f"enable MCE component {name}",
                )
            except OperationFailedError as e:
                raise MCEEnablementError(name, e) from e
            result.enabled.append(name)

        if result.changed:
            self._sleep(MCE_SETTLE_SECONDS)
            for namespace, deployment in self._config.controller_deployments:
                self._poller.wait_until_true(
                    lambda: self._kube.deployment_available(deployment, namespace),
                    timeout=self._config.mce_enablement_timeout_seconds,
                    interval=MCE_CONTROLLER_POLL_INTERVAL_SECONDS,
                    description=f"deployment {namespace}/{deployment} after MCE enablement",
                    on_progress=on_progress,
                )
            logger.info("MCE components enabled", extra={"components": result.enabled})

        return result
