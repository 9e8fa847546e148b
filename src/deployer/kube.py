"""kubectl client for the management cluster.

Thin wrapper: every call is one kubectl subprocess. Query methods raise
CommandFailedError so pollers can treat a failed read as "not yet known".
Mutating calls return the CommandResult so the retry executor can classify
the output.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import CommandFailedError
from .retry import is_apply_success
from .runner import CommandResult, run_command

if TYPE_CHECKING:
    from .config import DesiredConfig

logger = logging.getLogger(__name__)

KUBECTL_TIMEOUT_SECONDS = 60
APPLY_TIMEOUT_SECONDS = 300
REQUEST_TIMEOUT = "10s"

CLUSTER_KIND = "cluster"
CONTROL_PLANE_KIND = "arocontrolplane"
MACHINE_POOL_KIND = "machinepool"


class ClusterPhase(str, Enum):
    """Cluster API Cluster ``status.phase`` values."""

    UNKNOWN = "Unknown"
    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    PROVISIONED = "Provisioned"
    DELETING = "Deleting"
    FAILED = "Failed"


class KubectlClient:
    """Runs kubectl against one cluster context."""

    def __init__(
        self,
        context: str | None = None,
        kubeconfig: str | None = None,
        runner: Callable[..., CommandResult] = run_command,
    ) -> None:
        self.context = context
        self.kubeconfig = kubeconfig
        self._runner = runner

    @classmethod
    def from_config(cls, config: DesiredConfig) -> KubectlClient:
        return cls(context=config.kube_context, kubeconfig=config.use_kubeconfig)

    def run(self, *args: str, timeout: float = KUBECTL_TIMEOUT_SECONDS) -> CommandResult:
        argv = ["kubectl"]
        if self.kubeconfig:
            argv += ["--kubeconfig", self.kubeconfig]
        if self.context:
            argv += ["--context", self.context]
        argv += list(args)
        return self._runner(argv, timeout=timeout)

    def _checked(self, *args: str) -> str:
        result = self.run(*args)
        if not result.success:
            raise CommandFailedError(
                result.command, result.output or result.error or "", result.return_code
            )
        return result.output.strip()

    @staticmethod
    def _namespace_args(namespace: str | None) -> tuple[str, ...]:
        return ("-n", namespace) if namespace else ()

    def apply(self, path: Path, namespace: str | None = None) -> CommandResult:
        """Apply a manifest file.

        A non-zero exit whose output still reports only created, configured
        or unchanged resources counts as success.
        """
        result = self.run(
            "apply", "-f", str(path), *self._namespace_args(namespace), timeout=APPLY_TIMEOUT_SECONDS
        )
        if not result.success and result.return_code is not None and is_apply_success(result.output):
            logger.info(
                "kubectl apply exited non-zero but reported success",
                extra={"path": str(path), "return_code": result.return_code},
            )
            return replace(result, success=True, error=None)
        return result

    def get_field(self, kind: str, name: str, jsonpath: str, namespace: str | None = None) -> str:
        """Read one jsonpath field; empty when the resource does not exist."""
        return self._checked(
            "get",
            kind,
            name,
            *self._namespace_args(namespace),
            "--ignore-not-found",
            "-o",
            f"jsonpath={jsonpath}",
        )

    def get_json(self, kind: str, name: str, namespace: str | None = None) -> dict:
        """Read a whole resource as a dict."""
        output = self._checked("get", kind, name, *self._namespace_args(namespace), "-o", "json")
        try:
            resource = json.loads(output)
        except json.JSONDecodeError as e:
            raise CommandFailedError(f"kubectl get {kind} {name}", f"invalid JSON: {e}") from e
        if not isinstance(resource, dict):
            raise CommandFailedError(f"kubectl get {kind} {name}", "expected a JSON object")
        return resource

    def patch_merge(
        self, kind: str, name: str, patch: dict, namespace: str | None = None
    ) -> CommandResult:
        return self.run(
            "patch",
            kind,
            name,
            *self._namespace_args(namespace),
            "--type=merge",
            "-p",
            json.dumps(patch, separators=(",", ":")),
        )

    def exists(self, kind: str, name: str, namespace: str | None = None) -> bool:
        output = self._checked(
            "get", kind, name, *self._namespace_args(namespace), "--ignore-not-found", "-o", "name"
        )
        return bool(output)

    def list_names(self, kind: str, namespace: str | None = None) -> list[str]:
        output = self._checked(
            "get",
            kind,
            *self._namespace_args(namespace),
            "--ignore-not-found",
            "-o",
            "jsonpath={.items[*].metadata.name}",
        )
        return output.split()

    def finalizers(self, kind: str, name: str, namespace: str | None = None) -> list[str]:
        output = self.get_field(kind, name, "{.metadata.finalizers}", namespace)
        if not output:
            return []
        try:
            parsed = json.loads(output)
        except json.JSONDecodeError:
            return output.strip("[]").replace(",", " ").split()
        return [str(item) for item in parsed] if isinstance(parsed, list) else [str(parsed)]

    def cluster_phase(self, name: str, namespace: str) -> str:
        """``status.phase`` of a Cluster, or an empty string if it has none."""
        return self.get_field(CLUSTER_KIND, name, "{.status.phase}", namespace)

    def deployment_available(self, name: str, namespace: str) -> bool:
        status = self.get_field(
            "deployment", name, "{.status.conditions[?(@.type=='Available')].status}", namespace
        )
        return status == "True"

    def delete(
        self, kind: str, name: str, namespace: str | None = None, *, wait: bool = False
    ) -> CommandResult:
        return self.run(
            "delete",
            kind,
            name,
            *self._namespace_args(namespace),
            "--ignore-not-found",
            f"--wait={'true' if wait else 'false'}",
        )

    def ping(self) -> CommandResult:
        """Cheap request that succeeds only when the API server answers."""
        return self.run("get", "nodes", f"--request-timeout={REQUEST_TIMEOUT}", "-o", "name")
