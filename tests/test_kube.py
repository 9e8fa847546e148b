"""Tests for the kubectl client."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from deployer.config import DesiredConfig
from deployer.errors import CommandFailedError
from deployer.kube import KubectlClient
from deployer.runner import CommandResult


def result(output: str = "", success: bool = True, return_code: int | None = 0) -> CommandResult:
    return CommandResult(
        args=("kubectl",),
        success=success,
        output=output,
        return_code=return_code,
        error=None if success else f"exit status {return_code}",
    )


@pytest.fixture
def runner() -> MagicMock:
    return MagicMock(return_value=result())


@pytest.fixture
def client(runner: MagicMock) -> KubectlClient:
    return KubectlClient(context="kind-capz-tests-stage", runner=runner)


def argv(runner: MagicMock) -> list[str]:
    return runner.call_args.args[0]


def make_config(**overrides) -> DesiredConfig:
    values = {
        "namespace_prefix": "capz-test",
        "resolved_namespace": "capz-test-1",
        "cluster_name_prefix": "rcapx-stage",
        "user": "rcapx",
        "environment": "stage",
    }
    values.update(overrides)
    return DesiredConfig(**values)


class TestCommandLine:
    """Tests for kubectl argument construction."""

    def test_context_prefix(self, client: KubectlClient, runner: MagicMock) -> None:
        """Test that the context is passed on every call."""
        client.run("get", "pods")

        assert argv(runner) == ["kubectl", "--context", "kind-capz-tests-stage", "get", "pods"]

    def test_kubeconfig_without_context(self, runner: MagicMock) -> None:
        """Test that an external kubeconfig is used without a kind context."""
        KubectlClient(kubeconfig="/tmp/kubeconfig", runner=runner).run("get", "nodes")

        assert argv(runner) == ["kubectl", "--kubeconfig", "/tmp/kubeconfig", "get", "nodes"]

    def test_from_config_local_cluster(self) -> None:
        """Test that a local management cluster uses its kind context."""
        config = make_config(management_cluster_name="capz-tests-stage")

        client = KubectlClient.from_config(config)

        assert client.context == "kind-capz-tests-stage"
        assert client.kubeconfig is None

    def test_from_config_external_cluster(self) -> None:
        """Test that USE_KUBECONFIG disables the kind context."""
        config = make_config(use_kubeconfig="/home/ci/.kube/config")

        client = KubectlClient.from_config(config)

        assert client.context is None
        assert client.kubeconfig == "/home/ci/.kube/config"


class TestApply:
    """Tests for apply."""

    def test_apply_args(self, client: KubectlClient, runner: MagicMock) -> None:
        """Test the apply command line."""
        runner.return_value = result("secret/aso-credential created")

        outcome = client.apply(Path("/out/credentials.yaml"), namespace="capz-test-1")

        assert outcome.success is True
        assert argv(runner)[-5:] == ["apply", "-f", "/out/credentials.yaml", "-n", "capz-test-1"]

    def test_nonzero_exit_with_success_output(self, client: KubectlClient, runner: MagicMock) -> None:
        """Test that clean success output overrides a non-zero exit."""
        runner.return_value = result(
            "cluster.cluster.x-k8s.io/rcapx-stage configured", success=False, return_code=1
        )

        outcome = client.apply(Path("aro.yaml"))

        assert outcome.success is True
        assert outcome.error is None

    def test_nonzero_exit_with_error_output(self, client: KubectlClient, runner: MagicMock) -> None:
        """Test that error keywords keep the failure."""
        runner.return_value = result(
            "secret/x created\nerror: unable to recognize", success=False, return_code=1
        )

        assert client.apply(Path("aro.yaml")).success is False

    def test_ambiguous_output_is_failure(self, client: KubectlClient, runner: MagicMock) -> None:
        """Test that unrecognised output after a non-zero exit stays a failure."""
        runner.return_value = result("", success=False, return_code=1)

        assert client.apply(Path("aro.yaml")).success is False


class TestQueries:
    """Tests for read-only queries."""

    def test_cluster_phase(self, client: KubectlClient, runner: MagicMock) -> None:
        """Test reading a Cluster phase."""
        runner.return_value = result("Provisioned\n")

        assert client.cluster_phase("rcapx-stage", "capz-test-1") == "Provisioned"
        assert argv(runner)[3:] == [
            "get",
            "cluster",
            "rcapx-stage",
            "-n",
            "capz-test-1",
            "--ignore-not-found",
            "-o",
            "jsonpath={.status.phase}",
        ]

    def test_query_failure_raises(self, client: KubectlClient, runner: MagicMock) -> None:
        """Test that a failed query raises CommandFailedError."""
        runner.return_value = result("connection refused", success=False, return_code=1)

        with pytest.raises(CommandFailedError, match="connection refused"):
            client.cluster_phase("rcapx-stage", "capz-test-1")

    def test_exists(self, client: KubectlClient, runner: MagicMock) -> None:
        """Test existence checks."""
        runner.return_value = result("cluster.cluster.x-k8s.io/rcapx-stage\n")
        assert client.exists("cluster", "rcapx-stage", "ns") is True

        runner.return_value = result("")
        assert client.exists("cluster", "rcapx-stage", "ns") is False

    def test_list_names(self, client: KubectlClient, runner: MagicMock) -> None:
        """Test listing resource names."""
        runner.return_value = result("pool-a pool-b")

        assert client.list_names("machinepool", "ns") == ["pool-a", "pool-b"]

    def test_finalizers_json(self, client: KubectlClient, runner: MagicMock) -> None:
        """Test parsing finalizers printed as a JSON list."""
        runner.return_value = result('["cluster.cluster.x-k8s.io"]')

        assert client.finalizers("cluster", "rcapx-stage", "ns") == ["cluster.cluster.x-k8s.io"]

    def test_finalizers_none(self, client: KubectlClient, runner: MagicMock) -> None:
        """Test a resource without finalizers."""
        runner.return_value = result("")

        assert client.finalizers("cluster", "rcapx-stage", "ns") == []

    def test_deployment_available(self, client: KubectlClient, runner: MagicMock) -> None:
        """Test the Available condition check."""
        runner.return_value = result("True")
        assert client.deployment_available("capz-controller-manager", "capz-system") is True

        runner.return_value = result("False")
        assert client.deployment_available("capz-controller-manager", "capz-system") is False

    def test_delete_does_not_wait(self, client: KubectlClient, runner: MagicMock) -> None:
        """Test that delete returns without waiting for finalizers."""
        client.delete("cluster", "rcapx-stage", "ns")

        assert "--wait=false" in argv(runner)
        assert "--ignore-not-found" in argv(runner)

    def test_get_json(self, client: KubectlClient, runner: MagicMock) -> None:
        """Test reading a whole resource."""
        runner.return_value = result('{"kind": "MultiClusterEngine", "spec": {}}')

        assert client.get_json("mce", "multiclusterengine") == {"kind": "MultiClusterEngine", "spec": {}}
        assert argv(runner)[3:] == ["get", "mce", "multiclusterengine", "-o", "json"]

    def test_get_json_invalid_output(self, client: KubectlClient, runner: MagicMock) -> None:
        """Test that unparseable output raises CommandFailedError."""
        runner.return_value = result("not json")

        with pytest.raises(CommandFailedError, match="invalid JSON"):
            client.get_json("mce", "multiclusterengine")

    def test_patch_merge(self, client: KubectlClient, runner: MagicMock) -> None:
        """Test the merge patch command line."""
        client.patch_merge("mce", "multiclusterengine", {"spec": {"overrides": {"components": []}}})

        assert argv(runner)[3:] == [
            "patch",
            "mce",
            "multiclusterengine",
            "--type=merge",
            "-p",
            '{"spec":{"overrides":{"components":[]}}}',
        ]
