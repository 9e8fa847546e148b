"""Tests for configuration resolution."""

import json
import os
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from deployer.config import (
    DEFAULT_CONTROLLER_TIMEOUT_SECONDS,
    DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS,
    MCE_CONTROLLER_NAMESPACE,
    ConfigurationError,
    DesiredConfig,
    NamespaceSource,
    check_timeout_bounds,
    format_duration,
    generate_namespace,
    parse_duration,
    resolve_desired_config,
    rfc1123_issues,
    suggest_rfc1123_name,
    validate_domain_prefix,
    validate_rfc1123_name,
)
from deployer.state import DeploymentStateStore


def fixed_clock(*args: int):
    return lambda: datetime(*args, tzinfo=UTC)


def make_config(**overrides) -> DesiredConfig:
    values = {
        "namespace_prefix": "capz-test",
        "resolved_namespace": "capz-test-20260203-140812",
        "cluster_name_prefix": "rcapx-stage",
        "user": "rcapx",
        "environment": "stage",
    }
    values.update(overrides)
    return DesiredConfig(**values)


class TestParseDuration:
    """Tests for duration parsing."""

    @pytest.mark.parametrize(
        ("text", "seconds"),
        [
            ("90s", 90),
            ("10m", 600),
            ("1h30m", 5400),
            ("1.5h", 5400),
            ("500ms", 0.5),
            ("45", 45),
            (" 60m ", 3600),
        ],
    )
    def test_valid_durations(self, text: str, seconds: float) -> None:
        """Test parsing of supported duration forms."""
        assert parse_duration(text) == pytest.approx(seconds)

    @pytest.mark.parametrize("text", ["", "abc", "10x", "m10", "10m junk", "-5m"])
    def test_invalid_durations(self, text: str) -> None:
        """Test that malformed durations are rejected."""
        with pytest.raises(ValueError):
            parse_duration(text)

    def test_format_duration(self) -> None:
        """Test compact rendering of durations."""
        assert format_duration(3600) == "1h"
        assert format_duration(5400) == "1h30m"
        assert format_duration(45) == "45s"
        assert format_duration(0) == "0s"


class TestNameValidation:
    """Tests for RFC 1123 name checks."""

    def test_valid_name(self) -> None:
        """Test that a compliant name passes."""
        assert validate_rfc1123_name("CAPZ_USER", "rcapx") is None
        assert rfc1123_issues("a1-b2") == []

    def test_empty_name(self) -> None:
        """Test that an empty name is invalid."""
        assert rfc1123_issues("") == ["value is empty"]

    def test_uppercase_reported_with_suggestion(self) -> None:
        """Test that uppercase names are rejected with a lowercase suggestion."""
        message = validate_rfc1123_name("CAPZ_USER", "RCapx")

        assert message is not None
        assert "uppercase" in message
        assert "export CAPZ_USER=rcapx" in message

    def test_invalid_characters_and_edges(self) -> None:
        """Test that invalid characters and bad edges are all listed."""
        issues = rfc1123_issues("-my_name-")

        assert any("invalid characters" in issue for issue in issues)
        assert any("must start" in issue for issue in issues)
        assert any("must end" in issue for issue in issues)

    def test_suggestion_normalizes(self) -> None:
        """Test that suggestions collapse and trim separators."""
        assert suggest_rfc1123_name("My__Cluster.Name-") == "my-cluster-name"


class TestDesiredConfig:
    """Tests for DesiredConfig validation."""

    def test_valid_config(self) -> None:
        """Test creating a valid configuration and its derived identifiers."""
        config = make_config()

        assert config.domain_prefix == "rcapx-stage"
        assert config.external_auth_id == "rcapx-stage-ea"
        assert config.resource_group == "rcapx-stage-resgroup"
        assert config.deployment_timeout_seconds == DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS
        assert config.controller_timeout_seconds == DEFAULT_CONTROLLER_TIMEOUT_SECONDS

    def test_domain_prefix_too_long(self) -> None:
        """Test that user + env over 15 characters names the length and both fields."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(user="radoslavcap", environment="stage", cluster_name_prefix="rc")

        message = str(exc_info.value)
        assert "17 characters" in message
        assert "CAPZ_USER 'radoslavcap'" in message
        assert "DEPLOYMENT_ENV 'stage'" in message

    def test_domain_prefix_within_limit(self) -> None:
        """Test that a 14 character domain prefix is accepted."""
        config = make_config(user="testuser12", environment="dev", cluster_name_prefix="tu-dev")

        assert config.domain_prefix == "testuser12-dev"

    @pytest.mark.parametrize(
        ("user", "environment"),
        [("a" * 7, "b" * 7), ("a" * 13, "b"), ("a", "b" * 13), ("ab", "cd")],
    )
    def test_domain_prefix_up_to_fifteen_accepted(self, user: str, environment: str) -> None:
        """Test that every combination of at most 15 characters passes."""
        assert validate_domain_prefix(user, environment) is None
        make_config(user=user, environment=environment, cluster_name_prefix="c")

    @pytest.mark.parametrize(("user", "environment"), [("a" * 8, "b" * 7), ("a" * 14, "b")])
    def test_domain_prefix_of_sixteen_rejected(self, user: str, environment: str) -> None:
        """Test that a 16 character domain prefix fails."""
        message = validate_domain_prefix(user, environment)

        assert message is not None
        assert "16 characters" in message

    def test_external_auth_id_too_long(self) -> None:
        """Test that a cluster name prefix over 12 characters is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(cluster_name_prefix="abcdefghijklm")

        message = str(exc_info.value)
        assert "abcdefghijklm-ea" in message
        assert "at most 12" in message

    def test_all_violations_reported_together(self) -> None:
        """Test that one failure lists every bad field."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(
                resolved_namespace="Bad_Namespace",
                user="Radoslav",
                cluster_name_prefix="way-too-long-prefix",
                region="UK South",
            )

        message = str(exc_info.value)
        assert "WORKLOAD_CLUSTER_NAMESPACE" in message
        assert "CAPZ_USER" in message
        assert "CS_CLUSTER_NAME" in message
        assert "REGION" in message

    def test_empty_namespace_rejected(self) -> None:
        """Test that an empty namespace is invalid."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(resolved_namespace="")

        assert "value is empty" in str(exc_info.value)

    def test_non_positive_timeout_rejected(self) -> None:
        """Test that zero timeouts are rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(deployment_timeout_seconds=0)

        assert "DEPLOYMENT_TIMEOUT" in str(exc_info.value)

    def test_config_is_immutable(self) -> None:
        """Test that resolved configuration cannot be changed."""
        config = make_config()

        with pytest.raises(AttributeError):
            config.resolved_namespace = "other"  # type: ignore[misc]

    def test_paths_and_context(self, tmp_path: Path) -> None:
        """Test derived paths and kubectl context."""
        config = make_config(repo_dir=tmp_path, workload_cluster_name="wl")

        assert config.output_dir == tmp_path / "wl-stage"
        assert config.state_path == tmp_path / ".deployment-state.json"
        assert config.kube_context == "kind-capz-tests-stage"
        assert make_config(use_kubeconfig="/kube/config").kube_context is None


class TestResolveDesiredConfig:
    """Tests for resolution from environment and persisted state."""

    def test_defaults(self, tmp_path: Path) -> None:
        """Test resolution with only the working directory set."""
        config = resolve_desired_config(
            {"ARO_REPO_DIR": str(tmp_path)}, now=fixed_clock(2026, 2, 3, 14, 8, 12)
        )

        assert config.user == "rcapx"
        assert config.environment == "stage"
        assert config.cluster_name_prefix == "rcapx-stage"
        assert config.region == "uksouth"
        assert config.resolved_namespace == "capz-test-20260203-140812"
        assert config.namespace_source == NamespaceSource.GENERATED
        assert config.controller_namespace == "capz-system"

    def test_override_wins_over_state(self, tmp_path: Path) -> None:
        """Test that an explicit namespace is used verbatim."""
        store = DeploymentStateStore(tmp_path / "state.json")
        store.write(make_config(resolved_namespace="from-state"))

        config = resolve_desired_config(
            {"ARO_REPO_DIR": str(tmp_path), "WORKLOAD_CLUSTER_NAMESPACE": "explicit-ns"},
            state_store=store,
        )

        assert config.resolved_namespace == "explicit-ns"
        assert config.namespace_source == NamespaceSource.OVERRIDE

    def test_state_wins_over_generation(self, tmp_path: Path) -> None:
        """Test that a later phase reuses the namespace persisted earlier."""
        env = {"ARO_REPO_DIR": str(tmp_path)}
        first = resolve_desired_config(env, now=fixed_clock(2026, 2, 3, 14, 8, 12))
        DeploymentStateStore(first.state_path).write(first)

        second = resolve_desired_config(env, now=fixed_clock(2026, 2, 3, 15, 0, 0))

        assert second.resolved_namespace == first.resolved_namespace
        assert second.namespace_source == NamespaceSource.STATE

    def test_generation_not_memoized(self, tmp_path: Path) -> None:
        """Test that two resolutions without state produce different namespaces."""
        env = {"ARO_REPO_DIR": str(tmp_path)}

        first = resolve_desired_config(env, now=fixed_clock(2026, 2, 3, 14, 8, 12))
        second = resolve_desired_config(env, now=fixed_clock(2026, 2, 3, 14, 8, 13))

        assert first.resolved_namespace != second.resolved_namespace
        assert first.resolved_namespace.startswith("capz-test-20260203-1408")
        assert second.resolved_namespace.startswith("capz-test-20260203-1408")

    def test_resolution_does_not_write_state(self, tmp_path: Path) -> None:
        """Test that resolving leaves no state file behind."""
        config = resolve_desired_config({"ARO_REPO_DIR": str(tmp_path)})

        assert not config.state_path.exists()

    def test_corrupt_state_ignored(self, tmp_path: Path) -> None:
        """Test that an unreadable state file degrades to a fresh namespace."""
        (tmp_path / ".deployment-state.json").write_text("{not json")

        config = resolve_desired_config(
            {"ARO_REPO_DIR": str(tmp_path), "WORKLOAD_CLUSTER_NAMESPACE_PREFIX": "mine"},
            now=fixed_clock(2026, 1, 1, 0, 0, 0),
        )

        assert config.resolved_namespace == "mine-20260101-000000"
        assert config.namespace_source == NamespaceSource.GENERATED

    def test_undecodable_state_ignored(self, tmp_path: Path) -> None:
        """Test that a state file with invalid UTF-8 degrades to a fresh namespace."""
        (tmp_path / ".deployment-state.json").write_bytes(b'{"resolved_namespace": "\xff\xfe"}')

        config = resolve_desired_config(
            {"ARO_REPO_DIR": str(tmp_path)}, now=fixed_clock(2026, 1, 1, 0, 0, 0)
        )

        assert config.resolved_namespace == "capz-test-20260101-000000"
        assert config.namespace_source == NamespaceSource.GENERATED

    def test_namespace_only_state_is_used(self, tmp_path: Path) -> None:
        """Test that a state file holding just the namespace is authoritative."""
        (tmp_path / ".deployment-state.json").write_text(
            json.dumps({"resolved_namespace": "capz-test-20260101-000000"})
        )

        config = resolve_desired_config(
            {"ARO_REPO_DIR": str(tmp_path)}, now=fixed_clock(2026, 10, 19, 16, 20, 2)
        )

        assert config.resolved_namespace == "capz-test-20260101-000000"
        assert config.namespace_source == NamespaceSource.STATE

    def test_invalid_duration_falls_back_with_warning(self, tmp_path: Path) -> None:
        """Test that a bad duration uses the default and records a warning."""
        config = resolve_desired_config(
            {
                "ARO_REPO_DIR": str(tmp_path),
                "DEPLOYMENT_TIMEOUT": "forever",
                "ASO_CONTROLLER_TIMEOUT": "15m",
            }
        )

        assert config.deployment_timeout_seconds == DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS
        assert config.controller_timeout_seconds == 900
        assert len(config.resolution_warnings) == 1
        assert "DEPLOYMENT_TIMEOUT" in config.resolution_warnings[0]

    def test_invalid_names_fail_resolution(self, tmp_path: Path) -> None:
        """Test that resolution raises for an invalid user."""
        with pytest.raises(ConfigurationError) as exc_info:
            resolve_desired_config({"ARO_REPO_DIR": str(tmp_path), "CAPZ_USER": "Bad.User"})

        assert "CAPZ_USER" in str(exc_info.value)

    def test_kubeconfig_implies_mce_namespace(self, tmp_path: Path) -> None:
        """Test controller namespace selection for external clusters."""
        config = resolve_desired_config(
            {"ARO_REPO_DIR": str(tmp_path), "USE_KUBECONFIG": "/tmp/kubeconfig"}
        )

        assert config.controller_namespace == MCE_CONTROLLER_NAMESPACE
        assert config.capi_namespace == MCE_CONTROLLER_NAMESPACE
        assert config.kube_context is None
        assert config.mce_auto_enable is True

    def test_controller_deployments(self, tmp_path: Path) -> None:
        """Test that CAPI, CAPZ and ASO are each paired with their namespace."""
        config = resolve_desired_config(
            {"ARO_REPO_DIR": str(tmp_path), "CAPI_NAMESPACE": "capi-custom"}
        )

        assert config.controller_deployments == (
            ("capi-custom", "capi-controller-manager"),
            ("capz-system", "capz-controller-manager"),
            ("capz-system", "azureserviceoperator-controller-manager"),
        )
        assert config.mce_auto_enable is False

    def test_mce_settings(self, tmp_path: Path) -> None:
        """Test MCE enablement switches and timeout."""
        config = resolve_desired_config(
            {
                "ARO_REPO_DIR": str(tmp_path),
                "USE_KUBECONFIG": "/tmp/kubeconfig",
                "MCE_AUTO_ENABLE": "false",
                "MCE_ENABLEMENT_TIMEOUT": "20m",
            }
        )

        assert config.mce_auto_enable is False
        assert config.mce_enablement_timeout_seconds == 1200

    def test_explicit_state_file_path(self, tmp_path: Path) -> None:
        """Test that DEPLOYMENT_STATE_FILE relocates the state file."""
        state_file = tmp_path / "custom" / "state.json"
        config = resolve_desired_config(
            {"ARO_REPO_DIR": str(tmp_path), "DEPLOYMENT_STATE_FILE": str(state_file)}
        )

        assert config.state_path == state_file

    def test_reads_process_environment(self, tmp_path: Path) -> None:
        """Test that os.environ is used when no mapping is given."""
        env = {
            "ARO_REPO_DIR": str(tmp_path),
            "CAPZ_USER": "tester",
            "DEPLOYMENT_ENV": "dev",
            "REGION": "westeurope",
        }
        with patch.dict(os.environ, env, clear=True):
            config = resolve_desired_config()

        assert config.domain_prefix == "tester-dev"
        assert config.region == "westeurope"

    def test_summary_is_json_serializable(self, tmp_path: Path) -> None:
        """Test that the summary can be printed as JSON."""
        config = resolve_desired_config({"ARO_REPO_DIR": str(tmp_path)})

        summary = json.loads(json.dumps(config.summary()))
        assert summary["resource_group"] == "rcapx-stage-resgroup"
        assert summary["deployment_timeout"] == "1h"


class TestGenerateNamespace:
    """Tests for namespace generation."""

    def test_format(self) -> None:
        """Test prefix plus second-granularity timestamp."""
        assert generate_namespace("p", fixed_clock(2026, 12, 31, 23, 59, 58)) == "p-20261231-235958"


class TestTimeoutBounds:
    """Tests for timeout bound checks."""

    def test_defaults_within_bounds(self) -> None:
        """Test that default timeouts raise no problems."""
        assert check_timeout_bounds(make_config()) == []

    def test_out_of_bounds(self) -> None:
        """Test that too short and too long timeouts are reported."""
        config = make_config(deployment_timeout_seconds=60, controller_timeout_seconds=4 * 3600)

        problems = check_timeout_bounds(config)

        assert len(problems) == 2
        assert "too short" in problems[0]
        assert "export DEPLOYMENT_TIMEOUT=15m" in problems[0]
        assert "too long" in problems[1]
