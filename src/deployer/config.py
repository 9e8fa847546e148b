"""Deployment configuration resolution with validation.

Every phase runs as its own process, so the configuration is rebuilt from
the environment each time. The one value that cannot be rebuilt from the
environment is the generated workload namespace. It is taken from the
persisted deployment state when a previous phase already produced one.

Resolution never writes state. The generation phase persists the resolved
configuration once artifacts exist for it.
"""

from __future__ import annotations

import logging
import os
import re
import string
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from .errors import DeployerError
from .state import RESOURCE_GROUP_SUFFIX, DeploymentStateStore, StateFileError

logger = logging.getLogger(__name__)


class ConfigurationError(DeployerError):
    """Raised when configuration validation fails."""

    pass


class NamespaceSource(str, Enum):
    """Where the resolved workload namespace came from."""

    OVERRIDE = "override"
    STATE = "state"
    GENERATED = "generated"


# Naming defaults
DEFAULT_NAMESPACE_PREFIX = "capz-test"
DEFAULT_CAPZ_USER = "rcapx"
DEFAULT_DEPLOYMENT_ENV = "stage"
DEFAULT_REGION = "uksouth"
DEFAULT_MANAGEMENT_CLUSTER_NAME = "capz-tests-stage"
DEFAULT_WORKLOAD_CLUSTER_NAME = "capz-tests-cluster"
DEFAULT_GEN_SCRIPT_PATH = "doc/aro-hcp-scripts/aro-hcp-gen.sh"
DEFAULT_CONTROLLER_NAMESPACE = "capz-system"
DEFAULT_CAPI_NAMESPACE = "capi-system"
MCE_CONTROLLER_NAMESPACE = "multicluster-engine"
REPO_DIR_NAME = "cluster-api-installer-aro"
STATE_FILE_NAME = ".deployment-state.json"
NAMESPACE_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

# Timeouts with documented bounds (seconds)
DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS = 60 * 60
MIN_DEPLOYMENT_TIMEOUT_SECONDS = 15 * 60
MAX_DEPLOYMENT_TIMEOUT_SECONDS = 3 * 60 * 60

DEFAULT_CONTROLLER_TIMEOUT_SECONDS = 10 * 60
MIN_CONTROLLER_TIMEOUT_SECONDS = 2 * 60
MAX_CONTROLLER_TIMEOUT_SECONDS = 30 * 60

DEFAULT_MCE_ENABLEMENT_TIMEOUT_SECONDS = 15 * 60

# Controller deployments the workload cluster depends on
CAPI_CONTROLLER_DEPLOYMENT = "capi-controller-manager"
CAPZ_CONTROLLER_DEPLOYMENT = "capz-controller-manager"
ASO_CONTROLLER_DEPLOYMENT = "azureserviceoperator-controller-manager"

# Composite name limits imposed by the managed control plane
MAX_DOMAIN_PREFIX_LENGTH = 15
MAX_EXTERNAL_AUTH_ID_LENGTH = 15
EXTERNAL_AUTH_SUFFIX = "-ea"
MAX_CLUSTER_NAME_PREFIX_LENGTH = MAX_EXTERNAL_AUTH_ID_LENGTH - len(EXTERNAL_AUTH_SUFFIX)

# Input validation patterns
RFC1123_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"
MAX_RFC1123_NAME_LENGTH = 253
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"

_RFC1123_ALLOWED = frozenset(string.ascii_lowercase + string.digits + "-")
_ALPHANUMERIC = frozenset(string.ascii_lowercase + string.digits)

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def default_repo_dir() -> Path:
    """Stable working directory shared by every phase of a run."""
    return Path(tempfile.gettempdir()) / REPO_DIR_NAME


def parse_duration(value: str) -> float:
    """Parse a duration string such as ``90s``, ``10m`` or ``1h30m``.

    A bare integer is read as seconds.

    Args:
        value: Duration text.

    Returns:
        Duration in seconds.

    Raises:
        ValueError: If the text is not a valid, non-negative duration.
    """
    text = value.strip()
    if not text:
        raise ValueError("empty duration")
    if text.isdigit():
        return float(text)

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNIT_SECONDS[match.group(2)]
        position = match.end()

    if position == 0 or position != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


def format_duration(seconds: float) -> str:
    """Render seconds as a compact duration string (``1h30m``, ``45s``)."""
    hours, remainder = divmod(int(seconds), 3600)
    minutes, secs = divmod(remainder, 60)
    parts: list[str] = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return "".join(parts)


def rfc1123_issues(value: str) -> list[str]:
    """List every way a name violates RFC 1123."""
    if not value:
        return ["value is empty"]

    issues: list[str] = []
    if any(c in string.ascii_uppercase for c in value):
        issues.append("contains uppercase letters")

    invalid = sorted(
        {c for c in value if c not in _RFC1123_ALLOWED and c not in string.ascii_uppercase}
    )
    if invalid:
        issues.append("contains invalid characters: " + " ".join(repr(c) for c in invalid))

    if value[0].lower() not in _ALPHANUMERIC:
        issues.append("must start with a lowercase letter or digit")
    if value[-1].lower() not in _ALPHANUMERIC:
        issues.append("must end with a lowercase letter or digit")

    if len(value) > MAX_RFC1123_NAME_LENGTH:
        issues.append(f"is {len(value)} characters (maximum {MAX_RFC1123_NAME_LENGTH})")

    return issues


def suggest_rfc1123_name(value: str) -> str:
    """Derive the closest RFC 1123 compliant name, or an empty string."""
    candidate = "".join(c if c in _RFC1123_ALLOWED else "-" for c in value.lower())
    candidate = re.sub(r"-{2,}", "-", candidate).strip("-")
    return candidate[:MAX_RFC1123_NAME_LENGTH].rstrip("-")


def validate_rfc1123_name(variable: str, value: str) -> str | None:
    """Validate a name-shaped value.

    Returns:
        An error message naming the variable, the issues and a suggested fix,
        or None if the value is valid.
    """
    if re.match(RFC1123_NAME_PATTERN, value) and len(value) <= MAX_RFC1123_NAME_LENGTH:
        return None

    message = f"{variable} '{value}' is not a valid RFC 1123 name: " + "; ".join(
        rfc1123_issues(value)
    )
    suggestion = suggest_rfc1123_name(value)
    if suggestion and suggestion != value:
        message += f" (to fix: export {variable}={suggestion})"
    return message


def validate_domain_prefix(user: str, environment: str) -> str | None:
    """Check the ``user-environment`` domain prefix length."""
    prefix = f"{user}-{environment}"
    if len(prefix) <= MAX_DOMAIN_PREFIX_LENGTH:
        return None
    return (
        f"domain prefix '{prefix}' (CAPZ_USER '{user}' + '-' + DEPLOYMENT_ENV "
        f"'{environment}') is {len(prefix)} characters (maximum {MAX_DOMAIN_PREFIX_LENGTH}); "
        f"shorten CAPZ_USER or DEPLOYMENT_ENV"
    )


def validate_external_auth_id(cluster_name_prefix: str) -> str | None:
    """Check the external auth ID (``prefix-ea``) length."""
    external_auth_id = f"{cluster_name_prefix}{EXTERNAL_AUTH_SUFFIX}"
    if len(external_auth_id) <= MAX_EXTERNAL_AUTH_ID_LENGTH:
        return None
    return (
        f"external auth ID '{external_auth_id}' (CS_CLUSTER_NAME '{cluster_name_prefix}' + "
        f"'{EXTERNAL_AUTH_SUFFIX}') is {len(external_auth_id)} characters "
        f"(maximum {MAX_EXTERNAL_AUTH_ID_LENGTH}); CS_CLUSTER_NAME must be at most "
        f"{MAX_CLUSTER_NAME_PREFIX_LENGTH} characters"
    )


@dataclass(frozen=True)
class DesiredConfig:
    """Resolved configuration for one process.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError listing every violation, so nothing downstream
    ever reaches a remote call with a bad name.
    """

    namespace_prefix: str
    resolved_namespace: str
    cluster_name_prefix: str
    user: str
    environment: str
    region: str = DEFAULT_REGION

    # Timing
    deployment_timeout_seconds: float = DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS
    controller_timeout_seconds: float = DEFAULT_CONTROLLER_TIMEOUT_SECONDS

    # Clusters
    management_cluster_name: str = DEFAULT_MANAGEMENT_CLUSTER_NAME
    workload_cluster_name: str = DEFAULT_WORKLOAD_CLUSTER_NAME
    use_kubeconfig: str | None = None
    controller_namespace: str = DEFAULT_CONTROLLER_NAMESPACE
    capi_namespace: str = DEFAULT_CAPI_NAMESPACE
    mce_auto_enable: bool = False
    mce_enablement_timeout_seconds: float = DEFAULT_MCE_ENABLEMENT_TIMEOUT_SECONDS
    subscription_id: str | None = None

    # Paths
    repo_dir: Path = field(default_factory=default_repo_dir)
    gen_script_path: str = DEFAULT_GEN_SCRIPT_PATH
    state_file: Path | None = None

    # Provenance of resolution
    namespace_source: NamespaceSource = NamespaceSource.GENERATED
    resolution_warnings: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Validate names and composite lengths, reporting every violation."""
        errors: list[str] = []

        named_fields = (
            ("WORKLOAD_CLUSTER_NAMESPACE", self.resolved_namespace),
            ("WORKLOAD_CLUSTER_NAMESPACE_PREFIX", self.namespace_prefix),
            ("CS_CLUSTER_NAME", self.cluster_name_prefix),
            ("CAPZ_USER", self.user),
            ("DEPLOYMENT_ENV", self.environment),
            ("MANAGEMENT_CLUSTER_NAME", self.management_cluster_name),
            ("WORKLOAD_CLUSTER_NAME", self.workload_cluster_name),
        )
        for variable, value in named_fields:
            error = validate_rfc1123_name(variable, value)
            if error:
                errors.append(error)

        for error in (
            validate_domain_prefix(self.user, self.environment),
            validate_external_auth_id(self.cluster_name_prefix),
        ):
            if error:
                errors.append(error)

        if not self.region:
            errors.append("REGION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.region):
            errors.append(f"REGION must be a valid Azure region: {self.region}")

        if self.deployment_timeout_seconds <= 0:
            errors.append("DEPLOYMENT_TIMEOUT must be positive")
        if self.controller_timeout_seconds <= 0:
            errors.append("ASO_CONTROLLER_TIMEOUT must be positive")
        if self.mce_enablement_timeout_seconds <= 0:
            errors.append("MCE_ENABLEMENT_TIMEOUT must be positive")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def domain_prefix(self) -> str:
        return f"{self.user}-{self.environment}"

    @property
    def external_auth_id(self) -> str:
        return f"{self.cluster_name_prefix}{EXTERNAL_AUTH_SUFFIX}"

    @property
    def resource_group(self) -> str:
        return f"{self.cluster_name_prefix}{RESOURCE_GROUP_SUFFIX}"

    @property
    def output_dir(self) -> Path:
        """Directory the generation script writes artifacts into."""
        return self.repo_dir / f"{self.workload_cluster_name}-{self.environment}"

    @property
    def state_path(self) -> Path:
        return self.state_file or self.repo_dir / STATE_FILE_NAME

    @property
    def kube_context(self) -> str | None:
        """kubectl context of the management cluster.

        None when an external kubeconfig is used, meaning its current context.
        """
        if self.use_kubeconfig:
            return None
        return f"kind-{self.management_cluster_name}"

    @property
    def controller_deployments(self) -> tuple[tuple[str, str], ...]:
        """(namespace, deployment) pairs of every controller, CAPI first."""
        return (
            (self.capi_namespace, CAPI_CONTROLLER_DEPLOYMENT),
            (self.controller_namespace, CAPZ_CONTROLLER_DEPLOYMENT),
            (self.controller_namespace, ASO_CONTROLLER_DEPLOYMENT),
        )

    def summary(self) -> dict[str, object]:
        """Resolved and derived values, for display."""
        return {
            "namespace": self.resolved_namespace,
            "namespace_source": self.namespace_source.value,
            "namespace_prefix": self.namespace_prefix,
            "cluster_name_prefix": self.cluster_name_prefix,
            "domain_prefix": self.domain_prefix,
            "external_auth_id": self.external_auth_id,
            "resource_group": self.resource_group,
            "user": self.user,
            "environment": self.environment,
            "region": self.region,
            "management_cluster_name": self.management_cluster_name,
            "workload_cluster_name": self.workload_cluster_name,
            "controller_namespace": self.controller_namespace,
            "capi_namespace": self.capi_namespace,
            "mce_auto_enable": self.mce_auto_enable,
            "deployment_timeout": format_duration(self.deployment_timeout_seconds),
            "controller_timeout": format_duration(self.controller_timeout_seconds),
            "mce_enablement_timeout": format_duration(self.mce_enablement_timeout_seconds),
            "repo_dir": str(self.repo_dir),
            "output_dir": str(self.output_dir),
            "state_file": str(self.state_path),
            "warnings": list(self.resolution_warnings),
        }


def generate_namespace(prefix: str, now: Callable[[], datetime] | None = None) -> str:
    """Build ``prefix-YYYYMMDD-HHMMSS`` from the current UTC time."""
    moment = now() if now is not None else datetime.now(UTC)
    return f"{prefix}-{moment.strftime(NAMESPACE_TIMESTAMP_FORMAT)}"


def resolve_namespace(
    override: str | None,
    prefix: str,
    state_store: DeploymentStateStore | None,
    now: Callable[[], datetime] | None = None,
) -> tuple[str, NamespaceSource]:
    """Pick the workload namespace: override, then persisted state, then generated.

    An unreadable state file is logged and treated as no prior state.
    """
    if override:
        return override, NamespaceSource.OVERRIDE

    if state_store is not None:
        try:
            state = state_store.read()
        except StateFileError as e:
            logger.warning(
                "Ignoring unreadable deployment state",
                extra={"path": str(state_store.path), "error": str(e)},
            )
            state = None
        if state is not None:
            logger.info(
                "Using namespace from deployment state",
                extra={"namespace": state.resolved_namespace, "path": str(state_store.path)},
            )
            return state.resolved_namespace, NamespaceSource.STATE

    return generate_namespace(prefix, now), NamespaceSource.GENERATED


def resolve_desired_config(
    env: Mapping[str, str] | None = None,
    *,
    state_store: DeploymentStateStore | None = None,
    now: Callable[[], datetime] | None = None,
) -> DesiredConfig:
    """Resolve configuration from environment variables.

    Environment Variables:
        WORKLOAD_CLUSTER_NAMESPACE: Explicit namespace, used verbatim
        WORKLOAD_CLUSTER_NAMESPACE_PREFIX: Prefix for generated namespaces (default: capz-test)
        CAPZ_USER: User identifier (default: rcapx)
        DEPLOYMENT_ENV: Environment identifier (default: stage)
        CS_CLUSTER_NAME: Cluster name prefix (default: ${CAPZ_USER}-${DEPLOYMENT_ENV})
        REGION: Azure region (default: uksouth)
        DEPLOYMENT_TIMEOUT: Cluster provisioning timeout (default: 60m)
        ASO_CONTROLLER_TIMEOUT: Controller readiness timeout (default: 10m)
        MANAGEMENT_CLUSTER_NAME: Management cluster name (default: capz-tests-stage)
        WORKLOAD_CLUSTER_NAME: Workload cluster name (default: capz-tests-cluster)
        ARO_REPO_DIR: Working directory (default: $TMPDIR/cluster-api-installer-aro)
        GEN_SCRIPT_PATH: Generation script relative to ARO_REPO_DIR
        DEPLOYMENT_STATE_FILE: State file (default: $ARO_REPO_DIR/.deployment-state.json)
        USE_KUBECONFIG: External kubeconfig instead of the local kind cluster
        USE_K8S: Controllers live in multicluster-engine (default: true with USE_KUBECONFIG)
        CAPZ_NAMESPACE: Controller namespace override
        CAPI_NAMESPACE: CAPI controller namespace override
        MCE_AUTO_ENABLE: Enable MCE CAPI/CAPZ components (default: true with USE_KUBECONFIG)
        MCE_ENABLEMENT_TIMEOUT: Controller wait after MCE enablement (default: 15m)
        AZURE_SUBSCRIPTION_ID: Subscription for resource group checks

    Args:
        env: Environment mapping (default: os.environ).
        state_store: Store consulted for a previously resolved namespace.
            Defaults to the store at the configured state file path.
        now: Clock for namespace generation (default: current UTC time).

    Returns:
        Validated DesiredConfig.

    Raises:
        ConfigurationError: If any value fails validation.
    """
    source: Mapping[str, str] = os.environ if env is None else env
    warnings: list[str] = []

    def get(key: str, default: str) -> str:
        return source.get(key, "").strip() or default

    def get_bool(key: str, default: bool) -> bool:
        value = source.get(key, "").strip().lower()
        if not value:
            return default
        return value in ("true", "1", "yes")

    def get_duration(key: str, default: float) -> float:
        raw = source.get(key, "").strip()
        if not raw:
            return default
        try:
            return parse_duration(raw)
        except ValueError:
            logger.warning(
                "Invalid duration, using default",
                extra={"variable": key, "value": raw, "default": format_duration(default)},
            )
            warnings.append(
                f"{key}={raw!r} is not a valid duration; using default {format_duration(default)}"
            )
            return default

    user = get("CAPZ_USER", DEFAULT_CAPZ_USER)
    environment = get("DEPLOYMENT_ENV", DEFAULT_DEPLOYMENT_ENV)
    repo_dir = Path(get("ARO_REPO_DIR", str(default_repo_dir())))
    state_file = Path(get("DEPLOYMENT_STATE_FILE", str(repo_dir / STATE_FILE_NAME)))
    namespace_prefix = get("WORKLOAD_CLUSTER_NAMESPACE_PREFIX", DEFAULT_NAMESPACE_PREFIX)

    if state_store is None:
        state_store = DeploymentStateStore(state_file)
    namespace, namespace_source = resolve_namespace(
        source.get("WORKLOAD_CLUSTER_NAMESPACE", "").strip() or None,
        namespace_prefix,
        state_store,
        now,
    )

    use_kubeconfig = source.get("USE_KUBECONFIG", "").strip() or None
    use_k8s = get_bool("USE_K8S", use_kubeconfig is not None)
    controller_default = MCE_CONTROLLER_NAMESPACE if use_k8s else DEFAULT_CONTROLLER_NAMESPACE
    capi_default = MCE_CONTROLLER_NAMESPACE if use_k8s else DEFAULT_CAPI_NAMESPACE

    return DesiredConfig(
        namespace_prefix=namespace_prefix,
        resolved_namespace=namespace,
        cluster_name_prefix=get("CS_CLUSTER_NAME", f"{user}-{environment}"),
        user=user,
        environment=environment,
        region=get("REGION", DEFAULT_REGION),
        deployment_timeout_seconds=get_duration(
            "DEPLOYMENT_TIMEOUT", DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS
        ),
        controller_timeout_seconds=get_duration(
            "ASO_CONTROLLER_TIMEOUT", DEFAULT_CONTROLLER_TIMEOUT_SECONDS
        ),
        management_cluster_name=get("MANAGEMENT_CLUSTER_NAME", DEFAULT_MANAGEMENT_CLUSTER_NAME),
        workload_cluster_name=get("WORKLOAD_CLUSTER_NAME", DEFAULT_WORKLOAD_CLUSTER_NAME),
        use_kubeconfig=use_kubeconfig,
        controller_namespace=get("CAPZ_NAMESPACE", controller_default),
        capi_namespace=get("CAPI_NAMESPACE", capi_default),
        mce_auto_enable=get_bool("MCE_AUTO_ENABLE", use_kubeconfig is not None),
        mce_enablement_timeout_seconds=get_duration(
            "MCE_ENABLEMENT_TIMEOUT", DEFAULT_MCE_ENABLEMENT_TIMEOUT_SECONDS
        ),
        subscription_id=source.get("AZURE_SUBSCRIPTION_ID", "").strip() or None,
        repo_dir=repo_dir,
        gen_script_path=get("GEN_SCRIPT_PATH", DEFAULT_GEN_SCRIPT_PATH),
        state_file=state_file,
        namespace_source=namespace_source,
        resolution_warnings=tuple(warnings),
    )


def check_timeout_bounds(config: DesiredConfig) -> list[str]:
    """Report timeouts outside their sane bounds.

    These do not fail resolution; the dependency check phase reports them.
    """
    problems: list[str] = []
    bounds = (
        (
            "DEPLOYMENT_TIMEOUT",
            config.deployment_timeout_seconds,
            MIN_DEPLOYMENT_TIMEOUT_SECONDS,
            MAX_DEPLOYMENT_TIMEOUT_SECONDS,
        ),
        (
            "ASO_CONTROLLER_TIMEOUT",
            config.controller_timeout_seconds,
            MIN_CONTROLLER_TIMEOUT_SECONDS,
            MAX_CONTROLLER_TIMEOUT_SECONDS,
        ),
    )
    for variable, value, minimum, maximum in bounds:
        if value < minimum:
            problems.append(
                f"{variable} '{format_duration(value)}' is too short "
                f"(minimum: {format_duration(minimum)}); to fix: export "
                f"{variable}={format_duration(minimum)}"
            )
        elif value > maximum:
            problems.append(
                f"{variable} '{format_duration(value)}' is too long "
                f"(maximum: {format_duration(maximum)}); to fix: export "
                f"{variable}={format_duration(maximum)}"
            )
    return problems
