"""Drift detection for generated cluster manifests.

Generated artifacts embed the cluster name prefix and the workload
namespace they were produced for. Before reusing them, the embedded values
are compared with the current configuration. Regeneration is cheap, so any
doubt (missing file, unreadable file, mismatch) results in Regenerate.

Only the fields needed for the comparison are extracted. The manifest
schema belongs to the generation script, so documents are not parsed into
models.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from .errors import DeployerError

if TYPE_CHECKING:
    from .config import DesiredConfig

logger = logging.getLogger(__name__)

# Files produced by the generation script, in apply order
CREDENTIALS_ARTIFACT = "credentials.yaml"
INFRASTRUCTURE_ARTIFACT = "is.yaml"
CLUSTER_ARTIFACT = "aro.yaml"
EXPECTED_ARTIFACTS = (CREDENTIALS_ARTIFACT, INFRASTRUCTURE_ARTIFACT, CLUSTER_ARTIFACT)

CLUSTER_KIND = "Cluster"
CLUSTER_API_GROUP_PREFIX = "cluster.x-k8s.io/"

MAX_ARTIFACT_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB max generated manifest

_DOCUMENT_SEPARATOR = re.compile(r"(?m)^---\s*$")
_NAMESPACE_LINE = re.compile(r"(?m)^\s*namespace:\s*(\S+)")


class ArtifactReadError(DeployerError):
    """Raised when a field cannot be extracted from a generated artifact."""

    pass


class DriftAction(str, Enum):
    """What to do with previously generated artifacts."""

    REUSE = "reuse"
    REGENERATE = "regenerate"


@dataclass(frozen=True)
class DriftDecision:
    """Outcome of comparing artifacts with the desired configuration."""

    action: DriftAction
    reason: str

    @property
    def reuse(self) -> bool:
        return self.action == DriftAction.REUSE

    @classmethod
    def regenerate(cls, reason: str) -> DriftDecision:
        return cls(DriftAction.REGENERATE, reason)


def _read_artifact(path: Path) -> str:
    try:
        size = path.stat().st_size
        if size > MAX_ARTIFACT_FILE_SIZE_BYTES:
            raise ArtifactReadError(
                f"{path} is {size} bytes (maximum {MAX_ARTIFACT_FILE_SIZE_BYTES})"
            )
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise ArtifactReadError(f"Cannot read {path}: {e}") from e


def _documents(text: str) -> list[dict[str, Any]]:
    """Parse each document of a multi-document stream, skipping unparseable ones."""
    documents: list[dict[str, Any]] = []
    for chunk in _DOCUMENT_SEPARATOR.split(text):
        if not chunk.strip():
            continue
        try:
            content = yaml.safe_load(chunk)
        except yaml.YAMLError:
            continue
        if isinstance(content, dict):
            documents.append(content)
    return documents


def _find_cluster_document(documents: list[dict[str, Any]]) -> dict[str, Any] | None:
    for document in documents:
        if document.get("kind") != CLUSTER_KIND:
            continue
        api_version = document.get("apiVersion")
        if isinstance(api_version, str) and api_version.startswith(CLUSTER_API_GROUP_PREFIX):
            return document
    return None


def extract_cluster_name(path: Path) -> str:
    """Return ``metadata.name`` of the Cluster API Cluster document.

    Raises:
        ArtifactReadError: If the file is unreadable or has no Cluster document.
    """
    document = _find_cluster_document(_documents(_read_artifact(path)))
    if document is None:
        raise ArtifactReadError(f"No {CLUSTER_KIND} resource found in {path}")

    metadata = document.get("metadata")
    name = metadata.get("name") if isinstance(metadata, dict) else None
    if not isinstance(name, str) or not name:
        raise ArtifactReadError(f"{CLUSTER_KIND} resource in {path} has no metadata.name")
    return name


def extract_namespace(path: Path) -> str:
    """Return the namespace the artifact targets.

    The Cluster document's ``metadata.namespace`` wins; otherwise the first
    ``namespace:`` entry in the file.

    Raises:
        ArtifactReadError: If the file is unreadable or names no namespace.
    """
    text = _read_artifact(path)

    document = _find_cluster_document(_documents(text))
    if document is not None:
        metadata = document.get("metadata")
        namespace = metadata.get("namespace") if isinstance(metadata, dict) else None
        if isinstance(namespace, str) and namespace:
            return namespace

    match = _NAMESPACE_LINE.search(text)
    if match is None:
        raise ArtifactReadError(f"No namespace found in {path}")
    return match.group(1).strip("'\"")


def check_drift(artifact_path: Path, desired: DesiredConfig) -> DriftDecision:
    """Decide whether a generated artifact still matches the configuration.

    Args:
        artifact_path: Generated manifest containing the Cluster resource.
        desired: Current configuration.

    Returns:
        REUSE only when both the embedded cluster name prefix and namespace
        equal the desired values; REGENERATE with a reason otherwise.
    """
    try:
        existing_prefix = extract_cluster_name(artifact_path)
        existing_namespace = extract_namespace(artifact_path)
    except ArtifactReadError as e:
        return DriftDecision.regenerate(f"cannot read existing artifact: {e}")

    mismatches: list[str] = []
    if existing_prefix != desired.cluster_name_prefix:
        mismatches.append(
            f"cluster name prefix '{existing_prefix}' != '{desired.cluster_name_prefix}'"
        )
    if existing_namespace != desired.resolved_namespace:
        mismatches.append(
            f"namespace '{existing_namespace}' != '{desired.resolved_namespace}'"
        )

    if mismatches:
        return DriftDecision.regenerate("configuration changed: " + "; ".join(mismatches))

    return DriftDecision(
        DriftAction.REUSE,
        f"{artifact_path.name} matches prefix '{existing_prefix}' "
        f"and namespace '{existing_namespace}'",
    )


def check_output_dir(output_dir: Path, desired: DesiredConfig) -> DriftDecision:
    """Drift decision for a whole generation output directory."""
    missing = [name for name in EXPECTED_ARTIFACTS if not (output_dir / name).is_file()]
    if missing:
        return DriftDecision.regenerate(f"missing artifacts in {output_dir}: {', '.join(missing)}")

    decision = check_drift(output_dir / CLUSTER_ARTIFACT, desired)
    logger.info(
        "Drift check completed",
        extra={"output_dir": str(output_dir), "action": decision.action.value, "reason": decision.reason},
    )
    return decision


def validate_yaml_file(path: Path) -> None:
    """Check that a file exists, is non-empty and holds parseable YAML.

    Raises:
        ArtifactReadError: Describing the first problem found.
    """
    text = _read_artifact(path)
    if not text.strip():
        raise ArtifactReadError(f"{path} is empty")
    try:
        documents = [doc for doc in yaml.safe_load_all(text) if doc is not None]
    except yaml.YAMLError as e:
        raise ArtifactReadError(f"Invalid YAML syntax in {path}: {e}") from e
    if not documents:
        raise ArtifactReadError(f"{path} contains no data")


def provisioned_cluster_name(desired: DesiredConfig) -> str:
    """Name of the Cluster resource the generated manifests create.

    Falls back to the configured workload cluster name when the manifest is
    missing or has no Cluster resource.
    """
    path = desired.output_dir / CLUSTER_ARTIFACT
    try:
        return extract_cluster_name(path)
    except ArtifactReadError as e:
        logger.debug(
            "Using configured workload cluster name",
            extra={"path": str(path), "error": str(e)},
        )
        return desired.workload_cluster_name
