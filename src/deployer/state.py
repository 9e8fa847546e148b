"""Deployment state persisted between phase invocations.

Each phase runs as its own process. The state file is how later phases
learn the identifiers an earlier phase generated, most importantly the
workload namespace. One active run per state file is assumed; there is no
file locking, so concurrent runs against the same path are unsupported.
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import suppress
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

from pydantic import AliasChoices, BaseModel, Field, ValidationError, model_validator

from .errors import DeployerError

if TYPE_CHECKING:
    from .config import DesiredConfig

logger = logging.getLogger(__name__)

STATE_FILE_MODE = 0o600
MAX_STATE_FILE_SIZE_BYTES = 64 * 1024
RESOURCE_GROUP_SUFFIX = "-resgroup"


class StateFileError(DeployerError):
    """Raised when the state file exists but cannot be read or validated."""

    pass


class PersistedState(BaseModel):
    """Identifiers a later phase needs to agree with the phase that wrote them."""

    model_config = {"extra": "ignore", "frozen": True}

    resolved_namespace: Annotated[
        str,
        Field(
            min_length=1,
            validation_alias=AliasChoices("resolved_namespace", "workload_cluster_namespace"),
        ),
    ]
    namespace_prefix: str | None = None
    cluster_name_prefix: str | None = None
    resource_group: str | None = None
    management_cluster_name: str | None = None
    workload_cluster_name: str | None = None
    region: str | None = None
    user: str | None = None
    environment: str | None = None

    @model_validator(mode="before")
    @classmethod
    def derive_resource_group(cls, data: object) -> object:
        """Fill in the resource group of records that only carry the cluster prefix."""
        if isinstance(data, dict) and not data.get("resource_group") and data.get("cluster_name_prefix"):
            return {**data, "resource_group": f"{data['cluster_name_prefix']}{RESOURCE_GROUP_SUFFIX}"}
        return data

    @classmethod
    def from_config(cls, config: DesiredConfig) -> PersistedState:
        return cls(
            resolved_namespace=config.resolved_namespace,
            namespace_prefix=config.namespace_prefix,
            cluster_name_prefix=config.cluster_name_prefix,
            resource_group=config.resource_group,
            management_cluster_name=config.management_cluster_name,
            workload_cluster_name=config.workload_cluster_name,
            region=config.region,
            user=config.user,
            environment=config.environment,
        )


class DeploymentStateStore:
    """Reads and writes the state file at a fixed path."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def write(self, config: DesiredConfig) -> PersistedState:
        """Persist the identifiers of a resolved configuration.

        The file is replaced atomically and is readable by the owner only.
        Writing the same configuration again produces an identical file.

        Returns:
            The state that was written.
        """
        state = PersistedState.from_config(config)
        payload = json.dumps(state.model_dump(mode="json"), indent=2, sort_keys=True) + "\n"

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")

        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, STATE_FILE_MODE)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
        except Exception:
            with suppress(FileNotFoundError):
                os.unlink(tmp_path)
            raise

        tmp_path.replace(self.path)
        os.chmod(self.path, STATE_FILE_MODE)

        logger.info(
            "Deployment state written",
            extra={"path": str(self.path), "namespace": state.resolved_namespace},
        )
        return state

    def read(self) -> PersistedState | None:
        """Load the persisted state.

        Returns:
            The state, or None when no previous phase has written one.

        Raises:
            StateFileError: If the file is unreadable, malformed or incomplete.
        """
        if not self.path.exists():
            return None

        try:
            size = self.path.stat().st_size
            if size > MAX_STATE_FILE_SIZE_BYTES:
                raise StateFileError(
                    f"State file {self.path} is {size} bytes "
                    f"(maximum {MAX_STATE_FILE_SIZE_BYTES})"
                )
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateFileError(f"Cannot read state file {self.path}: {e}") from e
        except UnicodeDecodeError as e:
            raise StateFileError(f"State file {self.path} is not valid UTF-8: {e}") from e

        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise StateFileError(f"Failed to parse state file {self.path}: {e}") from e

        if not isinstance(payload, dict):
            raise StateFileError(f"State file {self.path} must contain a JSON object")

        try:
            return PersistedState.model_validate(payload)
        except ValidationError as e:
            raise StateFileError(f"Invalid state file {self.path}: {e}") from e

    def delete(self) -> bool:
        """Remove the state file.

        Returns:
            True if a file was removed, False if it was already absent.
        """
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Deployment state deleted", extra={"path": str(self.path)})
        return True
