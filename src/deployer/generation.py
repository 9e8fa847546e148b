"""Manifest generation phase.

Reuses existing artifacts when they still match the configuration and
otherwise runs the generation script. Once valid artifacts exist, the
resolved configuration is persisted so later phases use the same
namespace.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .cloud import diagnose_azure_error
from .config import DesiredConfig
from .drift import (
    EXPECTED_ARTIFACTS,
    ArtifactReadError,
    DriftDecision,
    check_output_dir,
    validate_yaml_file,
)
from .errors import GenerationError
from .runner import CommandResult, run_streaming
from .state import DeploymentStateStore, PersistedState

logger = logging.getLogger(__name__)

GENERATION_TIMEOUT_SECONDS = 20 * 60


@dataclass(frozen=True)
class GenerationResult:
    """Artifacts ready for apply, and how they were obtained."""

    decision: DriftDecision
    regenerated: bool
    output_dir: Path
    artifacts: tuple[Path, ...]
    state: PersistedState


class ManifestGenerator:
    """Produces the cluster manifests for one configuration."""

    def __init__(
        self,
        config: DesiredConfig,
        store: DeploymentStateStore | None = None,
        runner: Callable[..., CommandResult] = run_streaming,
    ) -> None:
        self._config = config
        self._store = store or DeploymentStateStore(config.state_path)
        self._runner = runner

    @property
    def script_path(self) -> Path:
        return self._config.repo_dir / self._config.gen_script_path

    @property
    def artifact_paths(self) -> tuple[Path, ...]:
        return tuple(self._config.output_dir / name for name in EXPECTED_ARTIFACTS)

    def script_env(self) -> dict[str, str]:
        """Variables the generation script reads."""
        config = self._config
        return {
            "DEPLOYMENT_ENV": config.environment,
            "USER": config.user,
            "WORKLOAD_CLUSTER_NAME": config.workload_cluster_name,
            "WORKLOAD_CLUSTER_NAMESPACE": config.resolved_namespace,
            "CS_CLUSTER_NAME": config.cluster_name_prefix,
            "REGION": config.region,
        }

    def generate(self) -> None:
        """Run the generation script into the output directory.

        Raises:
            GenerationError: If the script is missing or fails.
        """
        if not self.script_path.is_file():
            raise GenerationError(f"Generation script not found: {self.script_path}")

        # Stale files must not satisfy validation after a failed run
        for path in self.artifact_paths:
            path.unlink(missing_ok=True)

        logger.info(
            "Running generation script",
            extra={
                "script": str(self.script_path),
                "output_dir": str(self._config.output_dir),
                "namespace": self._config.resolved_namespace,
            },
        )
        result = self._runner(
            ["bash", str(self.script_path), self._config.output_dir.name],
            cwd=self._config.repo_dir,
            env=self.script_env(),
            timeout=GENERATION_TIMEOUT_SECONDS,
        )
        if not result.success:
            message = f"Generation script failed ({result.error})"
            info = diagnose_azure_error(result.output)
            if info is not None:
                message += f"\n{info.format()}"
            raise GenerationError(message)

    def validate(self) -> None:
        """Check every expected artifact exists and parses.

        Raises:
            GenerationError: Listing every invalid artifact.
        """
        problems: list[str] = []
        for path in self.artifact_paths:
            try:
                validate_yaml_file(path)
            except ArtifactReadError as e:
                problems.append(str(e))
        if problems:
            raise GenerationError("Generated artifacts are invalid:\n  - " + "\n  - ".join(problems))

    def prepare(self, force: bool = False) -> GenerationResult:
        """Make artifacts for the current configuration available and persist state.

        Args:
            force: Regenerate even when existing artifacts match.

        Raises:
            GenerationError: If generation fails or its output does not match
                the configuration.
        """
        output_dir = self._config.output_dir
        if force:
            decision = DriftDecision.regenerate("regeneration forced")
        else:
            decision = check_output_dir(output_dir, self._config)

        regenerated = not decision.reuse
        if regenerated:
            logger.info(
                "Regenerating manifests",
                extra={"output_dir": str(output_dir), "reason": decision.reason},
            )
            self.generate()
            self.validate()
            after = check_output_dir(output_dir, self._config)
            if not after.reuse:
                raise GenerationError(
                    f"Generated manifests do not match the configuration: {after.reason}"
                )
        else:
            logger.info(
                "Reusing existing manifests",
                extra={"output_dir": str(output_dir), "reason": decision.reason},
            )
            self.validate()

        state = self._store.write(self._config)
        return GenerationResult(
            decision=decision,
            regenerated=regenerated,
            output_dir=output_dir,
            artifacts=self.artifact_paths,
            state=state,
        )
