"""Azure resource group lookups and Azure CLI error diagnosis.

Two lookups report whether the cluster's resource group still exists: one
shells out to the Azure CLI, the other uses the ARM SDK. Deletion polling
uses whichever is available to show when the cloud side is still tearing
down.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.mgmt.resource import ResourceManagementClient

from .errors import CloudLookupError
from .runner import CommandResult, run_command

if TYPE_CHECKING:
    from .config import DesiredConfig

logger = logging.getLogger(__name__)

AZ_TIMEOUT_SECONDS = 60
RESOURCE_GROUP_NOT_FOUND_CODE = "resourcegroupnotfound"


@dataclass(frozen=True)
class ResourceGroupStatus:
    """Existence and provisioning state of a resource group."""

    name: str
    exists: bool
    provisioning_state: str | None = None

    def describe(self) -> str:
        if not self.exists:
            return f"resource group {self.name}: absent"
        return f"resource group {self.name}: {self.provisioning_state or 'exists'}"


def is_resource_group_not_found(output: str, name: str) -> bool:
    """True only when the output says this resource group does not exist.

    Subscription errors and a missing ``az`` binary also mention "not found";
    those must not read as an absent resource group.
    """
    lowered = output.lower()
    if RESOURCE_GROUP_NOT_FOUND_CODE in lowered:
        return True
    return f"resource group '{name.lower()}' could not be found" in lowered


class ResourceGroupLookup(Protocol):
    def status(self, name: str) -> ResourceGroupStatus: ...


class AzureCliResourceGroups:
    """Resource group lookup backed by ``az group show``."""

    def __init__(self, runner: Callable[..., CommandResult] = run_command) -> None:
        self._runner = runner

    def status(self, name: str) -> ResourceGroupStatus:
        """Query a resource group.

        Raises:
            CloudLookupError: If the CLI fails for a reason other than "not found".
        """
        result = self._runner(
            [
                "az",
                "group",
                "show",
                "--name",
                name,
                "--query",
                "properties.provisioningState",
                "-o",
                "tsv",
            ],
            timeout=AZ_TIMEOUT_SECONDS,
        )
        if result.success:
            return ResourceGroupStatus(name, True, result.output.strip() or None)

        if is_resource_group_not_found(f"{result.output}\n{result.error or ''}", name):
            return ResourceGroupStatus(name, False)

        raise CloudLookupError(
            f"Cannot query resource group {name}: {result.output.strip() or result.error}"
        )


class AzureSdkResourceGroups:
    """Resource group lookup backed by the ARM SDK."""

    def __init__(
        self,
        subscription_id: str,
        credential: TokenCredential | None = None,
        client: ResourceManagementClient | None = None,
    ) -> None:
        self._client = client or ResourceManagementClient(
            credential=credential or DefaultAzureCredential(),
            subscription_id=subscription_id,
        )

    def status(self, name: str) -> ResourceGroupStatus:
        """Query a resource group.

        Raises:
            CloudLookupError: If ARM cannot be queried.
        """
        try:
            group = self._client.resource_groups.get(name)
        except ResourceNotFoundError:
            return ResourceGroupStatus(name, False)
        except AzureError as e:
            raise CloudLookupError(f"Cannot query resource group {name}: {e}") from e

        properties = getattr(group, "properties", None)
        state = getattr(properties, "provisioning_state", None) if properties else None
        return ResourceGroupStatus(name, True, state)


def resource_group_lookup(config: DesiredConfig) -> ResourceGroupLookup | None:
    """Pick a lookup: the SDK when a subscription is configured, else the CLI.

    Returns None when neither is usable.
    """
    if config.subscription_id:
        return AzureSdkResourceGroups(config.subscription_id)
    if shutil.which("az"):
        return AzureCliResourceGroups()
    logger.warning("Azure CLI not found; resource group status will not be reported")
    return None


@dataclass(frozen=True)
class AzureErrorInfo:
    """A recognised Azure failure with remediation steps."""

    error_type: str
    message: str
    remediation: list[str] = field(default_factory=list)

    def format(self) -> str:
        lines = [f"{self.message} ({self.error_type})", "  To fix this:"]
        lines += [f"    {step}" for step in self.remediation]
        return "\n".join(lines)


def _contains_any(text: str, *needles: str) -> bool:
    return any(needle in text for needle in needles)


def diagnose_azure_error(output: str) -> AzureErrorInfo | None:
    """Match Azure CLI/ARM output against known failure categories."""
    text = output.lower()

    if "insufficient privileges" in text:
        return AzureErrorInfo(
            "insufficient_privileges",
            "Azure operation failed due to insufficient privileges",
            [
                "Verify you hold Application Administrator or Cloud Application Administrator",
                "Run: az ad signed-in-user show --query displayName -o tsv",
                "Ask your Azure AD administrator for elevated permissions",
            ],
        )
    if _contains_any(text, "authorizationfailed", "authorization failed", "does not have authorization"):
        return AzureErrorInfo(
            "authorization_failed",
            "Azure authorization failed for the requested operation",
            [
                "Verify you hold Contributor (or Owner for role assignments) on the subscription",
                "Check the active subscription: az account show",
                "Switch subscription: az account set --subscription <subscription-id>",
            ],
        )
    if _contains_any(text, "subscriptionnotfound", "subscription not found", "subscription was not found"):
        return AzureErrorInfo(
            "subscription_not_found",
            "The Azure subscription was not found or is not accessible",
            [
                "List accessible subscriptions: az account list -o table",
                "Switch subscription: az account set --subscription <subscription-id>",
                "Re-login if needed: az login",
            ],
        )
    if "resourcegroupnotfound" in text or ("resource group" in text and "not found" in text):
        return AzureErrorInfo(
            "resource_group_not_found",
            "The resource group was not found",
            [
                "List resource groups: az group list -o table",
                "Check that CS_CLUSTER_NAME is set correctly",
            ],
        )
    if _contains_any(text, "quotaexceeded", "quota exceeded", "exceeds quota"):
        return AzureErrorInfo(
            "quota_exceeded",
            "Azure resource quota exceeded",
            [
                "Check usage: az vm list-usage --location <region> -o table",
                "Request a quota increase under Subscriptions > Usage + quotas",
                "Consider a region with available capacity (REGION)",
            ],
        )
    if "already exists" in text and "service principal" in text:
        return AzureErrorInfo(
            "sp_already_exists",
            "A service principal with this name already exists",
            [
                "List service principals: az ad sp list --display-name <name> -o table",
                "Delete it if unused: az ad sp delete --id <sp-id>",
            ],
        )
    if _contains_any(text, "invalid_client", "invalid client secret", "credentials have expired"):
        return AzureErrorInfo(
            "invalid_credentials",
            "Azure credentials are invalid or have expired",
            [
                "Re-authenticate: az login",
                "Reset a service principal secret: az ad sp credential reset --id <sp-id>",
            ],
        )
    if _contains_any(text, "please run 'az login'", "not logged in", "no subscription found"):
        return AzureErrorInfo(
            "not_logged_in",
            "Azure CLI is not logged in or the session has expired",
            ["Log in: az login", "Verify: az account show"],
        )
    return None
