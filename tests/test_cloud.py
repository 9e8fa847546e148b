"""Tests for resource group lookups and Azure error diagnosis."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError

from deployer.cloud import (
    AzureCliResourceGroups,
    AzureSdkResourceGroups,
    diagnose_azure_error,
)
from deployer.errors import CloudLookupError
from deployer.runner import CommandResult


def az_result(output: str, success: bool = True) -> CommandResult:
    return CommandResult(
        args=("az",),
        success=success,
        output=output,
        return_code=0 if success else 3,
        error=None if success else "exit status 3",
    )


class TestAzureCliResourceGroups:
    """Tests for the Azure CLI lookup."""

    def test_existing_group(self) -> None:
        """Test a group that exists."""
        runner = MagicMock(return_value=az_result("Deleting\n"))

        status = AzureCliResourceGroups(runner).status("rcapx-stage-resgroup")

        assert status.exists is True
        assert status.provisioning_state == "Deleting"
        assert runner.call_args.args[0][:5] == ["az", "group", "show", "--name", "rcapx-stage-resgroup"]

    def test_missing_group(self) -> None:
        """Test that ResourceGroupNotFound reports absence."""
        runner = MagicMock(
            return_value=az_result(
                "(ResourceGroupNotFound) Resource group 'rcapx-stage-resgroup' could not be found.",
                success=False,
            )
        )

        status = AzureCliResourceGroups(runner).status("rcapx-stage-resgroup")

        assert status.exists is False
        assert status.describe() == "resource group rcapx-stage-resgroup: absent"

    def test_other_failure_raises(self) -> None:
        """Test that login failures are not mistaken for absence."""
        runner = MagicMock(return_value=az_result("Please run 'az login' to setup account.", success=False))

        with pytest.raises(CloudLookupError):
            AzureCliResourceGroups(runner).status("rcapx-stage-resgroup")

    @pytest.mark.parametrize(
        "output",
        [
            "(SubscriptionNotFound) Subscription 'abc' could not be found.",
            "bash: az: command not found",
            "(ResourceNotFound) The Resource 'Microsoft.Network/vnet' was not found.",
        ],
    )
    def test_unrelated_not_found_raises(self, output: str) -> None:
        """Test that other "not found" failures are not read as a deleted group."""
        runner = MagicMock(return_value=az_result(output, success=False))

        with pytest.raises(CloudLookupError, match="Cannot query resource group"):
            AzureCliResourceGroups(runner).status("rcapx-stage-resgroup")

    def test_message_without_error_code(self) -> None:
        """Test the plain "could not be found" message for this group."""
        runner = MagicMock(
            return_value=az_result(
                "ERROR: Resource group 'RCAPX-stage-resgroup' could not be found.", success=False
            )
        )

        assert AzureCliResourceGroups(runner).status("rcapx-stage-resgroup").exists is False


class TestAzureSdkResourceGroups:
    """Tests for the ARM SDK lookup."""

    def test_existing_group(self) -> None:
        """Test reading the provisioning state."""
        client = MagicMock()
        client.resource_groups.get.return_value = SimpleNamespace(
            name="rg", properties=SimpleNamespace(provisioning_state="Succeeded")
        )

        status = AzureSdkResourceGroups("sub-id", client=client).status("rg")

        assert status.exists is True
        assert status.provisioning_state == "Succeeded"
        client.resource_groups.get.assert_called_once_with("rg")

    def test_missing_group(self) -> None:
        """Test that ResourceNotFoundError reports absence."""
        client = MagicMock()
        client.resource_groups.get.side_effect = ResourceNotFoundError("not found")

        assert AzureSdkResourceGroups("sub-id", client=client).status("rg").exists is False

    def test_service_error_raises(self) -> None:
        """Test that other ARM errors raise CloudLookupError."""
        client = MagicMock()
        client.resource_groups.get.side_effect = HttpResponseError("throttled")

        with pytest.raises(CloudLookupError, match="throttled"):
            AzureSdkResourceGroups("sub-id", client=client).status("rg")


class TestDiagnoseAzureError:
    """Tests for Azure error categorisation."""

    @pytest.mark.parametrize(
        "output,error_type",
        [
            ("ERROR: Insufficient privileges to complete the operation.", "insufficient_privileges"),
            ("(AuthorizationFailed) The client does not have authorization", "authorization_failed"),
            ("(SubscriptionNotFound) The subscription 'x' could not be found.", "subscription_not_found"),
            ("(ResourceGroupNotFound) Resource group 'rg' could not be found.", "resource_group_not_found"),
            ("Operation could not be completed as it results in exceeding approved quota. QuotaExceeded", "quota_exceeded"),
            ("Service principal with name capz already exists", "sp_already_exists"),
            ("AADSTS7000215: Invalid client secret provided.", "invalid_credentials"),
            ("Please run 'az login' to setup account.", "not_logged_in"),
        ],
    )
    def test_categories(self, output: str, error_type: str) -> None:
        """Test that each known failure is recognised."""
        info = diagnose_azure_error(output)

        assert info is not None
        assert info.error_type == error_type
        assert info.remediation
        assert "To fix this:" in info.format()

    def test_unknown_output(self) -> None:
        """Test that unrelated output is not diagnosed."""
        assert diagnose_azure_error("the server could not find the requested resource") is None
