"""Tests for the Azure Resource Manager provider."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
)

from converge.azure_provider import (
    AzureResourceProvider,
    classify_azure_error,
    parse_resource_group,
)
from converge.errors import PermanentProviderError, TransientProviderError

SUBSCRIPTION = "00000000-0000-0000-0000-000000000000"
VNET_TYPE = "Microsoft.Network/virtualNetworks"
VNET_ID = (
    f"/subscriptions/{SUBSCRIPTION}/resourceGroups/rg-hub"
    f"/providers/{VNET_TYPE}/vnet-hub"
)


def http_error(status_code: int) -> HttpResponseError:
    error = HttpResponseError(message=f"status {status_code}")
    error.status_code = status_code
    return error


def arm_resource(resource_id: str, **fields) -> MagicMock:
    resource = MagicMock()
    resource.id = resource_id
    resource.as_dict.return_value = {"id": resource_id, "name": resource_id.split("/")[-1], **fields}
    return resource


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def azure(client: MagicMock) -> AzureResourceProvider:
    return AzureResourceProvider(credential=MagicMock(), subscription_id=SUBSCRIPTION, client=client)


class TestClassifyAzureError:
    """Tests for classify_azure_error()."""

    @pytest.mark.parametrize("status_code", [408, 429, 500, 503])
    def test_transient_status(self, status_code: int) -> None:
        """Test that throttling and server errors are retried."""
        assert isinstance(classify_azure_error(http_error(status_code), "create"), TransientProviderError)

    @pytest.mark.parametrize("status_code", [400, 403, 409])
    def test_permanent_status(self, status_code: int) -> None:
        """Test that client errors are permanent."""
        assert isinstance(classify_azure_error(http_error(status_code), "create"), PermanentProviderError)

    def test_connection_error_transient(self) -> None:
        """Test that network failures are retried."""
        error = classify_azure_error(ServiceRequestError(message="connection reset"), "read")
        assert isinstance(error, TransientProviderError)
        assert "read failed" in str(error)

    def test_authentication_permanent(self) -> None:
        """Test that authentication failures are not retried."""
        error = classify_azure_error(ClientAuthenticationError(message="denied"), "read")
        assert isinstance(error, PermanentProviderError)

    def test_unknown_permanent(self) -> None:
        """Test that anything else is permanent."""
        assert isinstance(classify_azure_error(ValueError("x"), "read"), PermanentProviderError)


def test_parse_resource_group() -> None:
    """Test extracting the resource group from ARM IDs."""
    assert parse_resource_group(VNET_ID) == "rg-hub"
    assert parse_resource_group(f"/subscriptions/{SUBSCRIPTION}/resourcegroups/RG") == "RG"
    assert parse_resource_group(f"/subscriptions/{SUBSCRIPTION}") is None


class TestCreate:
    """Tests for AzureResourceProvider.create()."""

    def test_generic_resource(self, azure: AzureResourceProvider, client: MagicMock) -> None:
        """Test creating a resource through the generic resources API."""
        client.resources.begin_create_or_update_by_id.return_value.result.return_value = (
            arm_resource(VNET_ID, location="westeurope", properties={"provisioningState": "Succeeded"})
        )
        attributes = {
            "resourceGroup": "rg-hub",
            "apiVersion": "2023-09-01",
            "location": "westeurope",
            "properties": {"addressSpace": {"addressPrefixes": ["10.0.0.0/16"]}},
        }

        provider_id, outputs = azure.create(VNET_TYPE, "vnet-hub", attributes)

        assert provider_id == VNET_ID
        assert outputs["id"] == VNET_ID
        assert outputs["properties"] == {"provisioningState": "Succeeded"}
        resource_id, api_version, body = client.resources.begin_create_or_update_by_id.call_args[0]
        assert resource_id == VNET_ID
        assert api_version == "2023-09-01"
        assert body.location == "westeurope"
        assert body.properties == attributes["properties"]

    def test_resource_group_required(self, azure: AzureResourceProvider) -> None:
        """Test that resources outside a group are rejected."""
        with pytest.raises(PermanentProviderError):
            azure.create(VNET_TYPE, "vnet-hub", {"location": "westeurope"})

    def test_resource_group(self, azure: AzureResourceProvider, client: MagicMock) -> None:
        """Test that resource groups use the resource groups API."""
        group_id = f"/subscriptions/{SUBSCRIPTION}/resourceGroups/rg-hub"
        client.resource_groups.create_or_update.return_value = arm_resource(
            group_id, location="westeurope"
        )

        provider_id, outputs = azure.create(
            "Microsoft.Resources/resourceGroups", "rg-hub", {"location": "westeurope"}
        )

        assert provider_id == group_id
        assert outputs["name"] == "rg-hub"
        client.resources.begin_create_or_update_by_id.assert_not_called()

    def test_newest_stable_api_version(self, azure: AzureResourceProvider, client: MagicMock) -> None:
        """Test API version discovery when none is declared."""
        client.providers.get.return_value = SimpleNamespace(
            resource_types=[
                SimpleNamespace(resource_type="publicIPAddresses", api_versions=["2099-01-01"]),
                SimpleNamespace(
                    resource_type="virtualNetworks",
                    api_versions=["2024-01-01-preview", "2023-09-01", "2023-05-01"],
                ),
            ]
        )
        client.resources.begin_create_or_update_by_id.return_value.result.return_value = (
            arm_resource(VNET_ID)
        )

        azure.create(VNET_TYPE, "vnet-hub", {"resourceGroup": "rg-hub"})

        client.providers.get.assert_called_once_with("Microsoft.Network")
        assert client.resources.begin_create_or_update_by_id.call_args[0][1] == "2023-09-01"

    def test_throttled_is_transient(self, azure: AzureResourceProvider, client: MagicMock) -> None:
        """Test that a 429 surfaces as a transient error."""
        client.resources.begin_create_or_update_by_id.side_effect = http_error(429)

        with pytest.raises(TransientProviderError):
            azure.create(VNET_TYPE, "vnet-hub", {"resourceGroup": "rg-hub", "apiVersion": "2023-09-01"})


class TestReadDelete:
    """Tests for read() and delete()."""

    def test_read_returns_outputs(self, azure: AzureResourceProvider, client: MagicMock) -> None:
        """Test that live state includes the resource group."""
        client.resources.get_by_id.return_value = arm_resource(VNET_ID, location="westeurope")
        azure._api_versions[VNET_ID] = "2023-09-01"

        live = azure.read(VNET_TYPE, VNET_ID)

        assert live["location"] == "westeurope"
        assert live["resourceGroup"] == "rg-hub"
        client.resources.get_by_id.assert_called_once_with(VNET_ID, "2023-09-01")

    def test_read_missing(self, azure: AzureResourceProvider, client: MagicMock) -> None:
        """Test that a missing resource reads as None."""
        azure._api_versions[VNET_ID] = "2023-09-01"
        client.resources.get_by_id.side_effect = ResourceNotFoundError(message="gone")

        assert azure.read(VNET_TYPE, VNET_ID) is None

    def test_delete_missing_is_ok(self, azure: AzureResourceProvider, client: MagicMock) -> None:
        """Test that deleting an absent resource succeeds."""
        azure._api_versions[VNET_ID] = "2023-09-01"
        client.resources.begin_delete_by_id.side_effect = ResourceNotFoundError(message="gone")

        azure.delete(VNET_TYPE, VNET_ID)

    def test_delete_failure_classified(self, azure: AzureResourceProvider, client: MagicMock) -> None:
        """Test that delete errors are classified."""
        azure._api_versions[VNET_ID] = "2023-09-01"
        client.resources.begin_delete_by_id.side_effect = http_error(409)

        with pytest.raises(PermanentProviderError) as exc_info:
            azure.delete(VNET_TYPE, VNET_ID)

        assert VNET_ID in str(exc_info.value)
