"""Azure Resource Manager implementation of the Resource Provider.

Resources are addressed generically through ARM resource IDs, so any ARM
resource type can be reconciled without a type-specific client.

DESIRED STATE CONVENTIONS:
```yaml
- type: Microsoft.Resources/resourceGroups
  name: rg-hub
  attributes:
    location: westeurope
- type: Microsoft.Network/virtualNetworks
  name: vnet-hub
  attributes:
    resourceGroup: ${Microsoft.Resources/resourceGroups.rg-hub.name}
    apiVersion: "2023-09-01"
    location: westeurope
    properties:
      addressSpace:
        addressPrefixes: ["10.0.0.0/16"]
```

ERROR CLASSIFICATION:
- HTTP 408/429/5xx, connection and response errors: transient (retried)
- Authentication failures and all other HTTP errors: permanent

SECURITY: Authentication uses managed identity only (see security.py).
"""

from __future__ import annotations

import logging
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, ResourceGroup

from .errors import PermanentProviderError, ProviderError, TransientProviderError
from .provider import ResourceProvider

logger = logging.getLogger(__name__)

RESOURCE_GROUP_TYPE = "Microsoft.Resources/resourceGroups"

# HTTP status codes worth retrying
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# GenericResource fields reconciled from attributes
RESOURCE_BODY_FIELDS = ("location", "tags", "properties", "sku", "kind", "identity", "plan")


def classify_azure_error(error: Exception, operation: str) -> Exception:
    """Map an Azure SDK exception to the provider error taxonomy."""
    message = f"{operation} failed: {error}"

    if isinstance(error, ClientAuthenticationError):
        return PermanentProviderError(message)

    if isinstance(error, HttpResponseError):
        if error.status_code in TRANSIENT_STATUS_CODES:
            return TransientProviderError(message)
        return PermanentProviderError(message)

    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return TransientProviderError(message)

    return PermanentProviderError(message)


def parse_resource_group(resource_id: str) -> str | None:
    """Extract the resource group name from an ARM resource ID."""
    parts = resource_id.strip("/").split("/")
    lowered = [part.lower() for part in parts]
    if "resourcegroups" in lowered:
        index = lowered.index("resourcegroups")
        if index + 1 < len(parts):
            return parts[index + 1]
    return None


class AzureResourceProvider(ResourceProvider):
    """Reconciles ARM resources through the generic resources API.

    Long-running operations are awaited synchronously (``poller.result()``);
    the planner and executor run each call in a worker thread with a timeout.
    """

    def __init__(
        self,
        credential: TokenCredential,
        subscription_id: str,
        client: ResourceManagementClient | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            credential: Azure credential (must be a managed identity).
            subscription_id: Subscription that owns the reconciled resources.
            client: Pre-built client, mainly for tests.
        """
        self._subscription_id = subscription_id
        self._client = client or ResourceManagementClient(
            credential=credential,
            subscription_id=subscription_id,
        )
        # ARM needs the API version on every call; remember what each ID was created with
        self._api_versions: dict[str, str] = {}

    def _resource_id(self, resource_type: str, name: str, attributes: dict[str, Any]) -> str:
        resource_group = attributes.get("resourceGroup")
        if not resource_group:
            raise PermanentProviderError(
                f"{resource_type}.{name}: attribute 'resourceGroup' is required"
            )
        return (
            f"/subscriptions/{self._subscription_id}"
            f"/resourceGroups/{resource_group}"
            f"/providers/{resource_type}/{name}"
        )

    def _api_version(self, resource_type: str, provider_id: str, attributes: dict[str, Any]) -> str:
        """Pick the API version: declared, then remembered, then the newest stable one."""
        api_version = attributes.get("apiVersion") or self._api_versions.get(provider_id)
        if api_version:
            return str(api_version)

        namespace, _, type_path = resource_type.partition("/")
        try:
            registration = self._client.providers.get(namespace)
        except Exception as e:
            raise classify_azure_error(e, f"lookup API versions of {resource_type}") from e

        for registered in registration.resource_types or []:
            if (registered.resource_type or "").lower() != type_path.lower():
                continue
            stable = [v for v in registered.api_versions or [] if "preview" not in v]
            if stable:
                api_version = max(stable)
                self._api_versions[provider_id] = api_version
                return api_version

        raise PermanentProviderError(
            f"{resource_type}: no stable API version found; declare attribute 'apiVersion'"
        )

    @staticmethod
    def _body(attributes: dict[str, Any]) -> GenericResource:
        return GenericResource(
            **{field: attributes[field] for field in RESOURCE_BODY_FIELDS if field in attributes}
        )

    @staticmethod
    def _outputs(resource: Any) -> dict[str, Any]:
        data = resource.as_dict() if hasattr(resource, "as_dict") else {}
        outputs = {field: data[field] for field in RESOURCE_BODY_FIELDS if field in data}
        outputs["id"] = data.get("id")
        outputs["name"] = data.get("name")
        return outputs

    def create(
        self, resource_type: str, name: str, attributes: dict[str, Any]
    ) -> tuple[str, dict[str, Any]]:
        if resource_type == RESOURCE_GROUP_TYPE:
            try:
                group = self._client.resource_groups.create_or_update(
                    name,
                    ResourceGroup(location=attributes["location"], tags=attributes.get("tags")),
                )
            except KeyError as e:
                raise PermanentProviderError(f"{resource_type}.{name}: 'location' is required") from e
            except Exception as e:
                raise classify_azure_error(e, f"create {resource_type}.{name}") from e
            return group.id, self._outputs(group)

        resource_id = self._resource_id(resource_type, name, attributes)
        api_version = self._api_version(resource_type, resource_id, attributes)
        try:
            poller = self._client.resources.begin_create_or_update_by_id(
                resource_id, api_version, self._body(attributes)
            )
            resource = poller.result()
        except Exception as e:
            raise classify_azure_error(e, f"create {resource_id}") from e

        self._api_versions[resource_id] = api_version
        logger.info(
            "Azure resource created",
            extra={"resource_id": resource_id, "api_version": api_version},
        )
        return resource.id or resource_id, self._outputs(resource)

    def read(self, resource_type: str, provider_id: str) -> dict[str, Any] | None:
        try:
            if resource_type == RESOURCE_GROUP_TYPE:
                resource = self._client.resource_groups.get(provider_id.rstrip("/").split("/")[-1])
            else:
                api_version = self._api_version(resource_type, provider_id, {})
                resource = self._client.resources.get_by_id(provider_id, api_version)
        except ResourceNotFoundError:
            return None
        except ProviderError:
            raise
        except Exception as e:
            raise classify_azure_error(e, f"read {provider_id}") from e

        outputs = self._outputs(resource)
        resource_group = parse_resource_group(provider_id)
        if resource_group and resource_type != RESOURCE_GROUP_TYPE:
            outputs["resourceGroup"] = resource_group
        return outputs

    def update(
        self, resource_type: str, provider_id: str, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        if resource_type == RESOURCE_GROUP_TYPE:
            name = provider_id.rstrip("/").split("/")[-1]
            _, outputs = self.create(resource_type, name, attributes)
            return outputs

        api_version = self._api_version(resource_type, provider_id, attributes)
        try:
            poller = self._client.resources.begin_create_or_update_by_id(
                provider_id, api_version, self._body(attributes)
            )
            resource = poller.result()
        except Exception as e:
            raise classify_azure_error(e, f"update {provider_id}") from e

        self._api_versions[provider_id] = api_version
        logger.info("Azure resource updated", extra={"resource_id": provider_id})
        return self._outputs(resource)

    def delete(self, resource_type: str, provider_id: str) -> None:
        try:
            if resource_type == RESOURCE_GROUP_TYPE:
                name = provider_id.rstrip("/").split("/")[-1]
                self._client.resource_groups.begin_delete(name).result()
            else:
                api_version = self._api_version(resource_type, provider_id, {})
                self._client.resources.begin_delete_by_id(provider_id, api_version).result()
        except ResourceNotFoundError:
            logger.info("Azure resource already absent", extra={"resource_id": provider_id})
            return
        except ProviderError:
            raise
        except Exception as e:
            raise classify_azure_error(e, f"delete {provider_id}") from e

        self._api_versions.pop(provider_id, None)
        logger.info("Azure resource deleted", extra={"resource_id": provider_id})
