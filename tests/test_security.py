"""Tests for secretless architecture enforcement.

These tests verify that the controller refuses credential environment
variables and that desired state never carries literal secrets.
"""

from __future__ import annotations

import os
from unittest import mock

import pytest

from converge.errors import ValidationError
from converge.security import (
    FORBIDDEN_CREDENTIAL_ENV_VARS,
    PlaintextSecretError,
    SecretlessViolationError,
    enforce_secretless_architecture,
    find_plaintext_secrets,
    get_managed_identity_credential,
    reject_plaintext_secrets,
)


class TestSecretlessEnforcement:
    """Tests for secretless architecture enforcement."""

    def test_clean_environment_passes(self) -> None:
        """Test that enforcement passes with no credential env vars."""
        with mock.patch.dict(os.environ, {}, clear=True):
            # Should not raise
            enforce_secretless_architecture()

    @pytest.mark.parametrize("env_var", FORBIDDEN_CREDENTIAL_ENV_VARS)
    def test_forbidden_env_var_raises(self, env_var: str) -> None:
        """Test that each forbidden env var raises SecretlessViolationError."""
        with mock.patch.dict(os.environ, {env_var: "some-secret-value"}):
            with pytest.raises(SecretlessViolationError) as exc_info:
                enforce_secretless_architecture()

            assert env_var in str(exc_info.value)
            assert "SECURITY VIOLATION" in str(exc_info.value)

    def test_empty_value_is_ignored(self) -> None:
        """Test that an empty credential variable is not a violation."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": ""}, clear=True):
            enforce_secretless_architecture()


class TestGetManagedIdentityCredential:
    """Tests for managed identity credential getter."""

    def test_rejects_secret_env_var(self) -> None:
        """Test that get_managed_identity_credential enforces secretless."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "secret"}):
            with pytest.raises(SecretlessViolationError):
                get_managed_identity_credential()

    @mock.patch("converge.security.ManagedIdentityCredential")
    def test_returns_system_assigned_by_default(self, mock_credential_class: mock.Mock) -> None:
        """Test that system-assigned MI is used when no client_id."""
        mock_credential = mock.Mock()
        mock_credential_class.return_value = mock_credential

        with mock.patch.dict(os.environ, {}, clear=True):
            result = get_managed_identity_credential()

        mock_credential_class.assert_called_once_with()
        assert result is mock_credential

    @mock.patch("converge.security.ManagedIdentityCredential")
    def test_returns_user_assigned_with_client_id(self, mock_credential_class: mock.Mock) -> None:
        """Test that user-assigned MI is used when client_id provided."""
        client_id = "test-client-id-12345"

        with mock.patch.dict(os.environ, {}, clear=True):
            get_managed_identity_credential(client_id=client_id)

        mock_credential_class.assert_called_once_with(client_id=client_id)


class TestPlaintextSecrets:
    """Tests for literal secret detection in desired state."""

    def test_literal_password_found(self) -> None:
        """Test that a literal value under a sensitive key is reported."""
        assert find_plaintext_secrets({"adminPassword": "hunter2"}) == ["adminPassword"]

    def test_reference_allowed(self) -> None:
        """Test that a reference to another resource is not a literal."""
        attributes = {"adminPassword": "${vault.main.generatedPassword}"}
        assert find_plaintext_secrets(attributes) == []

    def test_empty_and_boolean_values_allowed(self) -> None:
        """Test that empty values and flags are not secrets."""
        attributes = {"apiKey": "", "token": None, "enableSecretRotation": True}
        assert find_plaintext_secrets(attributes) == []

    def test_nested_paths_reported(self) -> None:
        """Test that nested dicts and lists are walked."""
        attributes = {
            "properties": {
                "users": [
                    {"name": "app", "password": "x"},
                    {"name": "ops", "password": "${vault.ops.password}"},
                ],
            },
            "location": "westeurope",
        }
        assert find_plaintext_secrets(attributes) == ["properties.users[0].password"]

    def test_non_sensitive_keys_ignored(self) -> None:
        """Test that ordinary attributes are never flagged."""
        assert find_plaintext_secrets({"name": "api", "replicas": 3}) == []

    def test_reject_raises_validation_error(self) -> None:
        """Test that reject_plaintext_secrets fails validation."""
        with pytest.raises(PlaintextSecretError) as exc_info:
            reject_plaintext_secrets("db.main", {"connectionSecret": "abc"})

        assert isinstance(exc_info.value, ValidationError)
        assert "db.main" in str(exc_info.value)
        assert "connectionSecret" in str(exc_info.value)

    def test_reject_passes_clean_attributes(self) -> None:
        """Test that clean attributes pass."""
        reject_plaintext_secrets("db.main", {"size": "small"})


class TestForbiddenEnvVarsList:
    """Tests for the forbidden environment variables list."""

    def test_contains_azure_client_secret(self) -> None:
        """Test that AZURE_CLIENT_SECRET is in the forbidden list."""
        assert "AZURE_CLIENT_SECRET" in FORBIDDEN_CREDENTIAL_ENV_VARS

    def test_list_is_tuple(self) -> None:
        """Test that the list is immutable (tuple, not list)."""
        assert isinstance(FORBIDDEN_CREDENTIAL_ENV_VARS, tuple)
