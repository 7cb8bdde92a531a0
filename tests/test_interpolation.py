"""Tests for attribute interpolation."""

from __future__ import annotations

from typing import Any

import pytest

from converge.errors import PlanningError
from converge.interpolation import (
    Reference,
    find_references,
    parse_reference,
    resolve,
)
from converge.models import ResourceId

OUTPUTS = {
    ResourceId("net", "main"): {"id": "/net/main", "ports": [80, 443], "fqdn": "main.example"},
}


def lookup(reference: Reference) -> Any:
    return OUTPUTS[reference.target][reference.attribute]


class TestParseReference:
    """Tests for parse_reference()."""

    def test_parse(self) -> None:
        """Test splitting target and attribute."""
        reference = parse_reference("net.main.id")
        assert reference.target == ResourceId("net", "main")
        assert reference.attribute == "id"

    def test_dotted_type(self) -> None:
        """Test that types with dots parse."""
        reference = parse_reference("Microsoft.Network/virtualNetworks.hub.id")
        assert reference.target == ResourceId("Microsoft.Network/virtualNetworks", "hub")

    def test_malformed(self) -> None:
        """Test that a reference without attribute is rejected."""
        with pytest.raises(ValueError):
            parse_reference("main")


class TestFindReferences:
    """Tests for reference discovery."""

    def test_nested(self) -> None:
        """Test that references are found anywhere in nested values."""
        value = {
            "a": "${net.main.id}",
            "b": [{"c": "prefix-${db.main.host}-suffix"}],
            "d": 3,
        }
        targets = [ref.target for ref in find_references(value)]
        assert targets == [ResourceId("net", "main"), ResourceId("db", "main")]


class TestResolve:
    """Tests for resolve()."""

    def test_whole_value_keeps_type(self) -> None:
        """Test that a lone reference takes the referenced value as-is."""
        assert resolve({"ports": "${net.main.ports}"}, lookup) == {"ports": [80, 443]}

    def test_embedded_reference_is_text(self) -> None:
        """Test that embedded references are substituted as strings."""
        value = "https://${net.main.fqdn}:${net.main.ports}"
        assert resolve(value, lookup) == "https://main.example:[80, 443]"

    def test_leaves_input_untouched(self) -> None:
        """Test that resolve returns a copy."""
        value = {"id": "${net.main.id}"}
        resolve(value, lookup)
        assert value == {"id": "${net.main.id}"}

    def test_unknown_output_raises_planning_error(self) -> None:
        """Test that a failed lookup becomes a PlanningError."""
        with pytest.raises(PlanningError) as exc_info:
            resolve({"x": "${net.main.missing}"}, lookup)

        assert "net.main.missing" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, KeyError)
