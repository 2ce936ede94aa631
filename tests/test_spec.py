"""Tests for engine spec schema validation."""

from pathlib import Path

import jsonschema
import pytest
import yaml

from rollout.spec.validator import load_schema, validate_engine_spec


def test_all_fixtures_validate() -> None:
    """All fixtures must pass schema validation (keeps fixtures in sync with schema)."""
    fixture_dir = Path(__file__).resolve().parent.parent / "fixtures"
    paths = sorted(fixture_dir.glob("*.yaml"))
    assert paths
    for path in paths:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        validate_engine_spec(data)


def test_missing_api_version() -> None:
    """Missing apiVersion raises ValidationError."""
    data = {"kind": "Service", "metadata": {"name": "web"}, "spec": {}}
    with pytest.raises(jsonschema.ValidationError, match="apiVersion"):
        validate_engine_spec(data)


def test_unsupported_api_version() -> None:
    """Unknown apiVersion is reported as a validation error."""
    data = {"apiVersion": "rollout.engine/v99", "kind": "Service", "metadata": {"name": "web"}, "spec": {}}
    with pytest.raises(jsonschema.ValidationError, match="Unsupported apiVersion"):
        validate_engine_spec(data)


def test_load_schema_unknown_version() -> None:
    """load_schema raises ValueError for versions it does not know."""
    with pytest.raises(ValueError, match="Unsupported apiVersion"):
        load_schema("rollout.engine/v0")


def test_non_mapping_document() -> None:
    """A YAML list is not an engine spec."""
    with pytest.raises(jsonschema.ValidationError, match="mapping"):
        validate_engine_spec(["not", "a", "mapping"])


def test_unknown_section_field_rejected() -> None:
    """Extra keys inside a section are rejected and the path is reported."""
    data = {
        "apiVersion": "rollout.engine/v1",
        "kind": "Service",
        "metadata": {"name": "web"},
        "spec": {"service": {"desiredCount": 2, "replicas": 3}},
    }
    with pytest.raises(jsonschema.ValidationError) as exc_info:
        validate_engine_spec(data)
    assert "spec.service" in str(exc_info.value)
    assert "replicas" in str(exc_info.value)


def test_percentages_out_of_range() -> None:
    """minHealthyPercent above 100 and maxHealthyPercent below 100 both fail."""
    data = {
        "apiVersion": "rollout.engine/v1",
        "kind": "Service",
        "metadata": {"name": "web"},
        "spec": {"service": {"minHealthyPercent": 150, "maxHealthyPercent": 50}},
    }
    with pytest.raises(jsonschema.ValidationError) as exc_info:
        validate_engine_spec(data)
    message = str(exc_info.value)
    assert "minHealthyPercent" in message
    assert "maxHealthyPercent" in message


def test_invalid_service_name() -> None:
    """metadata.name must start with a letter."""
    data = {"apiVersion": "rollout.engine/v1", "kind": "Service", "metadata": {"name": "1web"}, "spec": {}}
    with pytest.raises(jsonschema.ValidationError, match="metadata.name"):
        validate_engine_spec(data)
