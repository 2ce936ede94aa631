"""Validate engine.yaml against the JSON Schema for the declared apiVersion."""

import json
from pathlib import Path

import jsonschema

SCHEMAS = {"rollout.engine/v1": "engine-spec-v1.json"}


def _schema_dir() -> Path:
    """Directory containing schema files (rollout/schema/)."""
    return Path(__file__).resolve().parent.parent / "schema"


def load_schema(api_version: str) -> dict:
    """Load the JSON Schema for the given apiVersion.

    apiVersion format is e.g. 'rollout.engine/v1'.
    """
    name = SCHEMAS.get(api_version)
    if name is None:
        raise ValueError(f"Unsupported apiVersion: {api_version}")
    path = _schema_dir() / name
    if not path.exists():
        raise FileNotFoundError(f"Schema not found: {path}")
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def validate_engine_spec(data: dict) -> None:
    """Validate a parsed engine.yaml (dict) against its apiVersion schema.

    Raises:
        jsonschema.ValidationError: If validation fails. The message lists up to
            ten errors with their paths.
    """
    if not isinstance(data, dict):
        raise jsonschema.ValidationError("engine.yaml must be a mapping")
    api_version = data.get("apiVersion")
    if not api_version:
        raise jsonschema.ValidationError("Missing required field: apiVersion")
    try:
        schema = load_schema(api_version)
    except ValueError as e:
        raise jsonschema.ValidationError(str(e)) from e
    validator = jsonschema.Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda err: [str(p) for p in err.absolute_path])
    if errors:
        lines = ["engine.yaml validation failed:"]
        for i, err in enumerate(errors[:10], 1):
            path = ".".join(str(p) for p in err.absolute_path) if err.absolute_path else "(root)"
            lines.append(f"  {i}. {path}: {err.message}")
        if len(errors) > 10:
            lines.append(f"  ... and {len(errors) - 10} more errors")
        raise jsonschema.ValidationError("\n".join(lines))
