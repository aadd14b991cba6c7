"""JSON Schema validation infrastructure.

Provides the schema validation used at the stack's boundaries:
- Loan terms arriving from callers
- Lifecycle event envelopes before they are mirrored to the ledger

Schemas ship inside the package (``parcelfi/schemas``) and cross-reference
each other through ``$ref``; a single cached registry resolves them.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, List, Union

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from parcelfi.core import SCHEMAS_DIR, load_json

SCHEMA_BASE_URI = "https://schemas.momentum.inc/parcelfi/"

LOAN_TERMS_SCHEMA = "loan-terms.schema.json"
LIFECYCLE_EVENT_SCHEMA = "lifecycle-event.schema.json"


@lru_cache(maxsize=1)
def _schema_registry(schemas_dir: Path = SCHEMAS_DIR) -> Registry:
    """Build a schema registry for all PARCELFI schemas.

    This enables $ref resolution across the schema corpus.
    Cached for performance.
    """
    if not schemas_dir.is_dir():
        return Registry()

    resources = []
    for schema_path in sorted(schemas_dir.glob("*.schema.json")):
        schema = load_json(schema_path)
        if not isinstance(schema, dict):
            continue

        # Use $id from schema, or derive from filename
        schema_id = schema.get("$id") or f"{SCHEMA_BASE_URI}{schema_path.name}"
        resource = Resource.from_contents(schema, default_specification=DRAFT202012)
        resources.append((schema_id, resource))

    return Registry().with_resources(resources)


def schema_path(name: str, schemas_dir: Path = SCHEMAS_DIR) -> Path:
    """Resolve a bundled schema by file name."""
    path = schemas_dir / name
    if not path.exists():
        raise FileNotFoundError(f"Unknown schema: {name}")
    return path


@lru_cache(maxsize=16)
def schema_validator(name: str) -> Draft202012Validator:
    """Create a validator for a bundled schema.

    Args:
        name: Schema file name under ``parcelfi/schemas``

    Returns:
        A configured Draft202012Validator
    """
    schema = load_json(schema_path(name))
    return Draft202012Validator(schema, registry=_schema_registry())


def validate_against_schema(obj: Any, name: Union[str, Path]) -> List[str]:
    """Validate an object against a bundled schema.

    Returns:
        List of validation error messages (empty if valid)
    """
    validator = schema_validator(Path(name).name)
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(obj), key=lambda e: e.json_path)
    ]
