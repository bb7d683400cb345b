"""
lists-store — managed object model.

Purpose
- Load the named schema description (``<name>.model.toml`` or ``<name>.model.yaml``)
  from a resources directory.
- Validate and normalize record values against entity descriptions.
- Infer lightweight mappings between two model versions for automatic migration.

Model file format
- ``version`` (int, optional, default 1) and an ``[entities.<Name>]`` table per entity.
- ``[entities.<Name>.attributes]``: ``attr = "type"`` or
  ``attr = { type = "...", optional = true, default = ... }``.
- ``[entities.<Name>.relationships]``:
  ``rel = { destination = "Other", to_many = false, inverse = "..." }``.
"""

from __future__ import annotations

import copy
import hashlib
import json
import math
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from importlib import resources
from pathlib import Path
from typing import Any, Final, Literal

import yaml

from lists_store.constants import MODEL_FILE_SUFFIX, MODEL_YAML_SUFFIX

AttributeType = Literal["string", "integer", "float", "boolean", "date", "json"]

ATTRIBUTE_TYPES: Final[tuple[str, ...]] = ("boolean", "date", "float", "integer", "json", "string")

_NAME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
_RESOURCE_PACKAGE: Final[str] = "lists_store.resources"


class ModelError(RuntimeError):
    """Base class for model loading and validation errors."""


class ModelNotFoundError(ModelError):
    """Raised when the model resource cannot be found."""


class ModelLoadError(ModelError):
    """Raised when the model resource cannot be parsed or is structurally invalid."""


class UnknownEntityError(ModelError):
    """Raised when an entity name is not part of the model."""


class RecordValidationError(ModelError, ValueError):
    """Raised when record values do not match the entity description."""


class MappingInferenceError(ModelError):
    """Raised when no lightweight mapping exists between two model versions."""


@dataclass(frozen=True, slots=True)
class AttributeDescription:
    name: str
    type: AttributeType
    optional: bool = True
    default: object = None

    def as_dict(self) -> dict[str, object]:
        return {"type": self.type, "optional": self.optional, "default": self.default}


@dataclass(frozen=True, slots=True)
class RelationshipDescription:
    name: str
    destination: str
    to_many: bool = False
    inverse: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {"destination": self.destination, "to_many": self.to_many, "inverse": self.inverse}


@dataclass(frozen=True, slots=True)
class EntityDescription:
    name: str
    attributes: tuple[AttributeDescription, ...]
    relationships: tuple[RelationshipDescription, ...] = ()

    @property
    def property_names(self) -> frozenset[str]:
        return frozenset(
            [attr.name for attr in self.attributes] + [rel.name for rel in self.relationships]
        )

    def attribute(self, name: str) -> AttributeDescription | None:
        for attr in self.attributes:
            if attr.name == name:
                return attr
        return None

    def relationship(self, name: str) -> RelationshipDescription | None:
        for rel in self.relationships:
            if rel.name == name:
                return rel
        return None

    def as_dict(self) -> dict[str, object]:
        return {
            "attributes": {attr.name: attr.as_dict() for attr in self.attributes},
            "relationships": {rel.name: rel.as_dict() for rel in self.relationships},
        }

    def normalize_values(self, values: Mapping[str, object], *, partial: bool) -> dict[str, Any]:
        """Validate ``values`` and return their storable form.

        With ``partial=False`` (inserts) defaults are applied and required
        attributes must be present; with ``partial=True`` (updates) only the
        given keys are checked.
        """

        unknown = sorted(key for key in values if key not in self.property_names)
        if unknown:
            raise RecordValidationError(
                f"{self.name}: unknown properties {', '.join(repr(key) for key in unknown)}"
            )

        out: dict[str, Any] = {}
        for attr in self.attributes:
            if attr.name in values:
                out[attr.name] = _coerce_attribute(self.name, attr, values[attr.name])
            elif not partial:
                out[attr.name] = copy.deepcopy(attr.default)
            if not partial or attr.name in values:
                if out.get(attr.name) is None and not attr.optional:
                    raise RecordValidationError(f"{self.name}.{attr.name} is required")

        for rel in self.relationships:
            if rel.name in values:
                out[rel.name] = _coerce_relationship(self.name, rel, values[rel.name])
            elif not partial:
                out[rel.name] = [] if rel.to_many else None
        return out

    def materialize(self, stored: Mapping[str, object]) -> dict[str, Any]:
        """Project stored values onto the current description, filling defaults.

        A stored ``None`` for a required attribute also takes the default.
        """

        out: dict[str, Any] = {}
        for attr in self.attributes:
            value = stored.get(attr.name)
            if attr.name in stored and (value is not None or attr.optional):
                out[attr.name] = copy.deepcopy(value)
            else:
                out[attr.name] = copy.deepcopy(attr.default)
        for rel in self.relationships:
            if rel.name in stored:
                out[rel.name] = copy.deepcopy(stored[rel.name])
            else:
                out[rel.name] = [] if rel.to_many else None
        return out


@dataclass(frozen=True, slots=True)
class ManagedModel:
    """Immutable, named description of entities and their relationships."""

    name: str
    version: int
    entities: tuple[EntityDescription, ...]

    @property
    def entity_names(self) -> tuple[str, ...]:
        return tuple(entity.name for entity in self.entities)

    def entity(self, name: str) -> EntityDescription:
        for entity in self.entities:
            if entity.name == name:
                return entity
        raise UnknownEntityError(f"entity {name!r} is not defined in model {self.name!r}")

    def as_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "version": self.version,
            "entities": {entity.name: entity.as_dict() for entity in self.entities},
        }

    def to_json(self) -> str:
        return json.dumps(self.as_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @property
    def checksum(self) -> str:
        """SHA-256 of the canonical description, excluding the model name."""

        payload = self.as_dict()
        payload.pop("name", None)
        text = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    @classmethod
    def from_mapping(cls, name: str, payload: Mapping[str, object]) -> ManagedModel:
        """Build a model from a parsed description; raises ``ModelLoadError``."""

        return _parse_model(name, payload)

    @classmethod
    def from_json(cls, name: str, text: str) -> ManagedModel:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ModelLoadError(f"stored model description for {name!r} is not JSON") from exc
        if not isinstance(payload, Mapping):
            raise ModelLoadError(f"stored model description for {name!r} must be an object")
        return _parse_model(name, payload)


@dataclass(frozen=True, slots=True)
class MappingPlan:
    """Lightweight mapping inferred between a stored and a current model."""

    removed_entities: tuple[str, ...]
    changed_entities: tuple[str, ...]

    @property
    def rewrites_payloads(self) -> bool:
        return bool(self.changed_entities)


def model_resource_path(name: str, resources_dir: str | Path | None = None) -> Path:
    """Return the path of ``<name>.model.toml`` (or ``.model.yaml``) in ``resources_dir``.

    The bundled resources are used when ``resources_dir`` is ``None``. When neither
    file exists the TOML path is returned so callers can report it.
    """

    stem = _validate_name(name, "model name")
    candidates = [f"{stem}{suffix}" for suffix in (MODEL_FILE_SUFFIX, MODEL_YAML_SUFFIX)]
    if resources_dir is None:
        root = resources.files(_RESOURCE_PACKAGE)
        paths = [Path(str(root.joinpath(filename))) for filename in candidates]
    else:
        paths = [Path(resources_dir).expanduser() / filename for filename in candidates]
    for path in paths:
        if path.is_file():
            return path
    return paths[0]


def load_model(name: str, resources_dir: str | Path | None = None) -> ManagedModel:
    """Load the managed object model named ``name``."""

    try:
        path = model_resource_path(name, resources_dir)
    except ValueError as exc:
        raise ModelNotFoundError(str(exc)) from exc

    if not path.is_file():
        raise ModelNotFoundError(f"unable to find data model {name!r} at {path}")

    if path.name.endswith(MODEL_YAML_SUFFIX):
        parsed = _read_yaml_model(name, path)
    else:
        parsed = _read_toml_model(name, path)

    declared = parsed.pop("name", None)
    if declared is not None and declared != name:
        raise ModelLoadError(f"data model file {path} declares name {declared!r}, expected {name!r}")
    return _parse_model(name, parsed)


def _read_toml_model(name: str, path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ModelLoadError(f"unable to load data model {name!r}: invalid TOML: {exc}") from exc
    except OSError as exc:
        raise ModelLoadError(f"unable to read data model {name!r} at {path}: {exc}") from exc


def _read_yaml_model(name: str, path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            parsed = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ModelLoadError(f"unable to load data model {name!r}: invalid YAML: {exc}") from exc
    except OSError as exc:
        raise ModelLoadError(f"unable to read data model {name!r} at {path}: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ModelLoadError(f"data model file {path} must contain a mapping at top level")
    return parsed


def infer_mapping(source: ManagedModel, destination: ManagedModel) -> MappingPlan:
    """Infer a lightweight mapping from ``source`` to ``destination``.

    Added entities and properties are allowed (defaults are filled in), removed
    ones are dropped. Attribute type changes, to-one/to-many flips, and new
    required attributes without a default have no lightweight mapping.
    """

    removed = tuple(name for name in source.entity_names if name not in destination.entity_names)
    changed: list[str] = []

    for target in destination.entities:
        if target.name not in source.entity_names:
            continue
        previous = source.entity(target.name)
        differs = previous.property_names != target.property_names

        for attr in target.attributes:
            old_attr = previous.attribute(attr.name)
            if old_attr is None:
                if previous.relationship(attr.name) is not None:
                    raise MappingInferenceError(
                        f"{target.name}.{attr.name} changed from relationship to attribute"
                    )
                if not attr.optional and attr.default is None:
                    raise MappingInferenceError(
                        f"{target.name}.{attr.name} is a new required attribute without a default"
                    )
                continue
            if old_attr.type != attr.type:
                raise MappingInferenceError(
                    f"{target.name}.{attr.name} changed type {old_attr.type} -> {attr.type}"
                )
            if old_attr.optional and not attr.optional and attr.default is None:
                raise MappingInferenceError(
                    f"{target.name}.{attr.name} became required without a default"
                )
            if old_attr != attr:
                differs = True

        for rel in target.relationships:
            old_rel = previous.relationship(rel.name)
            if old_rel is None:
                if previous.attribute(rel.name) is not None:
                    raise MappingInferenceError(
                        f"{target.name}.{rel.name} changed from attribute to relationship"
                    )
                continue
            if old_rel.to_many != rel.to_many:
                raise MappingInferenceError(f"{target.name}.{rel.name} changed cardinality")

        if differs:
            changed.append(target.name)

    return MappingPlan(removed_entities=removed, changed_entities=tuple(changed))


def _parse_model(name: str, payload: Mapping[str, object]) -> ManagedModel:
    model_name = _load_name(name, "model name")
    version = payload.get("version", 1)
    if isinstance(version, bool) or not isinstance(version, int) or version < 1:
        raise ModelLoadError(f"{model_name}: version must be an integer >= 1")

    unknown = sorted(key for key in payload if key not in {"version", "entities", "name"})
    if unknown:
        raise ModelLoadError(f"{model_name}: unknown top-level keys {unknown}")

    raw_entities = payload.get("entities")
    if not isinstance(raw_entities, Mapping) or not raw_entities:
        raise ModelLoadError(f"{model_name}: at least one entity must be defined")

    entities: list[EntityDescription] = []
    for entity_name in sorted(raw_entities):
        raw_entity = raw_entities[entity_name]
        if not isinstance(raw_entity, Mapping):
            raise ModelLoadError(f"{model_name}.{entity_name}: entity must be a table")
        entities.append(_parse_entity(model_name, _load_name(entity_name, "entity name"), raw_entity))

    known = {entity.name for entity in entities}
    for entity in entities:
        for rel in entity.relationships:
            if rel.destination not in known:
                raise ModelLoadError(
                    f"{model_name}.{entity.name}.{rel.name}: unknown destination {rel.destination!r}"
                )

    return ManagedModel(name=model_name, version=version, entities=tuple(entities))


def _parse_entity(
    model_name: str, entity_name: str, payload: Mapping[str, object]
) -> EntityDescription:
    path = f"{model_name}.{entity_name}"
    unknown = sorted(key for key in payload if key not in {"attributes", "relationships"})
    if unknown:
        raise ModelLoadError(f"{path}: unknown keys {unknown}")

    raw_attributes = payload.get("attributes", {})
    raw_relationships = payload.get("relationships", {})
    if not isinstance(raw_attributes, Mapping):
        raise ModelLoadError(f"{path}.attributes must be a table")
    if not isinstance(raw_relationships, Mapping):
        raise ModelLoadError(f"{path}.relationships must be a table")

    attributes = tuple(
        _parse_attribute(path, _load_name(key, "attribute name"), raw_attributes[key])
        for key in sorted(raw_attributes)
    )
    relationships = tuple(
        _parse_relationship(path, _load_name(key, "relationship name"), raw_relationships[key])
        for key in sorted(raw_relationships)
    )
    overlap = {attr.name for attr in attributes} & {rel.name for rel in relationships}
    if overlap:
        raise ModelLoadError(f"{path}: names used as attribute and relationship: {sorted(overlap)}")
    return EntityDescription(name=entity_name, attributes=attributes, relationships=relationships)


def _parse_attribute(path: str, name: str, raw: object) -> AttributeDescription:
    definition: Mapping[str, object]
    if isinstance(raw, str):
        definition = {"type": raw}
    elif isinstance(raw, Mapping):
        definition = raw
    else:
        raise ModelLoadError(f"{path}.{name}: attribute must be a type name or a table")

    unknown = sorted(key for key in definition if key not in {"type", "optional", "default"})
    if unknown:
        raise ModelLoadError(f"{path}.{name}: unknown keys {unknown}")

    attr_type = definition.get("type")
    if attr_type not in ATTRIBUTE_TYPES:
        expected = ", ".join(ATTRIBUTE_TYPES)
        raise ModelLoadError(f"{path}.{name}: invalid type {attr_type!r}; expected one of: {expected}")
    optional = definition.get("optional", True)
    if not isinstance(optional, bool):
        raise ModelLoadError(f"{path}.{name}: optional must be a boolean")

    attr = AttributeDescription(name=name, type=attr_type, optional=optional)  # type: ignore[arg-type]
    default = definition.get("default")
    if default is not None:
        try:
            default = _coerce_attribute(path, attr, default)
        except RecordValidationError as exc:
            raise ModelLoadError(f"{path}.{name}: invalid default: {exc}") from exc
    return AttributeDescription(name=name, type=attr.type, optional=optional, default=default)


def _parse_relationship(path: str, name: str, raw: object) -> RelationshipDescription:
    if not isinstance(raw, Mapping):
        raise ModelLoadError(f"{path}.{name}: relationship must be a table")
    unknown = sorted(key for key in raw if key not in {"destination", "to_many", "inverse"})
    if unknown:
        raise ModelLoadError(f"{path}.{name}: unknown keys {unknown}")

    destination = raw.get("destination")
    if not isinstance(destination, str) or not destination.strip():
        raise ModelLoadError(f"{path}.{name}: destination must be an entity name")
    to_many = raw.get("to_many", False)
    if not isinstance(to_many, bool):
        raise ModelLoadError(f"{path}.{name}: to_many must be a boolean")
    inverse = raw.get("inverse")
    if inverse is not None and not isinstance(inverse, str):
        raise ModelLoadError(f"{path}.{name}: inverse must be a string")
    return RelationshipDescription(
        name=name, destination=destination.strip(), to_many=to_many, inverse=inverse
    )


def _coerce_attribute(entity: str, attr: AttributeDescription, value: object) -> Any:
    if value is None:
        return None
    where = f"{entity}.{attr.name}"
    if attr.type == "string":
        if not isinstance(value, str):
            raise RecordValidationError(f"{where} expects string, got {type(value).__name__}")
        return value
    if attr.type == "integer":
        if isinstance(value, bool) or not isinstance(value, int):
            raise RecordValidationError(f"{where} expects integer, got {type(value).__name__}")
        return value
    if attr.type == "float":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise RecordValidationError(f"{where} expects number, got {type(value).__name__}")
        parsed = float(value)
        if not math.isfinite(parsed):
            raise RecordValidationError(f"{where} must be finite")
        return parsed
    if attr.type == "boolean":
        if not isinstance(value, bool):
            raise RecordValidationError(f"{where} expects boolean, got {type(value).__name__}")
        return value
    if attr.type == "date":
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, str):
            try:
                datetime.fromisoformat(value)
            except ValueError as exc:
                raise RecordValidationError(f"{where} expects an ISO-8601 date") from exc
            return value
        raise RecordValidationError(f"{where} expects date, got {type(value).__name__}")

    try:
        json.dumps(value, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise RecordValidationError(f"{where} expects a JSON-serializable value") from exc
    return copy.deepcopy(value)


def _coerce_relationship(entity: str, rel: RelationshipDescription, value: object) -> Any:
    where = f"{entity}.{rel.name}"
    if rel.to_many:
        if value is None:
            return []
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise RecordValidationError(f"{where} expects a collection of record ids")
        ids = list(value)
        if not all(isinstance(item, str) and item for item in ids):
            raise RecordValidationError(f"{where} expects record id strings")
        return sorted(set(ids)) if isinstance(value, (set, frozenset)) else ids
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise RecordValidationError(f"{where} expects a record id string")
    return value


def _validate_name(value: object, label: str) -> str:
    if not isinstance(value, str) or not _NAME_PATTERN.fullmatch(value.strip()):
        raise ValueError(f"invalid {label}: {value!r}")
    return value.strip()


def _load_name(value: object, label: str) -> str:
    try:
        return _validate_name(value, label)
    except ValueError as exc:
        raise ModelLoadError(str(exc)) from exc


__all__ = [
    "ATTRIBUTE_TYPES",
    "AttributeDescription",
    "AttributeType",
    "EntityDescription",
    "ManagedModel",
    "MappingInferenceError",
    "MappingPlan",
    "ModelError",
    "ModelLoadError",
    "ModelNotFoundError",
    "RecordValidationError",
    "RelationshipDescription",
    "UnknownEntityError",
    "infer_mapping",
    "load_model",
    "model_resource_path",
]
