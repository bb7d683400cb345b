"""Managed model loading, record validation, and mapping inference tests."""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING

import pytest

from lists_store.persistence.model import (
    ManagedModel,
    MappingInferenceError,
    ModelLoadError,
    ModelNotFoundError,
    RecordValidationError,
    UnknownEntityError,
    infer_mapping,
    load_model,
)

from . import BASE_TS, LISTS_BREAKING_MODEL, LISTS_V2_MODEL, lists_model, write_model

if TYPE_CHECKING:
    from pathlib import Path


def test_bundled_lists_model_loads() -> None:
    model = lists_model()

    assert model.name == "Lists"
    assert model.version == 1
    assert set(model.entity_names) == {"List", "Item"}
    items = model.entity("List").relationship("items")
    assert items is not None
    assert items.destination == "Item"
    assert items.to_many is True


def test_checksum_is_deterministic_and_ignores_name() -> None:
    model = lists_model()
    renamed = ManagedModel.from_json("Archive", model.to_json())

    assert len(model.checksum) == 64
    assert lists_model().checksum == model.checksum
    assert renamed.checksum == model.checksum
    assert renamed.name == "Archive"


def test_missing_model_raises_not_found(tmp_path: Path) -> None:
    with pytest.raises(ModelNotFoundError):
        load_model("Nope", tmp_path)
    with pytest.raises(ModelNotFoundError):
        load_model("../escape", tmp_path)


@pytest.mark.parametrize(
    ("text", "fragment"),
    [
        ("version = [", "invalid TOML"),
        ("[entities.A.attributes]\nx = 'decimal'", "invalid type"),
        ("[entities.A.relationships]\nr = { destination = 'B' }", "unknown destination"),
        ("version = 0\n[entities.A.attributes]\nx = 'string'", "version"),
        ("[entities.A.attributes]\nx = { type = 'integer', default = 'one' }", "invalid default"),
    ],
)
def test_invalid_model_files_raise_load_error(tmp_path: Path, text: str, fragment: str) -> None:
    write_model(tmp_path, "Broken", text)

    with pytest.raises(ModelLoadError, match=fragment):
        load_model("Broken", tmp_path)


def test_yaml_model_file_matches_toml_model(tmp_path: Path) -> None:
    (tmp_path / "Lists.model.yaml").write_text(
        """
version: 1
entities:
  List:
    attributes:
      name: {type: string, optional: false}
      created_at: {type: date, optional: false}
    relationships:
      items: {destination: Item, to_many: true, inverse: list}
  Item:
    attributes:
      name: {type: string, optional: false}
      done: {type: boolean, optional: false, default: false}
      created_at: {type: date}
    relationships:
      list: {destination: List, inverse: items}
""".lstrip(),
        encoding="utf-8",
    )

    assert load_model("Lists", tmp_path).checksum == lists_model().checksum


def test_toml_model_file_wins_over_yaml(tmp_path: Path) -> None:
    write_model(tmp_path, "Lists", LISTS_V2_MODEL)
    (tmp_path / "Lists.model.yaml").write_text("version: [\n", encoding="utf-8")

    assert load_model("Lists", tmp_path).version == 2


@pytest.mark.parametrize(
    ("text", "fragment"), [("version: [\n", "invalid YAML"), ("- a\n- b\n", "mapping")]
)
def test_invalid_yaml_model_files_raise_load_error(
    tmp_path: Path, text: str, fragment: str
) -> None:
    (tmp_path / "Broken.model.yaml").write_text(text, encoding="utf-8")

    with pytest.raises(ModelLoadError, match=fragment):
        load_model("Broken", tmp_path)


def test_normalize_values_applies_defaults_and_coerces_dates() -> None:
    item = lists_model().entity("Item")

    values = item.normalize_values({"name": "milk", "created_at": date(2026, 2, 1)}, partial=False)

    assert values == {"name": "milk", "done": False, "created_at": "2026-02-01", "list": None}


def test_normalize_values_rejects_bad_records() -> None:
    entity = lists_model().entity("List")

    with pytest.raises(RecordValidationError, match="unknown properties"):
        entity.normalize_values({"name": "x", "created_at": BASE_TS, "colour": "red"}, partial=False)
    with pytest.raises(RecordValidationError, match="required"):
        entity.normalize_values({"created_at": BASE_TS}, partial=False)
    with pytest.raises(RecordValidationError, match="expects string"):
        entity.normalize_values({"name": 3}, partial=True)
    with pytest.raises(RecordValidationError, match="ISO-8601"):
        entity.normalize_values({"created_at": "yesterday"}, partial=True)
    with pytest.raises(RecordValidationError, match="record id"):
        entity.normalize_values({"items": "not-a-list"}, partial=True)


def test_partial_normalization_only_checks_given_keys() -> None:
    entity = lists_model().entity("List")

    assert entity.normalize_values({"name": "renamed"}, partial=True) == {"name": "renamed"}


def test_unknown_entity_raises() -> None:
    with pytest.raises(UnknownEntityError):
        lists_model().entity("Tag")


def test_infer_mapping_for_added_attributes(tmp_path: Path) -> None:
    write_model(tmp_path, "Lists", LISTS_V2_MODEL)
    current = load_model("Lists", tmp_path)

    plan = infer_mapping(lists_model(), current)

    assert plan.removed_entities == ()
    assert plan.changed_entities == ("List",)
    assert plan.rewrites_payloads is True


def test_infer_mapping_reports_removed_entities() -> None:
    source = lists_model()
    destination = ManagedModel.from_mapping(
        "Lists",
        {
            "version": 2,
            "entities": {
                "List": {
                    "attributes": {
                        "name": {"type": "string", "optional": False},
                        "created_at": {"type": "date", "optional": False},
                    },
                }
            },
        },
    )

    plan = infer_mapping(source, destination)

    assert plan.removed_entities == ("Item",)
    assert plan.changed_entities == ("List",)


def test_infer_mapping_rejects_type_changes(tmp_path: Path) -> None:
    write_model(tmp_path, "Lists", LISTS_BREAKING_MODEL)

    with pytest.raises(MappingInferenceError, match="changed type"):
        infer_mapping(lists_model(), load_model("Lists", tmp_path))


def test_infer_mapping_rejects_new_required_attribute_without_default() -> None:
    source = lists_model()
    payload = source.as_dict()
    entities = payload["entities"]
    assert isinstance(entities, dict)
    entities["Item"]["attributes"]["quantity"] = {"type": "integer", "optional": False}

    with pytest.raises(MappingInferenceError, match="without a default"):
        infer_mapping(source, ManagedModel.from_mapping("Lists", payload))
