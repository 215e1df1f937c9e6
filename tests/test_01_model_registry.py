"""Model registry: version discovery and class map validation.

1. Latest version resolution and explicit versions
2. "No model yet" cases return None
3. Broken classes.json raises ModelDataError
4. meta.json is optional

Run: pytest tests/test_01_model_registry.py
"""

import dataclasses

import pytest

from conftest import write_model
from skyclf.exceptions import ModelDataError
from skyclf.services.model_registry import find_model, find_version, list_versions

SKY_CLASSES = {"clear": 0, "cloudy": 1, "overcast": 2}


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def test_latest_version_is_selected(models_root):
    write_model(models_root, "v1", {"clear": 0, "cloudy": 1})
    write_model(models_root, "v2", SKY_CLASSES)

    model = find_model(models_root)

    assert model is not None
    assert model.version == "v2"
    assert model.class_names == ("clear", "cloudy", "overcast")
    assert model.num_classes == 3
    assert model.artifact_path == (models_root / "skystate" / "v2" / "model.onnx").resolve()
    assert model.artifact_path.is_absolute()


def test_explicit_version(models_root):
    write_model(models_root, "v1", {"clear": 0, "cloudy": 1})
    write_model(models_root, "v2", SKY_CLASSES)

    model = find_version(models_root, "v1")

    assert model.version == "v1"
    assert model.class_names == ("clear", "cloudy")


def test_unknown_version_returns_none(models_root):
    write_model(models_root, "v1", SKY_CLASSES)
    assert find_model(models_root, "v7") is None


def test_latest_uses_name_order(models_root):
    # Names compare as strings: "v9" sorts after "v10"
    write_model(models_root, "v10", SKY_CLASSES)
    write_model(models_root, "v9", SKY_CLASSES)

    assert list_versions(models_root) == ["v10", "v9"]
    assert find_model(models_root).version == "v9"


def test_entries_without_prefix_are_ignored(models_root):
    write_model(models_root, "v1", SKY_CLASSES)
    (models_root / "skystate" / "scratch").mkdir()
    (models_root / "skystate" / "v3.txt").write_text("not a directory")

    assert list_versions(models_root) == ["v1"]
    assert find_model(models_root).version == "v1"


def test_custom_task_and_prefix(models_root):
    write_model(models_root, "r1", {"day": 0, "night": 1}, task="daynight")

    model = find_model(models_root, task="daynight", prefix="r")

    assert model.version == "r1"
    assert model.class_names == ("day", "night")


def test_model_version_is_immutable(models_root):
    write_model(models_root, "v1", SKY_CLASSES)
    model = find_model(models_root)

    with pytest.raises(dataclasses.FrozenInstanceError):
        model.version = "v2"


# ---------------------------------------------------------------------------
# No model yet
# ---------------------------------------------------------------------------

def test_missing_root_returns_none(tmp_path):
    assert list_versions(tmp_path / "nowhere") == []
    assert find_model(tmp_path / "nowhere") is None


def test_empty_task_dir_returns_none(models_root):
    (models_root / "skystate").mkdir()
    assert find_model(models_root) is None


def test_missing_artifact_returns_none(models_root):
    write_model(models_root, "v1", SKY_CLASSES, artifact=False)
    assert find_model(models_root) is None


def test_missing_artifact_in_latest_does_not_fall_back(models_root):
    write_model(models_root, "v1", SKY_CLASSES)
    write_model(models_root, "v2", SKY_CLASSES, artifact=False)

    assert find_model(models_root) is None


# ---------------------------------------------------------------------------
# Class map validation
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("count", [1, 2, 5, 8])
def test_dense_class_maps_are_accepted(models_root, count):
    classes = {f"class_{i}": i for i in range(count)}
    write_model(models_root, "v1", classes)

    names = find_model(models_root).class_names

    assert len(names) == count
    assert all(names)
    assert all(names[idx] == name for name, idx in classes.items())


def test_gap_in_ids_is_rejected(models_root):
    write_model(models_root, "v1", {"a": 0, "c": 2})

    with pytest.raises(ModelDataError, match="missing name for id 1"):
        find_model(models_root)


@pytest.mark.parametrize(
    "classes, message",
    [
        ({}, "empty"),
        ('{"a": 0, "b": 0}', "duplicate id 0"),
        ('{"": 0, "a": 0}', "empty name for id 0"),
        ({"": 0}, "empty name for id 0"),
        ({"clear": 0, "": 1}, "empty name for id 1"),
        ({"a": -1}, "empty"),
        ({"a": 0, "b": -2}, "negative id"),
        ({"a": "0"}, "not an integer"),
        ({"a": 1.5}, "not an integer"),
        ({"a": True}, "not an integer"),
        (["clear", "cloudy"], "must map class name"),
        ("{not json", "parse classes.json"),
    ],
)
def test_broken_class_maps_are_rejected(models_root, classes, message):
    write_model(models_root, "v1", classes)

    with pytest.raises(ModelDataError, match=message):
        find_model(models_root)


def test_missing_classes_file_is_rejected(models_root):
    write_model(models_root, "v1", None)

    with pytest.raises(ModelDataError, match="not found"):
        find_model(models_root)


# ---------------------------------------------------------------------------
# meta.json
# ---------------------------------------------------------------------------

def test_meta_created_at(models_root):
    write_model(models_root, "v1", SKY_CLASSES, meta={"created_at": "2024-05-01T10:00:00Z", "epochs": 3})

    model = find_model(models_root)

    assert model.created_at == "2024-05-01T10:00:00Z"
    assert model.meta["epochs"] == 3


def test_meta_is_optional(models_root):
    write_model(models_root, "v1", SKY_CLASSES)

    model = find_model(models_root)

    assert model.created_at is None
    assert model.meta == {}


@pytest.mark.parametrize("meta", ["{broken", "[1, 2]"])
def test_unreadable_meta_is_ignored(models_root, meta):
    write_model(models_root, "v1", SKY_CLASSES, meta=meta)

    model = find_model(models_root)

    assert model is not None
    assert model.created_at is None


def test_class_and_meta_maps_are_read_only(models_root):
    write_model(models_root, "v1", SKY_CLASSES, meta={"created_at": "2024-05-01"})
    model = find_model(models_root)

    with pytest.raises(TypeError):
        model.classes["fog"] = 3
    with pytest.raises(TypeError):
        model.meta["created_at"] = "tomorrow"
    assert dict(model.classes) == SKY_CLASSES
