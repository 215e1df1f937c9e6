"""
Model registry - discovers exported model versions on disk.

Directory layout::

    <models_root>/
    └── skystate/                 ← task directory
        ├── v1/
        │   ├── model.onnx        ← artifact
        │   ├── classes.json      ← {"clear": 0, "cloudy": 1, ...}
        │   └── meta.json         ← optional, at least {"created_at": ...}
        └── v2/

"Latest" is the lexicographically greatest version directory name. This
is only equal to the numerically newest version while all version numbers
share the same digit width ("v9" sorts after "v10"); exporters should
zero-pad (v01, v02, ...) if they expect more than nine versions.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from skyclf.exceptions import ModelDataError

logger = logging.getLogger(__name__)

DEFAULT_TASK = "skystate"
DEFAULT_VERSION_PREFIX = "v"
DEFAULT_ARTIFACT_NAME = "model.onnx"
CLASSES_FILE_NAME = "classes.json"
META_FILE_NAME = "meta.json"


@dataclass(frozen=True)
class ModelVersion:
    """One exported, validated model version. Never mutated after a scan.

    ``classes`` and ``meta`` are read-only mappings.
    """

    version: str
    directory: Path
    artifact_path: Path
    classes: Mapping[str, int]
    class_names: Tuple[str, ...]
    created_at: Optional[str] = None
    meta: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def num_classes(self) -> int:
        return len(self.class_names)


def _task_root(models_root: Union[str, Path], task: str) -> Path:
    return Path(models_root) / task


def list_versions(
    models_root: Union[str, Path],
    task: str = DEFAULT_TASK,
    prefix: str = DEFAULT_VERSION_PREFIX,
) -> List[str]:
    """Return version directory names under the task root, sorted by name.

    Only the directory name is checked here; use :func:`find_model` to
    validate a version's contents. An absent root yields an empty list.
    """
    root = _task_root(models_root, task)
    try:
        entries = list(root.iterdir())
    except FileNotFoundError:
        return []
    except OSError as e:
        raise ModelDataError(f"read models root {root}: {e}")

    return sorted(e.name for e in entries if e.is_dir() and e.name.startswith(prefix))


def find_model(
    models_root: Union[str, Path],
    version: str = "",
    *,
    task: str = DEFAULT_TASK,
    prefix: str = DEFAULT_VERSION_PREFIX,
    artifact_name: str = DEFAULT_ARTIFACT_NAME,
) -> Optional[ModelVersion]:
    """Resolve a model version, or the latest one if ``version`` is empty.

    Returns:
        The validated :class:`ModelVersion`, or ``None`` when nothing has been
        trained yet (no root, no version directories, unknown version, or a
        version directory without its artifact file).

    Raises:
        ModelDataError: The version exists but its class map is broken.
    """
    versions = list_versions(models_root, task=task, prefix=prefix)
    if not versions:
        return None

    if not version:
        version = versions[-1]
    elif version not in versions:
        return None

    directory = _task_root(models_root, task) / version
    artifact_path = directory / artifact_name
    if not artifact_path.is_file():
        logger.debug(f"No artifact at {artifact_path}, treating as no model")
        return None

    classes = _read_classes(directory / CLASSES_FILE_NAME)
    class_names = _index_to_names(classes)
    meta = _read_meta(directory / META_FILE_NAME)

    created_at = meta.get("created_at")
    return ModelVersion(
        version=version,
        directory=directory.resolve(),
        artifact_path=artifact_path.resolve(),
        classes=MappingProxyType(classes),
        class_names=class_names,
        created_at=str(created_at) if created_at is not None else None,
        meta=MappingProxyType(meta),
    )


def find_version(
    models_root: Union[str, Path], version: str = "", **kwargs
) -> Optional[ModelVersion]:
    """Alias of :func:`find_model`; an empty version means latest."""
    return find_model(models_root, version, **kwargs)


def _read_classes(path: Path) -> Dict[str, int]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ModelDataError(f"read {CLASSES_FILE_NAME}: {path} not found")
    except (OSError, ValueError) as e:
        raise ModelDataError(f"parse {CLASSES_FILE_NAME}: {e}")

    if not isinstance(raw, dict):
        raise ModelDataError(f"{CLASSES_FILE_NAME} must map class name to index")

    classes: Dict[str, int] = {}
    for name, idx in raw.items():
        # bool is an int subclass; true/false are not class indices
        if isinstance(idx, bool) or not isinstance(idx, int):
            raise ModelDataError(
                f"{CLASSES_FILE_NAME} index for {name!r} is not an integer: {idx!r}"
            )
        classes[name] = idx
    return classes


def _index_to_names(classes: Dict[str, int]) -> Tuple[str, ...]:
    """Invert name→index into a dense index→name tuple."""
    if not classes:
        raise ModelDataError(f"{CLASSES_FILE_NAME} empty")

    max_idx = max(classes.values())
    if max_idx < 0:
        raise ModelDataError(f"{CLASSES_FILE_NAME} empty")

    names: List[Optional[str]] = [None] * (max_idx + 1)
    for name, idx in classes.items():
        if not name:
            raise ModelDataError(f"{CLASSES_FILE_NAME} has an empty name for id {idx}")
        if idx < 0:
            raise ModelDataError(f"{CLASSES_FILE_NAME} has negative id {idx} for {name!r}")
        if names[idx] is not None:
            raise ModelDataError(
                f"{CLASSES_FILE_NAME} has duplicate id {idx} ({names[idx]!r}, {name!r})"
            )
        names[idx] = name

    for i, name in enumerate(names):
        if name is None:
            raise ModelDataError(f"{CLASSES_FILE_NAME} missing name for id {i}")
    return tuple(names)


def _read_meta(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        meta = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable {path}: {e}")
        return {}
    if not isinstance(meta, dict):
        logger.warning(f"Ignoring {path}: expected a JSON object")
        return {}
    return meta
