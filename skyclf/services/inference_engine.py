"""
Inference engine - serves the active sky state model and hot-swaps it.

One fixed input/output buffer pair is bound to each ONNX Runtime session,
so predictions and the reload swap serialize on a single lock. A reload
builds the complete new session before touching the active model, swaps
the reference under the lock and only then releases the old session; a
request therefore sees either the old model or the new one, never a
half-built one, and a failed build leaves the old model serving.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import numpy as np
import onnxruntime as ort

from skyclf.exceptions import EngineClosedError, InferenceError, ModelDataError, SkyClfError
from skyclf.services.model_registry import (
    DEFAULT_ARTIFACT_NAME,
    DEFAULT_TASK,
    DEFAULT_VERSION_PREFIX,
    ModelVersion,
    find_model,
)
from skyclf.services.preprocessing import INPUT_SHAPE, preprocess_image

logger = logging.getLogger(__name__)


@dataclass
class Prediction:
    """Result of classifying one image."""

    label: str
    confidence: float
    probs: Dict[str, float] = field(default_factory=dict)
    task: str = DEFAULT_TASK
    model_version: str = ""
    model_path: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "skystate": self.label,
            "confidence": self.confidence,
            "probs": dict(self.probs),
            "task": self.task,
            "model_version": self.model_version,
            "model_path": self.model_path,
        }


def softmax(logits: np.ndarray) -> np.ndarray:
    """Numerically stable softmax over a 1-D logit vector.

    The max logit is subtracted before exponentiating. If the denominator
    is zero (or not finite) an all-zero vector is returned.
    """
    logits = np.asarray(logits, dtype=np.float64)
    out = np.zeros(logits.shape, dtype=np.float64)
    if logits.size == 0:
        return out

    shifted = np.exp(logits - np.max(logits))
    total = float(np.sum(shifted))
    if total == 0.0 or not np.isfinite(total):
        return out
    return shifted / total


class OnnxSession:
    """ONNX Runtime session bound once to preallocated NumPy buffers."""

    def __init__(
        self,
        model: ModelVersion,
        input_buffer: np.ndarray,
        output_buffer: np.ndarray,
        base_dir: Optional[Path] = None,
    ):
        # External data files (model.onnx.data) are resolved by ONNX Runtime
        # relative to the model file, so the artifact is opened from its
        # absolute location inside base_dir.
        base_dir = Path(base_dir or model.directory)
        model_path = base_dir / model.artifact_path.name

        self._session = ort.InferenceSession(
            str(model_path), providers=["CPUExecutionProvider"]
        )
        self.input_name = self._session.get_inputs()[0].name
        output = self._session.get_outputs()[0]
        self.output_name = output.name

        declared = output.shape[-1] if output.shape else None
        if isinstance(declared, int) and declared != output_buffer.shape[-1]:
            raise ModelDataError(
                f"{model_path} outputs {declared} classes but classes.json lists "
                f"{output_buffer.shape[-1]}"
            )

        self._binding = self._session.io_binding()
        self._binding.bind_input(
            name=self.input_name,
            device_type="cpu",
            device_id=0,
            element_type=np.float32,
            shape=input_buffer.shape,
            buffer_ptr=input_buffer.ctypes.data,
        )
        self._binding.bind_output(
            name=self.output_name,
            device_type="cpu",
            device_id=0,
            element_type=np.float32,
            shape=output_buffer.shape,
            buffer_ptr=output_buffer.ctypes.data,
        )

    def run(self) -> None:
        self._session.run_with_iobinding(self._binding)

    def close(self) -> None:
        if self._session is None:
            return
        self._binding.clear_binding_inputs()
        self._binding.clear_binding_outputs()
        self._binding = None
        self._session = None


SessionFactory = Callable[[ModelVersion, np.ndarray, np.ndarray], Any]


class ActiveModel:
    """A loaded session together with its bound buffers and source version."""

    def __init__(
        self,
        version: ModelVersion,
        session: Any,
        input_buffer: np.ndarray,
        output_buffer: np.ndarray,
    ):
        self.version = version
        self.session = session
        self.input_buffer = input_buffer
        self.output_buffer = output_buffer

    def run(self, tensor: np.ndarray) -> np.ndarray:
        """Copy ``tensor`` into the bound input, run, return a copy of the logits."""
        np.copyto(self.input_buffer, tensor)
        self.session.run()
        return self.output_buffer[0].copy()

    def close(self) -> None:
        try:
            self.session.close()
        except Exception as e:
            logger.warning(f"Error releasing session for {self.version.version}: {e}")


class InferenceEngine:
    """Owns the single servable model and replaces it on reload."""

    def __init__(
        self,
        models_dir: Union[str, Path],
        *,
        task: str = DEFAULT_TASK,
        version_prefix: str = DEFAULT_VERSION_PREFIX,
        artifact_name: str = DEFAULT_ARTIFACT_NAME,
        session_factory: Optional[SessionFactory] = None,
    ):
        self._models_dir = Path(models_dir)
        self.task = task
        self.version_prefix = version_prefix
        self.artifact_name = artifact_name
        self._session_factory = session_factory or OnnxSession

        # Guards the active model and its buffers
        self._lock = threading.Lock()
        # Serializes reloads so one artifact is built at most once
        self._reload_lock = threading.Lock()

        self._active: Optional[ActiveModel] = None
        self._closed = False

    @classmethod
    def from_models_dir(cls, models_dir: Union[str, Path], **kwargs) -> "InferenceEngine":
        """Create an engine and load the latest model, if one exists."""
        engine = cls(models_dir, **kwargs)
        logger.info(f"🔎 Scanning models in {engine.models_dir}")
        engine.reload()
        return engine

    # ==================== Public API ====================

    @property
    def models_dir(self) -> Path:
        return self._models_dir

    @property
    def loaded(self) -> bool:
        with self._lock:
            return self._active is not None

    @property
    def active_version(self) -> Optional[ModelVersion]:
        with self._lock:
            return self._active.version if self._active else None

    def predict(self, image_path: Union[str, Path]) -> Optional[Prediction]:
        """Classify one image with the active model.

        Returns:
            The prediction, or ``None`` when no model is loaded yet.

        Raises:
            ImagePreprocessError: The image cannot be read or decoded.
            InferenceError: The session failed to run.
            EngineClosedError: The engine has been closed.
        """
        self._ensure_open()
        if not self.loaded:
            return None

        start = time.perf_counter()
        tensor = preprocess_image(image_path)

        with self._lock:
            if self._closed:
                raise EngineClosedError("inference engine is closed")
            active = self._active
            if active is None:
                return None
            try:
                logits = active.run(tensor)
            except Exception as e:
                raise InferenceError(f"onnx run: {e}")
            model = active.version

        probs = softmax(logits)
        best_idx = int(np.argmax(probs))
        result = Prediction(
            label=model.class_names[best_idx],
            confidence=float(probs[best_idx]),
            probs={name: float(p) for name, p in zip(model.class_names, probs)},
            task=self.task,
            model_version=model.version,
            model_path=model.artifact_path.as_posix(),
        )

        logger.debug(
            f"prediction: {result.label} ({result.confidence * 100:.1f}%) "
            f"took {(time.perf_counter() - start) * 1000:.1f}ms"
        )
        return result

    def reload(self, models_dir: Optional[Union[str, Path]] = None, version: str = "") -> bool:
        """Load the latest (or the given) model version and swap it in.

        Returns:
            True if a new model became active; False if the resolved model is
            already active or no model exists yet.

        Raises:
            ModelDataError: The resolved version is malformed.
            InferenceError: The new session could not be built.
            EngineClosedError: The engine has been closed.
        """
        self._ensure_open()
        root = Path(models_dir) if models_dir else self._models_dir

        with self._reload_lock:
            logger.info(f"♻️ Reloading models from {root} (version={version or 'latest'})")
            model = find_model(
                root,
                version,
                task=self.task,
                prefix=self.version_prefix,
                artifact_name=self.artifact_name,
            )
            if model is None:
                logger.info("No model found during reload")
                return False

            with self._lock:
                current = self._active
                if current is not None and current.version.artifact_path == model.artifact_path:
                    logger.info(f"Model unchanged: {model.version}")
                    return False

            logger.info(
                f"Loading new model: {model.artifact_path} "
                f"(version={model.version}, classes={list(model.class_names)})"
            )
            new_active = self._build(model)

            with self._lock:
                if self._closed:
                    new_active.close()
                    raise EngineClosedError("inference engine closed during reload")
                old_active = self._active
                self._active = new_active
                self._models_dir = root

            # Released strictly after the swap; no request can still hold it
            if old_active is not None:
                old_active.close()

        logger.info(f"✅ Model reloaded: {model.artifact_path} (version={model.version})")
        return True

    def model_summary(self) -> Dict[str, Any]:
        with self._lock:
            model = self._active.version if self._active else None
        if model is None:
            return {"active": None}
        return {
            "active": model.version,
            "path": model.artifact_path.as_posix(),
            "classes": list(model.class_names),
            "created_at": model.created_at,
        }

    def close(self) -> None:
        """Release the active session. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            active, self._active = self._active, None

        if active is not None:
            active.close()
        logger.info("Inference engine closed")

    # ==================== Internals ====================

    def _ensure_open(self) -> None:
        if self._closed:
            raise EngineClosedError("inference engine is closed")

    def _build(self, model: ModelVersion) -> ActiveModel:
        input_buffer = np.zeros(INPUT_SHAPE, dtype=np.float32)
        output_buffer = np.zeros((1, model.num_classes), dtype=np.float32)
        try:
            session = self._session_factory(model, input_buffer, output_buffer)
        except SkyClfError:
            raise
        except Exception as e:
            raise InferenceError(f"create session for {model.artifact_path}: {e}")
        return ActiveModel(model, session, input_buffer, output_buffer)
