"""Shared fixtures: on-disk model exports, a fake ONNX session and a fake Docker."""

import itertools
import json
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pytest
from PIL import Image

from skyclf.exceptions import RemoteFailure
from skyclf.services.container_platform import ContainerInfo, WaitResult, decode_log_frames

TRAINER_NAME = "skyclf-trainer"
IDLE_CMD = ["sleep", "infinity"]


# ---------------------------------------------------------------------------
# Model exports
# ---------------------------------------------------------------------------

def write_model(
    models_root: Path,
    version: str,
    classes: Any = None,
    *,
    artifact: bool = True,
    meta: Any = None,
    task: str = "skystate",
) -> Path:
    """Create ``<models_root>/<task>/<version>/`` with the requested files."""
    directory = Path(models_root) / task / version
    directory.mkdir(parents=True, exist_ok=True)
    if artifact:
        (directory / "model.onnx").write_bytes(b"\x08\x07fake-onnx")
    if classes is not None:
        text = classes if isinstance(classes, str) else json.dumps(classes)
        (directory / "classes.json").write_text(text, encoding="utf-8")
    if meta is not None:
        text = meta if isinstance(meta, str) else json.dumps(meta)
        (directory / "meta.json").write_text(text, encoding="utf-8")
    return directory


@pytest.fixture
def models_root(tmp_path):
    root = tmp_path / "models"
    root.mkdir()
    return root


@pytest.fixture
def image_path(tmp_path):
    path = tmp_path / "images" / "latest.jpg"
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", (64, 48), (10, 120, 200)).save(path)
    return path


# ---------------------------------------------------------------------------
# Fake ONNX Runtime session
# ---------------------------------------------------------------------------

class FakeSession:
    """Writes logits 0, 1, ..., n-1 so the last class always wins."""

    def __init__(self, model, input_buffer: np.ndarray, output_buffer: np.ndarray):
        self.model = model
        self.input_buffer = input_buffer
        self.output_buffer = output_buffer
        self.closed = False
        self.runs = 0

    def run(self) -> None:
        if self.closed:
            raise RuntimeError("session used after release")
        assert self.input_buffer.shape == (1, 3, 224, 224)
        n = self.output_buffer.shape[-1]
        self.output_buffer[0, :] = np.arange(n, dtype=np.float32)
        self.runs += 1

    def close(self) -> None:
        self.closed = True


class FakeSessionFactory:
    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.sessions: List[FakeSession] = []
        self._lock = threading.Lock()

    @property
    def builds(self) -> int:
        return len(self.sessions)

    def __call__(self, model, input_buffer, output_buffer) -> FakeSession:
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise RuntimeError("invalid protobuf")
        session = FakeSession(model, input_buffer, output_buffer)
        with self._lock:
            self.sessions.append(session)
        return session


@pytest.fixture
def session_factory():
    return FakeSessionFactory()


# ---------------------------------------------------------------------------
# Fake container platform
# ---------------------------------------------------------------------------

class FakeContainer:
    def __init__(self, container_id: str, name: str, config: Dict, host_config: Dict):
        self.id = container_id
        self.name = name
        self.config = config
        self.host_config = host_config
        self.running = False
        self.exit_code: Optional[int] = None
        self.exited = threading.Event()

    def finish(self, code: int) -> None:
        self.running = False
        if self.exit_code is None:
            self.exit_code = code
        self.exited.set()


class FakeContainerPlatform:
    """In-memory stand-in for ContainerPlatform, safe to call from worker threads."""

    def __init__(self, name: str = TRAINER_NAME, with_idle: bool = True):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.containers: Dict[str, FakeContainer] = {}
        self.calls: List[tuple] = []
        # op name -> exception raised by the next call of that op
        self.failures: Dict[str, Exception] = {}
        self.log_bytes = b""
        self.start_delay = 0.0
        self.inspect_delay = 0.0
        self.wait_timeout = 5.0
        self.closed = False
        if with_idle:
            config = {"Image": "skyclf/trainer:latest", "Cmd": list(IDLE_CMD), "Env": ["A=1"]}
            host_config = {"Binds": ["/data:/data"], "Memory": 1 << 30}
            container_id = self.create(config, host_config, name)
            self.start(container_id)
            self.calls.clear()

    # -- helpers for tests --------------------------------------------------

    def container(self, name: str = TRAINER_NAME) -> Optional[FakeContainer]:
        with self._lock:
            return self.containers.get(name)

    def finish(self, code: int = 0, name: str = TRAINER_NAME) -> None:
        container = self.container(name)
        assert container is not None, f"no container {name}"
        container.finish(code)

    def ops(self) -> List[str]:
        return [c[0] for c in self.calls]

    def _record(self, op: str, *args) -> None:
        self.calls.append((op,) + args)
        failure = self.failures.pop(op, None)
        if failure is not None:
            raise failure

    def _by_id(self, container_id: str) -> FakeContainer:
        for container in self.containers.values():
            if container.id == container_id:
                return container
        raise RemoteFailure(f"no such container: {container_id}", operation="lookup")

    # -- ContainerPlatform interface -----------------------------------------

    def inspect(self, name: str) -> Optional[ContainerInfo]:
        if self.inspect_delay:
            time.sleep(self.inspect_delay)
        with self._lock:
            self._record("inspect", name)
            container = self.containers.get(name)
            if container is None:
                return None
            return ContainerInfo(
                id=container.id,
                name=name,
                running=container.running,
                status="running" if container.running else "exited",
                command=list(container.config.get("Cmd") or []),
                config=dict(container.config),
                host_config=dict(container.host_config),
            )

    def remove(self, name: str, force: bool = True) -> None:
        with self._lock:
            self._record("remove", name)
            container = self.containers.pop(name, None)
            if container is None:
                raise RemoteFailure(f"No such container: {name}", operation="remove")
        container.finish(137)

    def create(self, config: Dict, host_config: Dict, name: str) -> str:
        with self._lock:
            self._record("create", name, list(config.get("Cmd") or []))
            if name in self.containers:
                raise RemoteFailure(f"Conflict. The container name {name} is already in use", operation="create")
            container_id = f"c{next(self._ids):04d}"
            self.containers[name] = FakeContainer(container_id, name, dict(config), dict(host_config))
            return container_id

    def start(self, container_id: str) -> None:
        if self.start_delay:
            time.sleep(self.start_delay)
        with self._lock:
            self._record("start", container_id)
            self._by_id(container_id).running = True

    def stop(self, container_id: str, timeout: int) -> None:
        with self._lock:
            self._record("stop", container_id, timeout)
            container = self._by_id(container_id)
        container.finish(137)

    def wait(self, container_id: str) -> WaitResult:
        with self._lock:
            self._record("wait", container_id)
            container = self._by_id(container_id)
        deadline = time.monotonic() + self.wait_timeout
        while not container.exited.wait(0.01):
            if self.closed:
                raise RemoteFailure("wait container: platform closed", operation="wait")
            if time.monotonic() > deadline:
                raise RemoteFailure("wait timed out", operation="wait")
        return WaitResult(status_code=container.exit_code)

    def logs(self, container_id: str, tail: int) -> str:
        with self._lock:
            self._record("logs", container_id, tail)
            return decode_log_frames(self.log_bytes)

    def close(self) -> None:
        # Running containers keep running; pending waits notice the flag
        self.closed = True


def frame(payload: bytes, stream: int = 1) -> bytes:
    return bytes([stream, 0, 0, 0]) + len(payload).to_bytes(4, "big") + payload


@pytest.fixture
def platform():
    fake = FakeContainerPlatform()
    yield fake
    fake.close()
