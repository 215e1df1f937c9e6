"""
Container platform adapter - the only way the orchestrator talks to Docker.

Wraps the low-level Docker SDK client (``docker.APIClient``). Every call is
blocking; callers run them in worker threads with their own timeout. All
SDK and transport errors surface as :class:`RemoteFailure`.
"""

import logging
import struct
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import docker
import requests
from docker.errors import DockerException, NotFound

from skyclf.exceptions import RemoteFailure

logger = logging.getLogger(__name__)

LOG_FRAME_HEADER_SIZE = 8

# Long waits are issued as short requests so close() can end them
WAIT_POLL_SECONDS = 5.0


@dataclass
class ContainerInfo:
    """Subset of a container inspect result."""

    id: str
    name: str
    running: bool
    status: str = ""
    command: List[str] = field(default_factory=list)
    config: Dict[str, Any] = field(default_factory=dict)
    host_config: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_inspect(cls, data: Dict[str, Any]) -> "ContainerInfo":
        state = data.get("State") or {}
        config = data.get("Config") or {}
        return cls(
            id=data.get("Id", ""),
            name=(data.get("Name") or "").lstrip("/"),
            running=bool(state.get("Running")),
            status=state.get("Status", ""),
            command=list(config.get("Cmd") or []),
            config=dict(config),
            host_config=dict(data.get("HostConfig") or {}),
        )


@dataclass
class WaitResult:
    """Outcome of waiting for a container to stop running."""

    status_code: int
    error: Optional[str] = None


def decode_log_frames(data: bytes) -> str:
    """Strip Docker's multiplexed log framing and join the payloads.

    Each chunk is an 8-byte header (stream type, 3 reserved bytes, 4-byte
    big-endian payload length) followed by the payload. Payloads are
    concatenated in order regardless of stream; a declared length larger
    than the remaining bytes is clamped. A trailing partial header is dropped.
    """
    parts: List[bytes] = []
    offset = 0
    while len(data) - offset >= LOG_FRAME_HEADER_SIZE:
        (size,) = struct.unpack(">I", data[offset + 4 : offset + LOG_FRAME_HEADER_SIZE])
        offset += LOG_FRAME_HEADER_SIZE
        size = min(size, len(data) - offset)
        if size > 0:
            parts.append(data[offset : offset + size])
        offset += size
    return b"".join(parts).decode("utf-8", errors="replace")


class ContainerPlatform:
    """Blocking Docker Engine operations addressed by container name or id."""

    def __init__(self, api: docker.APIClient, wait_poll_seconds: float = WAIT_POLL_SECONDS):
        self.api = api
        self.wait_poll_seconds = wait_poll_seconds
        self._closed = threading.Event()

    @classmethod
    def from_env(cls, timeout: float = 60.0) -> "ContainerPlatform":
        """Connect using DOCKER_HOST / DOCKER_TLS_VERIFY / DOCKER_CERT_PATH.

        The SDK request timeout equals ``timeout``, so a blocking call gives up
        no later than the caller that awaits it.

        Raises:
            RemoteFailure: The Docker daemon is unreachable.
        """
        try:
            client = docker.from_env(timeout=timeout)
        except DockerException as e:
            raise RemoteFailure(f"docker client: {e}", operation="connect")
        return cls(client.api)

    def _call(self, operation: str, func: Callable, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (DockerException, requests.exceptions.RequestException) as e:
            raise RemoteFailure(f"{operation}: {e}", operation=operation)

    def inspect(self, name: str) -> Optional[ContainerInfo]:
        """Return the container's state, or None if it does not exist."""
        try:
            data = self.api.inspect_container(name)
        except NotFound:
            return None
        except (DockerException, requests.exceptions.RequestException) as e:
            raise RemoteFailure(f"inspect container: {e}", operation="inspect")
        return ContainerInfo.from_inspect(data)

    def remove(self, name: str, force: bool = True) -> None:
        self._call("remove container", self.api.remove_container, name, force=force)

    def create(self, config: Dict[str, Any], host_config: Dict[str, Any], name: str) -> str:
        """Create a container from inspect-shaped Config/HostConfig dicts."""
        body = dict(config)
        body["HostConfig"] = dict(host_config)
        resp = self._call(
            "create container", self.api.create_container_from_config, body, name
        )
        return resp["Id"]

    def start(self, container_id: str) -> None:
        self._call("start container", self.api.start, container_id)

    def stop(self, container_id: str, timeout: int) -> None:
        self._call("stop container", self.api.stop, container_id, timeout=timeout)

    def wait(self, container_id: str) -> WaitResult:
        """Block until the container is no longer running or the platform is closed.

        The wait is issued in slices of ``wait_poll_seconds``; a slice that
        times out means the container is still running.

        Raises:
            RemoteFailure: The wait failed, or close() was called meanwhile.
        """
        while not self._closed.is_set():
            try:
                resp = self.api.wait(
                    container_id, timeout=self.wait_poll_seconds, condition="not-running"
                )
            except requests.exceptions.ConnectTimeout as e:
                raise RemoteFailure(f"wait container: {e}", operation="wait container")
            except requests.exceptions.ReadTimeout:
                continue
            except requests.exceptions.ConnectionError as e:
                # Read timeouts on the unix socket surface as ConnectionError
                if "read timed out" in str(e).lower():
                    continue
                raise RemoteFailure(f"wait container: {e}", operation="wait container")
            except (DockerException, requests.exceptions.RequestException) as e:
                raise RemoteFailure(f"wait container: {e}", operation="wait container")

            error = resp.get("Error") or None
            if isinstance(error, dict):
                error = error.get("Message") or None
            return WaitResult(status_code=int(resp.get("StatusCode", -1)), error=error)

        raise RemoteFailure("wait container: platform closed", operation="wait container")

    def logs(self, container_id: str, tail: int) -> str:
        """Fetch the trailing ``tail`` lines of combined stdout/stderr."""
        # Raw endpoint: the SDK's own logs() already demultiplexes the stream
        url = f"{self.api.base_url}/v{self.api.api_version}/containers/{container_id}/logs"
        params = {"stdout": 1, "stderr": 1, "tail": str(tail)}

        def fetch() -> bytes:
            response = self.api.get(url, params=params, timeout=self.api.timeout)
            response.raise_for_status()
            return response.content

        return decode_log_frames(self._call("container logs", fetch))

    def close(self) -> None:
        """Close the client. A wait in progress returns within one poll slice."""
        self._closed.set()
        self.api.close()
