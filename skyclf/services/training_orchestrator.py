"""
TrainingOrchestrator - runs training jobs in the long-lived trainer container.

The trainer container (defined by the compose stack) normally runs an idle
command. Starting a job snapshots that container's configuration, replaces
it with a container of the same name whose command is the training entry
point, and launches a background monitor. When the job ends, for whatever
reason, the monitor records the outcome, notifies the completion listener
on exit code 0 and recreates the idle container from the snapshot.

    idle → starting → training → completed | failed → restoring_idle → idle

Known limitation: the check-then-act in start()/stop() is only safe within
one orchestrator; two processes driving the same container name can race.
"""

import asyncio
import copy
import inspect
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from skyclf.exceptions import ConflictError, RemoteFailure
from skyclf.services.container_platform import ContainerInfo, ContainerPlatform, WaitResult

CompletionListener = Callable[[], Union[None, Awaitable[None]]]

_DEFAULT_TIMEOUT = object()


class TrainingState(Enum):
    """Lifecycle state of the trainer container slot."""

    IDLE = "idle"
    STARTING = "starting"
    TRAINING = "training"
    COMPLETED = "completed"
    FAILED = "failed"
    RESTORING_IDLE = "restoring_idle"


class TrainerConstants:
    """Constants for trainer container orchestration."""

    CONTAINER_NAME = "skyclf-trainer"
    TRAIN_ENTRYPOINT = ["python", "-m", "trainer.train"]

    # Timing Configuration
    REMOTE_CALL_TIMEOUT = 30.0  # seconds
    STOP_GRACE_SECONDS = 10

    # Log windows
    STATUS_LOG_TAIL = 100
    FINAL_LOG_TAIL = 500


@dataclass
class TrainConfig:
    """Training parameters passed to the trainer entry point."""

    epochs: int = 10
    batch_size: int = 16
    lr: float = 0.001
    img_size: int = 224
    seed: int = 42
    val_split: float = 0.2
    from_scratch: bool = False

    def __post_init__(self):
        for name in ("epochs", "batch_size", "img_size"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.lr <= 0:
            raise ValueError("lr must be positive")
        if not 0.0 <= self.val_split < 1.0:
            raise ValueError("val_split must be in [0, 1)")

    def to_args(self) -> List[str]:
        args = [
            "--epochs", str(self.epochs),
            "--batch", str(self.batch_size),
            "--lr", f"{self.lr:g}",
            "--img", str(self.img_size),
            "--seed", str(self.seed),
            "--val", f"{self.val_split:g}",
        ]
        if self.from_scratch:
            args.append("--from-scratch")
        return args

    def to_command(self) -> List[str]:
        return list(TrainerConstants.TRAIN_ENTRYPOINT) + self.to_args()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TrainingJob:
    """The orchestrator's record of the most recent training run."""

    config: Optional[TrainConfig] = None
    started_at: Optional[datetime] = None
    running: bool = False
    exit_code: Optional[int] = None
    error: str = ""
    logs: str = ""
    container_id: str = ""
    state: TrainingState = TrainingState.IDLE


@dataclass
class TrainStatus:
    """Snapshot returned by :meth:`TrainingOrchestrator.status`."""

    running: bool
    state: TrainingState
    container_id: str = ""
    started_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    error: str = ""
    logs: str = ""
    last_config: Optional[TrainConfig] = None
    last_completed_run: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "state": self.state.value,
            "container_id": self.container_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "exit_code": self.exit_code,
            "error": self.error,
            "logs": self.logs,
            "last_config": self.last_config.to_dict() if self.last_config else None,
            "last_completed_run": self.last_completed_run,
        }


@dataclass
class ContainerTemplate:
    """Config/HostConfig snapshot used to recreate the idle container."""

    config: Dict[str, Any] = field(default_factory=dict)
    host_config: Dict[str, Any] = field(default_factory=dict)


class TrainingOrchestrator:
    """Drives the named trainer container between idle and training."""

    def __init__(
        self,
        platform: ContainerPlatform,
        container_name: str = TrainerConstants.CONTAINER_NAME,
        *,
        call_timeout: float = TrainerConstants.REMOTE_CALL_TIMEOUT,
        stop_grace_seconds: int = TrainerConstants.STOP_GRACE_SECONDS,
        status_log_tail: int = TrainerConstants.STATUS_LOG_TAIL,
        final_log_tail: int = TrainerConstants.FINAL_LOG_TAIL,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize the orchestrator."""
        self.platform = platform
        self.container_name = container_name
        self.call_timeout = call_timeout
        self.stop_grace_seconds = stop_grace_seconds
        self.status_log_tail = status_log_tail
        self.final_log_tail = final_log_tail
        self.logger = logger or logging.getLogger(__name__)

        # Every mutation of the container slot happens under this lock
        self._lock = asyncio.Lock()

        self._job = TrainingJob()
        self._template: Optional[ContainerTemplate] = None
        self._run_id = 0
        self._completed_runs = 0
        self._listener: Optional[CompletionListener] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._closing = False

    @classmethod
    def from_env(
        cls,
        container_name: str = TrainerConstants.CONTAINER_NAME,
        call_timeout: float = TrainerConstants.REMOTE_CALL_TIMEOUT,
        **kwargs,
    ) -> "TrainingOrchestrator":
        """Create an orchestrator talking to the Docker daemon from the environment."""
        platform = ContainerPlatform.from_env(timeout=call_timeout)
        return cls(platform, container_name, call_timeout=call_timeout, **kwargs)

    # ==================== Public API ====================

    def on_complete(self, listener: Optional[CompletionListener]) -> None:
        """Register the single listener called after a run exits with code 0.

        The listener may be a plain callable or a coroutine function. It must
        not call start() or stop() itself.
        """
        self._listener = listener

    @property
    def last_completed_run(self) -> int:
        """Number of runs that finished successfully; grows by one per success."""
        return self._completed_runs

    async def status(self) -> TrainStatus:
        """Report the job record reconciled against the live container state."""
        try:
            info = await self._remote(self.platform.inspect, self.container_name)
        except RemoteFailure as e:
            self.logger.warning(f"Status check could not inspect {self.container_name}: {e}")
            info = None

        job = self._job
        container_id = info.id if info else ""
        running = job.running and bool(info and info.running)

        logs = job.logs
        if running and container_id:
            try:
                logs = await self._remote(self.platform.logs, container_id, self.status_log_tail)
            except RemoteFailure as e:
                self.logger.debug(f"Live log fetch failed: {e}")

        return TrainStatus(
            running=running,
            state=job.state,
            container_id=container_id,
            started_at=job.started_at,
            exit_code=job.exit_code,
            error=job.error,
            logs=logs,
            last_config=job.config,
            last_completed_run=self._completed_runs,
        )

    async def start(self, config: Optional[TrainConfig] = None) -> None:
        """Recreate the trainer container with the training command and start it.

        Raises:
            ConflictError: A training run is already in progress.
            RemoteFailure: A container platform call failed.
        """
        config = config or TrainConfig()

        async with self._lock:
            info = await self._remote(self.platform.inspect, self.container_name)
            if info is not None and self._is_training(info):
                raise ConflictError("training already in progress")

            template = self._capture_template(info)
            if template is None:
                raise RemoteFailure(
                    f"trainer container {self.container_name!r} not found (is docker-compose up?)",
                    operation="inspect",
                )
            self._template = template

            previous_state = self._job.state
            self._job.state = TrainingState.STARTING
            self.logger.info(f"🚀 Starting training in {self.container_name}")

            try:
                await self._remove_quietly("old")
                train_config = copy.deepcopy(template.config)
                train_config["Cmd"] = config.to_command()
                container_id = await self._remote(
                    self.platform.create,
                    train_config,
                    copy.deepcopy(template.host_config),
                    self.container_name,
                )
                await self._remote(self.platform.start, container_id)
            except RemoteFailure as e:
                self.logger.error(f"❌ Failed to start training: {e}")
                await self._restore_idle_container()
                self._job.state = previous_state
                raise

            self._run_id += 1
            job = TrainingJob(
                config=config,
                started_at=datetime.now(timezone.utc),
                running=True,
                container_id=container_id,
                state=TrainingState.TRAINING,
            )
            self._job = job

            # Detached: caller cancellation does not reach the monitor
            self._monitor_task = asyncio.create_task(
                self._monitor(job, self._run_id), name=f"trainer-monitor-{self._run_id}"
            )

        self.logger.info(
            f"✅ Started {self.container_name} with epochs={config.epochs} "
            f"batch={config.batch_size} lr={config.lr:g}"
        )

    async def stop(self) -> None:
        """Gracefully stop the running training container.

        The idle container is restored by the monitor, exactly as after a
        natural exit.

        Raises:
            ConflictError: No training run is in progress.
            RemoteFailure: A container platform call failed.
        """
        async with self._lock:
            info = await self._remote(self.platform.inspect, self.container_name)
            if info is None or not self._is_training(info):
                raise ConflictError("no training in progress")

            await self._remote(
                self.platform.stop,
                info.id,
                self.stop_grace_seconds,
                timeout=self.call_timeout + self.stop_grace_seconds,
            )
        self.logger.info(f"🛑 Stopped {self.container_name}")

    async def join_monitor(self) -> None:
        """Wait for the most recently launched monitor to finish."""
        task = self._monitor_task
        if task is not None:
            await asyncio.shield(task)

    async def close(self) -> None:
        """Close the platform client and let the monitor return.

        A training container that is still running is left alone; it is not
        stopped and the idle container is not restored.
        """
        self._closing = True
        await asyncio.to_thread(self.platform.close)

        task = self._monitor_task
        if task is not None and not task.done():
            # The platform ends its wait within one poll slice after close()
            done, _ = await asyncio.wait({task}, timeout=self.call_timeout)
            if not done:
                self.logger.warning("Trainer monitor still running at shutdown")

    # ==================== Monitor ====================

    async def _monitor(self, job: TrainingJob, run_id: int) -> None:
        """Wait for the training container to exit, record it, restore idle."""
        container_id = job.container_id
        try:
            result: WaitResult = await self._remote(self.platform.wait, container_id, timeout=None)
        except Exception as e:
            if self._closing:
                self.logger.info(
                    f"Shutting down; leaving {self.container_name} to finish on its own"
                )
                return
            job.running = False
            job.error = str(e)
            job.state = TrainingState.FAILED
            self.logger.error(f"Trainer wait error: {e}")
        else:
            try:
                logs = await self._remote(self.platform.logs, container_id, self.final_log_tail)
            except RemoteFailure as e:
                self.logger.warning(f"Could not fetch final training logs: {e}")
                logs = ""

            job.running = False
            job.exit_code = result.status_code
            job.logs = logs
            if result.error:
                job.error = result.error
            elif result.status_code != 0:
                job.error = f"training failed with exit code {result.status_code}"

            if result.status_code == 0:
                job.state = TrainingState.COMPLETED
                self._completed_runs += 1
                self.logger.info("✅ Training completed successfully")
                await self._notify_complete()
            else:
                job.state = TrainingState.FAILED
                self.logger.warning(f"Training exited with code {result.status_code}")

        async with self._lock:
            if run_id != self._run_id:
                self.logger.info("A newer run has started; skipping idle restoration")
                return
            job.state = TrainingState.RESTORING_IDLE
            if await self._restore_idle_container():
                job.state = TrainingState.IDLE
            else:
                # Left in RESTORING_IDLE: the next start() recreates from the template
                self.logger.warning(f"Trainer slot {self.container_name} is not idle")

    async def _notify_complete(self) -> None:
        listener = self._listener
        if listener is None:
            return
        try:
            result = listener()
            if inspect.isawaitable(result):
                await result
        except Exception:
            self.logger.exception("Completion listener failed")

    # ==================== Container Slot ====================

    async def _restore_idle_container(self) -> bool:
        """Recreate the idle container from the saved template.

        Best effort: failures are logged, never raised. Caller holds the lock.

        Returns:
            True if an idle container was created and started.
        """
        template = self._template
        if template is None:
            return False

        await self._remove_quietly("training")
        try:
            container_id = await self._remote(
                self.platform.create,
                copy.deepcopy(template.config),
                copy.deepcopy(template.host_config),
                self.container_name,
            )
        except RemoteFailure as e:
            self.logger.error(f"Recreate idle container failed: {e}")
            return False

        try:
            await self._remote(self.platform.start, container_id)
        except RemoteFailure as e:
            self.logger.error(f"Start idle container failed: {e}")
            return False

        self.logger.info(f"🧹 Idle container {self.container_name} ready")
        return True

    async def _remove_quietly(self, what: str) -> None:
        try:
            await self._remote(self.platform.remove, self.container_name, True)
        except RemoteFailure as e:
            self.logger.warning(f"Removing {what} container {self.container_name}: {e}")

    def _capture_template(self, info: Optional[ContainerInfo]) -> Optional[ContainerTemplate]:
        if info is None:
            return self._template

        if self._is_training_command(info.command):
            if self._template is not None:
                return self._template
            # Leftover training container and no snapshot yet: fall back
            # to the image's default command for the idle container.
            self.logger.warning(
                f"{self.container_name} still carries a training command; "
                "idle container will use the image default command"
            )
            config = copy.deepcopy(info.config)
            config["Cmd"] = None
            return ContainerTemplate(config=config, host_config=copy.deepcopy(info.host_config))

        return ContainerTemplate(
            config=copy.deepcopy(info.config), host_config=copy.deepcopy(info.host_config)
        )

    def _is_training(self, info: ContainerInfo) -> bool:
        if not info.running:
            return False
        if self._is_training_command(info.command):
            return True
        return self._job.running and info.id == self._job.container_id

    @staticmethod
    def _is_training_command(command: List[str]) -> bool:
        entrypoint = TrainerConstants.TRAIN_ENTRYPOINT
        return list(command[: len(entrypoint)]) == entrypoint

    # ==================== Utilities ====================

    async def _remote(self, func: Callable, *args, timeout: Any = _DEFAULT_TIMEOUT, **kwargs):
        """Run a blocking platform call in a worker thread, bounded by a timeout.

        A timed-out call is abandoned, not cancelled: its thread keeps running
        until the SDK request itself gives up. ``from_env`` sets the SDK request
        timeout to ``call_timeout`` so an abandoned create/remove cannot land
        long after the slot has moved on.
        """
        if timeout is _DEFAULT_TIMEOUT:
            timeout = self.call_timeout
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout)
        except asyncio.TimeoutError:
            name = getattr(func, "__name__", "platform call")
            raise RemoteFailure(f"{name} timed out after {timeout}s", operation=name)
