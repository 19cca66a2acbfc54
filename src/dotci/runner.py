# runner.py
from __future__ import annotations

import posixpath
import re
import sys
import tempfile
import unicodedata
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, Optional

from .archive import archive_path
from .artifacts import ArtifactRelay
from .config import DOCKER_SOCKET, WORKING_DIR
from .deadline import Deadline
from .engine import ContainerEngine, ContainerSpec, Mount
from .errors import (
    DeadlineExceeded,
    EngineCallError,
    EngineError,
    ExitFailure,
    JobTimeout,
)
from .model import Job, env_list
from .ui.console import get_console

# cleanup gets its own budget: it must run even after the job deadline is gone
CLEANUP_TIMEOUT_SECONDS = 60.0

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def run_name(job_name: str) -> str:
    """
    Unique, engine-legal container name for one invocation of a job:
    "Build Docs!" -> "build-docs-<20 hex chars>".
    """
    ascii_name = unicodedata.normalize("NFKD", job_name).encode("ascii", "ignore").decode("ascii")
    slug = _SLUG_RE.sub("-", ascii_name.lower()).strip("-")[:48] or "job"
    return f"{slug}-{uuid.uuid4().hex[:20]}"


class State(str, Enum):
    CONFIGURED = "configured"
    IMAGE_PULLED = "image_pulled"
    SOURCE_INJECTED = "source_injected"
    ARTIFACTS_RESTORED = "artifacts_restored"
    STARTED = "started"
    LOGS_STREAMED = "logs_streamed"
    WAITED = "waited"
    SUCCESS = "success"
    EXIT_FAILURE = "exit_failure"
    ENGINE_ERROR = "engine_error"
    TIMEOUT = "timeout"
    FAILED = "failed"


_TERMINAL_BY_KIND = {
    ExitFailure.kind: State.EXIT_FAILURE,
    EngineError.kind: State.ENGINE_ERROR,
    JobTimeout.kind: State.TIMEOUT,
}


@dataclass
class RunnerOptions:
    show_image_pull: bool = True
    stdout: Optional[BinaryIO] = None
    stderr: Optional[BinaryIO] = None
    mount_docker_socket: bool = False
    # base64 JSON {"username", "password"}; see engine.encode_registry_auth
    registry_auth: Optional[str] = None
    global_env: Dict[str, str] = field(default_factory=dict)


@dataclass
class RunHandle:
    name: str
    container_id: str = ""


class WorkloadRunner:
    """
    Drives one job through its container lifecycle:

        pull -> create -> inject source -> restore artifacts -> start
             -> stream logs -> wait -> publish artifacts

    and removes the container afterwards, whatever happened.

    A runner is used for exactly one run.
    """

    def __init__(
        self,
        job: Job,
        engine: ContainerEngine,
        relay: ArtifactRelay,
        options: Optional[RunnerOptions] = None,
    ):
        self.job = job
        self.engine = engine
        self.relay = relay
        self.options = options or RunnerOptions()
        self.console = get_console()

        self.handle = RunHandle(name=run_name(job.name))
        self.src = str(Path(job.src)) if job.src.strip() else ""
        self.stdout: BinaryIO = self.options.stdout or sys.stdout.buffer
        self.stderr: BinaryIO = self.options.stderr or sys.stderr.buffer

        # raises ConfigError for malformed variables before anything runs
        self.env: List[str] = env_list(job.name, job.variables, self.options.global_env)

        self.published: List[str] = []
        self.history: List[State] = []
        self._enter(State.CONFIGURED)

    # ------------------------------------------------------------------

    @property
    def state(self) -> State:
        return self.history[-1]

    def _enter(self, state: State) -> None:
        self.history.append(state)
        self.console.print_debug(f"[{self.job.name}] {state.value}")

    def container_spec(self) -> ContainerSpec:
        script = "\n".join(self.job.script)
        if self.job.entrypoint:
            cmd = [script] if self.job.script else []
        else:
            cmd = ["/bin/sh", "-c", script]

        mounts: List[Mount] = []
        if self.options.mount_docker_socket:
            mounts.append(Mount(source=DOCKER_SOCKET, target="/var/run/docker.sock"))

        return ContainerSpec(
            name=self.handle.name,
            image=self.job.image,
            workdir=WORKING_DIR,
            env=list(self.env),
            cmd=cmd,
            entrypoint=list(self.job.entrypoint),
            mounts=mounts,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, deadline: Optional[Deadline] = None) -> List[str]:
        """
        Execute the job.

        Returns:
            cache keys of the artifacts this job published

        Raises:
            EngineError, ExitFailure, JobTimeout, ArtifactError
        """
        deadline = deadline or Deadline()
        try:
            self._pull_image(deadline)
            with self._container(deadline) as cid:
                self._inject_source(cid, deadline)
                self._restore_artifacts(cid, deadline)
                self._start(cid, deadline)
                self._stream_logs(cid, deadline)
                self._wait(cid, deadline)
                self._publish_artifacts(cid, deadline)
        except DeadlineExceeded as e:
            self._enter(State.TIMEOUT)
            raise JobTimeout(
                job=self.job.name,
                message=f"context timed out, stopping container {self.handle.name}",
                details={"reason": str(e)},
            ) from e
        except Exception as e:
            self._enter(_TERMINAL_BY_KIND.get(getattr(e, "kind", ""), State.FAILED))
            raise

        self._enter(State.SUCCESS)
        return list(self.published)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _engine_error(self, message: str, e: EngineCallError) -> EngineError:
        return EngineError(
            job=self.job.name,
            message=message,
            details={"container": self.handle.name, "reason": e.reason},
        )

    def _pull_image(self, deadline: Deadline) -> None:
        progress = self.stdout if self.options.show_image_pull else None
        try:
            self.engine.pull_image(self.job.image, self.options.registry_auth, progress, deadline)
        except EngineCallError as e:
            raise self._engine_error(f"could not pull image {self.job.image}", e) from e
        self._enter(State.IMAGE_PULLED)

    @contextmanager
    def _container(self, deadline: Deadline) -> Iterator[str]:
        try:
            cid = self.engine.create_container(self.container_spec(), deadline)
        except EngineCallError as e:
            raise self._engine_error(f"unable to create container {self.handle.name}", e) from e
        except DeadlineExceeded:
            # the engine may have created it before we gave up
            self._remove(self.handle.name, quiet=True)
            raise

        self.handle.container_id = cid
        ok = False
        try:
            yield cid
            ok = True
        finally:
            self._remove(cid, quiet=not ok)

    def _remove(self, container: str, *, quiet: bool) -> None:
        try:
            self.engine.remove_container(container, Deadline(CLEANUP_TIMEOUT_SECONDS))
        except (EngineCallError, DeadlineExceeded) as e:
            if not quiet:
                reason = e.reason if isinstance(e, EngineCallError) else str(e)
                raise EngineError(
                    job=self.job.name,
                    message=f"unable to remove container {self.handle.name}",
                    details={"reason": reason},
                ) from e
            # another error is already on its way out; that one wins
            self.console.print_debug(f"[{self.job.name}] cleanup of {container} failed: {e}")
        else:
            self.console.print_debug(f"[{self.job.name}] removed container {container}")

    def _inject_source(self, cid: str, deadline: Deadline) -> None:
        if self.src:
            try:
                with tempfile.TemporaryFile(prefix="tarcopy-") as tmp:
                    archive_path(self.src, tmp, exclude=[self.relay.root])
                    tmp.seek(0)
                    self.engine.copy_to_container(cid, WORKING_DIR, tmp, deadline)
            except EngineCallError as e:
                raise self._engine_error(f"unable to create source directories for {self.handle.name}", e) from e
            except OSError as e:
                raise EngineError(
                    job=self.job.name,
                    message=f"unable to create source directories for {self.handle.name}",
                    details={"src": self.src, "reason": str(e)},
                ) from e
        self._enter(State.SOURCE_INJECTED)

    def _restore_artifacts(self, cid: str, deadline: Deadline) -> None:
        # everything published so far, by any earlier job
        self.relay.retrieve(cid, None, job=self.job.name, deadline=deadline)
        self._enter(State.ARTIFACTS_RESTORED)

    def _start(self, cid: str, deadline: Deadline) -> None:
        try:
            self.engine.start_container(cid, deadline)
        except EngineCallError as e:
            raise self._engine_error(f"unable to start container {self.handle.name}", e) from e
        self._enter(State.STARTED)

    def _stream_logs(self, cid: str, deadline: Deadline) -> None:
        try:
            self.engine.stream_logs(cid, self.stdout, self.stderr, deadline)
        except EngineCallError as e:
            raise self._engine_error(f"unable to read container logs from {self.handle.name}", e) from e
        finally:
            self.stdout.flush()
            self.stderr.flush()
        self._enter(State.LOGS_STREAMED)

    def _wait(self, cid: str, deadline: Deadline) -> None:
        try:
            status = self.engine.wait_container(cid, deadline)
        except EngineCallError as e:
            raise self._engine_error(f"error waiting for container {self.handle.name} to stop", e) from e
        self._enter(State.WAITED)

        if status != 0:
            raise ExitFailure(
                job=self.job.name,
                message=f"container {self.handle.name} exited with status code {status}",
                exit_code=status,
            )

    def _publish_artifacts(self, cid: str, deadline: Deadline) -> None:
        for artifact in self.job.artifacts:
            path = posixpath.join(WORKING_DIR, artifact)
            key = self.relay.publish(cid, path, job=self.job.name, deadline=deadline)
            self.published.append(key)
            self.console.print_debug(f"[{self.job.name}] published {path} as {key}")
