# engine.py
# Narrow wrapper around the container engine.
# The rest of the codebase only talks to containers through ContainerEngine,
# so the runner and the artifact relay never build docker command lines.

from __future__ import annotations

import base64
import json
import os
import subprocess
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, List, Optional

from .config import DOCKER_BIN
from .deadline import Deadline
from .errors import DeadlineExceeded, EngineCallError

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
}

# how often blocking engine calls look at their deadline
_POLL_SECONDS = 0.1
_CHUNK = 64 * 1024

DEFAULT_REGISTRY = "https://index.docker.io/v1/"


# ---------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Mount:
    source: str
    target: str
    read_only: bool = False


@dataclass(frozen=True)
class ContainerSpec:
    """Everything needed to create one job container."""
    name: str
    image: str
    workdir: str
    env: List[str] = field(default_factory=list)
    cmd: List[str] = field(default_factory=list)
    entrypoint: List[str] = field(default_factory=list)
    mounts: List[Mount] = field(default_factory=list)


def encode_registry_auth(username: str, password: str) -> str:
    """Registry credentials as the engine expects them: base64(JSON)."""
    payload = json.dumps({"username": username, "password": password}).encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("ascii")


def decode_registry_auth(blob: str) -> Dict[str, str]:
    try:
        data = json.loads(base64.urlsafe_b64decode(blob.encode("ascii")))
    except (ValueError, TypeError) as e:
        raise EngineCallError("registry auth", f"malformed credentials: {e}") from e
    if not isinstance(data, dict):
        raise EngineCallError("registry auth", "malformed credentials: expected a JSON object")
    return {"username": data.get("username", ""), "password": data.get("password", "")}


def registry_host(image: str) -> str:
    """docker.io/alpine -> docker.io, alpine -> Docker Hub."""
    first, sep, _rest = image.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first
    return DEFAULT_REGISTRY


# ---------------------------------------------------------------------
# Capability contract
# ---------------------------------------------------------------------

class ContainerEngine(ABC):
    """
    The container operations the execution core depends on.

    Blocking calls take an optional Deadline and raise DeadlineExceeded
    when it ends first. Engine-side failures raise EngineCallError.
    """

    @abstractmethod
    def pull_image(
        self,
        image: str,
        auth: Optional[str] = None,
        progress: Optional[BinaryIO] = None,
        deadline: Optional[Deadline] = None,
    ) -> None: ...

    @abstractmethod
    def create_container(self, spec: ContainerSpec, deadline: Optional[Deadline] = None) -> str: ...

    @abstractmethod
    def start_container(self, container_id: str, deadline: Optional[Deadline] = None) -> None: ...

    @abstractmethod
    def stream_logs(
        self,
        container_id: str,
        stdout: BinaryIO,
        stderr: BinaryIO,
        deadline: Optional[Deadline] = None,
    ) -> None: ...

    @abstractmethod
    def wait_container(self, container_id: str, deadline: Optional[Deadline] = None) -> int: ...

    @abstractmethod
    def copy_to_container(
        self,
        container_id: str,
        dest_path: str,
        archive: BinaryIO,
        deadline: Optional[Deadline] = None,
    ) -> None: ...

    @abstractmethod
    def copy_from_container(
        self,
        container_id: str,
        src_path: str,
        out: BinaryIO,
        deadline: Optional[Deadline] = None,
    ) -> None: ...

    @abstractmethod
    def remove_container(self, container_id: str, deadline: Optional[Deadline] = None) -> None: ...

    def available(self) -> bool:
        return True

    def describe(self) -> str:
        """Short human readable name, used in error messages."""
        return type(self).__name__


# ---------------------------------------------------------------------
# Docker CLI implementation
# ---------------------------------------------------------------------

class DockerCLI(ContainerEngine):
    """
    ContainerEngine backed by the docker command line.

    Each call is one `docker ...` process; archives travel over stdin/stdout
    with `docker cp -`. The instance holds no connection and can be shared
    between threads.
    """

    def __init__(self, binary: str = DOCKER_BIN):
        self.binary = binary

    # -- low level ----------------------------------------------------

    def _popen(self, args: List[str], **kwargs) -> subprocess.Popen:
        try:
            return subprocess.Popen([self.binary, *args], **kwargs)
        except FileNotFoundError as e:
            raise EngineCallError(args[0], f"{self.binary} not found. {TOOL_HINTS['docker']}") from e

    def _docker(
        self,
        args: List[str],
        *,
        deadline: Optional[Deadline] = None,
        stdin: Optional[BinaryIO] = None,
        stdout=subprocess.PIPE,
    ) -> bytes:
        """
        Run one docker command, honouring the deadline, and return its stdout.

        This is the single entry point for non-streaming docker calls.
        """
        deadline = deadline or Deadline()
        deadline.check(f"docker {args[0]}")

        proc = self._popen(
            args,
            stdin=stdin if stdin is not None else subprocess.DEVNULL,
            stdout=stdout,
            stderr=subprocess.PIPE,
        )
        while True:
            try:
                out, err = proc.communicate(timeout=_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if deadline.done():
                    proc.kill()
                    proc.communicate()
                    raise DeadlineExceeded(f"docker {args[0]}: {deadline.reason()}")

        if proc.returncode != 0:
            reason = (err or b"").decode("utf-8", errors="replace").strip()
            raise EngineCallError(f"docker {args[0]}", reason or f"exit status {proc.returncode}")
        return out or b""

    def _stream(
        self,
        args: List[str],
        stdout: Optional[BinaryIO],
        stderr: Optional[BinaryIO],
        deadline: Optional[Deadline] = None,
    ) -> None:
        """
        Run a docker command whose output is copied into sinks while it runs.
        stderr is always captured as well so failures carry a reason.
        """
        deadline = deadline or Deadline()
        deadline.check(f"docker {args[0]}")

        proc = self._popen(args, stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        captured = bytearray()
        sink_errors: List[BaseException] = []

        def pump(pipe, sink: Optional[BinaryIO], keep: bool) -> None:
            try:
                for chunk in iter(lambda: pipe.read1(_CHUNK), b""):
                    if keep:
                        captured.extend(chunk)
                        del captured[:-4000]
                    if sink is not None:
                        sink.write(chunk)
            except (OSError, ValueError) as e:
                sink_errors.append(e)
            finally:
                pipe.close()

        pumps = [
            threading.Thread(target=pump, args=(proc.stdout, stdout, False), daemon=True),
            threading.Thread(target=pump, args=(proc.stderr, stderr, True), daemon=True),
        ]
        for t in pumps:
            t.start()

        while True:
            try:
                proc.wait(timeout=_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if deadline.done():
                    proc.kill()
                    proc.wait()
                    for t in pumps:
                        t.join()
                    raise DeadlineExceeded(f"docker {args[0]}: {deadline.reason()}")

        for t in pumps:
            t.join()
        for sink in (stdout, stderr):
            if sink is not None and hasattr(sink, "flush"):
                sink.flush()

        if proc.returncode != 0:
            reason = bytes(captured).decode("utf-8", errors="replace").strip()
            raise EngineCallError(f"docker {args[0]}", reason or f"exit status {proc.returncode}")
        if sink_errors:
            raise EngineCallError(f"docker {args[0]}", f"could not write output: {sink_errors[0]}")

    # -- contract -----------------------------------------------------

    def describe(self) -> str:
        return f"docker CLI ({self.binary})"

    def available(self) -> bool:
        try:
            self._docker(["version", "--format", "{{.Server.Version}}"], deadline=Deadline(10))
        except (EngineCallError, DeadlineExceeded):
            return False
        return True

    def pull_image(self, image, auth=None, progress=None, deadline=None) -> None:
        if not auth:
            self._stream(["pull", image], progress, None, deadline)
            return

        creds = decode_registry_auth(auth)
        if not creds["username"]:
            self._stream(["pull", image], progress, None, deadline)
            return

        # credentials only live for this pull, in a throwaway client config
        token = base64.b64encode(f"{creds['username']}:{creds['password']}".encode("utf-8")).decode("ascii")
        with tempfile.TemporaryDirectory(prefix="dot-auth-") as cfg:
            path = os.path.join(cfg, "config.json")
            with open(path, "w", encoding="utf-8") as f:
                json.dump({"auths": {registry_host(image): {"auth": token}}}, f)
            os.chmod(path, 0o600)
            self._stream(["--config", cfg, "pull", image], progress, None, deadline)

    def create_container(self, spec, deadline=None) -> str:
        args = ["create", "--name", spec.name, "--workdir", spec.workdir]
        for kv in spec.env:
            args.extend(["--env", kv])
        for m in spec.mounts:
            opt = f"type=bind,source={m.source},target={m.target}"
            if m.read_only:
                opt += ",readonly"
            args.extend(["--mount", opt])

        cmd = list(spec.cmd)
        if spec.entrypoint:
            # the CLI takes a single executable; the rest of the entrypoint
            # goes in front of the command, as the engine would do
            args.extend(["--entrypoint", spec.entrypoint[0]])
            cmd = list(spec.entrypoint[1:]) + cmd
        args.append(spec.image)
        args.extend(cmd)

        out = self._docker(args, deadline=deadline)
        return out.decode("utf-8").strip().splitlines()[-1]

    def start_container(self, container_id, deadline=None) -> None:
        self._docker(["start", container_id], deadline=deadline)

    def stream_logs(self, container_id, stdout, stderr, deadline=None) -> None:
        self._stream(["logs", "--follow", container_id], stdout, stderr, deadline)

    def wait_container(self, container_id, deadline=None) -> int:
        out = self._docker(["wait", container_id], deadline=deadline).decode("utf-8").strip()
        try:
            return int(out.splitlines()[-1])
        except (ValueError, IndexError) as e:
            raise EngineCallError("docker wait", f"unexpected output: {out!r}") from e

    def copy_to_container(self, container_id, dest_path, archive, deadline=None) -> None:
        self._docker(["cp", "-", f"{container_id}:{dest_path}"], deadline=deadline, stdin=archive)

    def copy_from_container(self, container_id, src_path, out, deadline=None) -> None:
        self._docker(["cp", f"{container_id}:{src_path}", "-"], deadline=deadline, stdout=out)

    def remove_container(self, container_id, deadline=None) -> None:
        self._docker(["rm", "--force", "--volumes", container_id], deadline=deadline)

    def container_exists(self, container_id: str) -> bool:
        try:
            self._docker(["container", "inspect", "--format", "{{.Id}}", container_id], deadline=Deadline(30))
        except EngineCallError:
            return False
        return True
