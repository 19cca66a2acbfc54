from __future__ import annotations

import io
import posixpath
import re
import shlex
import tarfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

import pytest

from dotci.config import RunConfig
from dotci.deadline import Deadline
from dotci.engine import ContainerEngine, ContainerSpec
from dotci.errors import DeadlineExceeded, EngineCallError
from dotci.ui.console import Console, set_console

_VAR_RE = re.compile(r"\$\{?([A-Za-z_][A-Za-z0-9_]*)\}?")


@dataclass
class FakeContainer:
    id: str
    spec: ContainerSpec
    files: Dict[str, bytes] = field(default_factory=dict)
    dirs: Set[str] = field(default_factory=lambda: {"/"})
    started: bool = False
    exit_code: Optional[int] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    def add_dir(self, path: str) -> None:
        while path not in self.dirs:
            self.dirs.add(path)
            path = posixpath.dirname(path)

    def resolve(self, path: str) -> str:
        return posixpath.normpath(posixpath.join(self.spec.workdir, path))


class FakeEngine(ContainerEngine):
    """
    In-memory container engine.

    Containers are dicts of files; the command is a tiny shell supporting
    echo (with > and >>), cat, sleep, exit and mkdir -p. The script runs
    while logs are streamed, like `docker logs --follow` blocking until exit.
    """

    def __init__(self):
        self.containers: Dict[str, FakeContainer] = {}
        self.finished: Dict[str, FakeContainer] = {}
        self.calls: List[tuple] = []
        self.pulled: List[tuple] = []
        self.removed: List[str] = []
        self.missing_images: Set[str] = set()
        self.fail_remove = False
        self._lock = threading.Lock()

    def _record(self, *call) -> None:
        with self._lock:
            self.calls.append(call)

    def _get(self, ref: str) -> FakeContainer:
        with self._lock:
            if ref in self.containers:
                return self.containers[ref]
            for c in self.containers.values():
                if c.spec.name == ref:
                    return c
        raise EngineCallError("docker", f"No such container: {ref}")

    def by_name_prefix(self, prefix: str) -> FakeContainer:
        for c in list(self.finished.values()) + list(self.containers.values()):
            if c.spec.name.startswith(prefix):
                return c
        raise KeyError(prefix)

    # -- contract -----------------------------------------------------

    def pull_image(self, image, auth=None, progress=None, deadline=None):
        self._record("pull", image)
        (deadline or Deadline()).check("pull")
        if image in self.missing_images:
            raise EngineCallError("docker pull", f"pull access denied for {image}")
        self.pulled.append((image, auth))
        if progress is not None:
            progress.write(f"pulled {image}\n".encode())

    def create_container(self, spec, deadline=None):
        self._record("create", spec.name)
        (deadline or Deadline()).check("create")
        c = FakeContainer(id=uuid.uuid4().hex, spec=spec)
        c.add_dir(spec.workdir)
        with self._lock:
            self.containers[c.id] = c
        return c.id

    def start_container(self, container_id, deadline=None):
        self._record("start", container_id)
        c = self._get(container_id)
        c.started = True
        c.started_at = time.monotonic()

    def stream_logs(self, container_id, stdout, stderr, deadline=None):
        self._record("logs", container_id)
        c = self._get(container_id)
        try:
            c.exit_code = self._execute(c, stdout, stderr, deadline or Deadline())
        finally:
            c.finished_at = time.monotonic()

    def wait_container(self, container_id, deadline=None):
        self._record("wait", container_id)
        c = self._get(container_id)
        return 0 if c.exit_code is None else c.exit_code

    def copy_to_container(self, container_id, dest_path, archive, deadline=None):
        self._record("copy_to", container_id, dest_path)
        c = self._get(container_id)
        if dest_path not in c.dirs:
            raise EngineCallError("docker cp", f"Could not find the file {dest_path} in container")
        with tarfile.open(fileobj=archive, mode="r|*") as tar:
            for member in tar:
                path = posixpath.normpath(posixpath.join(dest_path, member.name))
                if member.isdir():
                    c.add_dir(path)
                elif member.isreg():
                    c.add_dir(posixpath.dirname(path))
                    c.files[path] = tar.extractfile(member).read()

    def copy_from_container(self, container_id, src_path, out, deadline=None):
        self._record("copy_from", container_id, src_path)
        c = self._get(container_id)
        src = posixpath.normpath(src_path)
        base = posixpath.basename(src)
        parent = posixpath.dirname(src)
        if src not in c.files and src not in c.dirs:
            raise EngineCallError("docker cp", f"Could not find the file {src_path} in container")
        with tarfile.open(fileobj=out, mode="w|") as tar:
            for d in sorted(d for d in c.dirs if d == src or d.startswith(src + "/")):
                info = tarfile.TarInfo(posixpath.relpath(d, parent))
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
            for path in sorted(p for p in c.files if p == src or p.startswith(src + "/")):
                data = c.files[path]
                info = tarfile.TarInfo(base if path == src else posixpath.relpath(path, parent))
                info.size = len(data)
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(data))

    def remove_container(self, container_id, deadline=None):
        self._record("remove", container_id)
        if self.fail_remove:
            raise EngineCallError("docker rm", "removal refused")
        with self._lock:
            c = self.containers.pop(container_id, None)
            if c is None:
                for cid, other in list(self.containers.items()):
                    if other.spec.name == container_id:
                        c = self.containers.pop(cid)
                        break
            if c is None:
                raise EngineCallError("docker rm", f"No such container: {container_id}")
            self.finished[c.id] = c
            self.removed.append(c.spec.name)

    # -- script interpreter -------------------------------------------

    def _execute(self, c: FakeContainer, stdout, stderr, deadline: Deadline) -> int:
        argv = list(c.spec.entrypoint) + list(c.spec.cmd)
        if argv[:2] in (["/bin/sh", "-c"], ["sh", "-c"]):
            script = argv[2] if len(argv) > 2 else ""
        else:
            script = shlex.join(argv)

        env = dict(kv.split("=", 1) for kv in c.spec.env)
        for line in script.splitlines():
            line = line.strip()
            if not line:
                continue
            words = [_VAR_RE.sub(lambda m: env.get(m.group(1), ""), w) for w in shlex.split(line)]
            status = self._command(c, words, stdout, stderr, deadline)
            if status is not None:
                return status
        return 0

    def _command(self, c, words, stdout, stderr, deadline) -> Optional[int]:
        cmd, args = words[0], words[1:]
        if cmd == "echo":
            redirect = None
            for op in (">>", ">"):
                if op in args:
                    i = args.index(op)
                    redirect, args = (op, args[i + 1]), args[:i]
                    break
            data = (" ".join(args) + "\n").encode()
            if redirect is None:
                stdout.write(data)
            else:
                path = c.resolve(redirect[1])
                if posixpath.dirname(path) not in c.dirs:
                    stderr.write(f"sh: can't create {redirect[1]}: nonexistent directory\n".encode())
                    return 2
                old = c.files.get(path, b"") if redirect[0] == ">>" else b""
                c.files[path] = old + data
            return None
        if cmd == "cat":
            for name in args:
                path = c.resolve(name)
                if path not in c.files:
                    stderr.write(f"cat: can't open '{name}': No such file or directory\n".encode())
                    return 1
                stdout.write(c.files[path])
            return None
        if cmd == "mkdir":
            for name in args:
                if name != "-p":
                    c.add_dir(c.resolve(name))
            return None
        if cmd == "sleep":
            if not deadline.sleep(float(args[0])):
                raise DeadlineExceeded(f"docker logs: {deadline.reason()}")
            return None
        if cmd == "exit":
            return int(args[0]) if args else 0
        stderr.write(f"sh: {cmd}: not found\n".encode())
        return 127


@pytest.fixture(autouse=True)
def console():
    c = Console()
    set_console(c)
    yield c
    set_console(Console())


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def run_config(tmp_path) -> RunConfig:
    return RunConfig(
        artifacts_dir=tmp_path / "artifacts",
        job_timeout=10,
        show_image_pull=False,
    )


class Capture:
    """Per-job stdout/stderr buffers for execute(stdout_for=..., stderr_for=...)."""

    def __init__(self):
        self.out: Dict[str, io.BytesIO] = {}
        self.err: Dict[str, io.BytesIO] = {}

    def stdout_for(self, job):
        return self.out.setdefault(job.name, io.BytesIO())

    def stderr_for(self, job):
        return self.err.setdefault(job.name, io.BytesIO())

    def text(self, name: str) -> str:
        return self.out[name].getvalue().decode()


@pytest.fixture
def capture() -> Capture:
    return Capture()
