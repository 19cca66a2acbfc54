# dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from .model import Job, Manifest


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *script: str,  # allow: job("x", "make", "make test", stage=..., image=...)
    stage: str,
    image: str,
    src: str = "",
    entrypoint: Optional[List[str]] = None,
    variables: Optional[List[Dict[str, Any]]] = None,
    artifacts: Optional[List[str]] = None,
    condition: str = "",
) -> Job:
    if not image:
        raise ValueError(f"job({name!r}) needs an image")
    return Job(
        name=name,
        stage=stage,
        image=image,
        script=tuple(script),
        src=src,
        entrypoint=tuple(entrypoint or ()),
        variables=tuple(dict(v) for v in (variables or [])),
        artifacts=tuple(artifacts or ()),
        condition=condition,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    """
    Collects job settings step by step and produces an immutable Job.

        JobBuilder("build").in_stage("build").with_image("alpine") \
            .run("make").creates_artifacts("out/app").build()
    """

    def __init__(self, name: str):
        self.name = name
        self._stage: str = ""
        self._image: str = ""
        self._src: str = ""
        self._script: list[str] = []
        self._entrypoint: list[str] = []
        self._variables: list[dict[str, Any]] = []
        self._artifacts: list[str] = []
        self._condition: str = ""

    def in_stage(self, stage: str):
        self._stage = stage
        return self

    def with_image(self, image: str):
        self._image = image
        return self

    def with_src(self, src: str):
        self._src = src
        return self

    def run(self, *lines: str):
        self._script.extend(lines)
        return self

    def with_entrypoint(self, *entrypoint: str):
        self._entrypoint = list(entrypoint)
        return self

    def with_env(self, **env):
        # one mapping per variable, in declaration order
        self._variables.extend({k: v} for k, v in env.items())
        return self

    def creates_artifacts(self, *paths: str):
        self._artifacts.extend(paths)
        return self

    def when(self, condition: str):
        self._condition = condition
        return self

    def build(self) -> Job:
        if not self._stage:
            raise ValueError(f"Job '{self.name}' has no stage")
        return job(
            self.name,
            *self._script,
            stage=self._stage,
            image=self._image,
            src=self._src,
            entrypoint=self._entrypoint,
            variables=self._variables,
            artifacts=self._artifacts,
            condition=self._condition,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').in_stage('test').with_image('alpine').run(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Manifest helper
# ---------------------------------------------------------------------

def manifest(stages: Iterable[str], *jobs: Job) -> Manifest:
    """
    Assemble and validate a manifest in code:

        manifest(["build", "test"], job(...), job(...))
    """
    m = Manifest(stages=tuple(stages), jobs=tuple(jobs))
    m.validate()
    return m
