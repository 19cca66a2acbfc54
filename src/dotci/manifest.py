# manifest.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError
from .model import Job, Manifest

DEFAULT_JOB_FILE = "dot.yml"


# -------------------- Schemas --------------------

class JobDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    stage: str = Field(min_length=1)
    image: str = Field(min_length=1)
    src: str = ""
    script: List[str] = Field(default_factory=list)
    entrypoint: List[str] = Field(default_factory=list)
    variables: List[Dict[str, Any]] = Field(default_factory=list)
    artifacts: List[str] = Field(default_factory=list)
    condition: str = ""

    @field_validator("src", "condition", mode="before")
    @classmethod
    def _none_is_empty(cls, v):
        return "" if v is None else v

    @field_validator("script", "entrypoint", "variables", "artifacts", mode="before")
    @classmethod
    def _none_is_empty_list(cls, v):
        return [] if v is None else v

    def to_job(self) -> Job:
        return Job(
            name=self.name,
            stage=self.stage,
            image=self.image,
            src=self.src,
            script=tuple(self.script),
            entrypoint=tuple(self.entrypoint),
            variables=tuple(self.variables),
            artifacts=tuple(self.artifacts),
            condition=self.condition,
        )


class ManifestDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stages: List[str] = Field(min_length=1)
    jobs: List[JobDocument] = Field(min_length=1)

    def to_manifest(self) -> Manifest:
        return Manifest(
            stages=tuple(self.stages),
            jobs=tuple(j.to_job() for j in self.jobs),
        )


# -------------------- Loading --------------------

def parse_manifest(text: str, source: str = "<string>") -> Manifest:
    """
    Parse and validate a YAML manifest.

    Raises:
        ConfigError: malformed YAML, schema violations, duplicate names or
            jobs assigned to undeclared stages
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(job="", message=f"could not parse {source}", details={"reason": str(e)}) from e

    if not isinstance(data, dict):
        raise ConfigError(job="", message=f"{source} must be a mapping with 'stages' and 'jobs'")

    try:
        doc = ManifestDocument.model_validate(data)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise ConfigError(job="", message=f"invalid job file {source}", details={"errors": "; ".join(errors)}) from e

    m = doc.to_manifest()
    m.validate()
    return m


def load_manifest(path: str | Path = DEFAULT_JOB_FILE) -> Manifest:
    """Load the job file at path (dot.yml by default)."""
    p = Path(path).expanduser()
    if not p.exists():
        raise ConfigError(job="", message=f"job file not found: {p}")
    return parse_manifest(p.read_text(encoding="utf-8"), source=str(p))
