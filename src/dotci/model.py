# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ConfigError

# A variable is declared as a one-entry mapping: {"KEY": value}
Variable = Mapping[str, Any]


@dataclass(frozen=True)
class Job:
    """
    One unit of work, executed inside its own container.

    Built once from the manifest (or the DSL) and never mutated afterwards.
    """
    name: str
    stage: str
    image: str
    script: Tuple[str, ...] = ()
    src: str = ""
    entrypoint: Tuple[str, ...] = ()
    variables: Tuple[Variable, ...] = ()
    artifacts: Tuple[str, ...] = ()
    condition: str = ""


@dataclass(frozen=True)
class Manifest:
    """Ordered stages + the jobs assigned to them."""
    stages: Tuple[str, ...]
    jobs: Tuple[Job, ...]

    def jobs_in(self, stage: str) -> List[Job]:
        return [j for j in self.jobs if j.stage == stage]

    def validate(self) -> None:
        """
        Requires:
          - stage ids unique
          - job names unique
          - every job's stage declared in `stages`
        """
        if len(set(self.stages)) != len(self.stages):
            dupes = sorted({s for s in self.stages if self.stages.count(s) > 1})
            raise ConfigError(job="", message=f"duplicate stages: {dupes}")

        names = [j.name for j in self.jobs]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ConfigError(job="", message=f"duplicate job names: {dupes}")

        declared = set(self.stages)
        for j in self.jobs:
            if j.stage not in declared:
                raise ConfigError(
                    job=j.name,
                    message=f"stage not defined: {j.stage}",
                    details={"stages": list(self.stages)},
                )


# ----------------------------------------------------------------------
# Variable helpers
# ----------------------------------------------------------------------

def variable_items(job_name: str, variables: Tuple[Variable, ...] | List[Variable]) -> List[Tuple[str, Any]]:
    """
    Flatten one-entry variable mappings into (key, value) pairs, in order.
    A mapping with anything but exactly one entry is a configuration error.
    """
    items: List[Tuple[str, Any]] = []
    for v in variables:
        if len(v) != 1:
            raise ConfigError(
                job=job_name,
                message="variables should be defined as a key value pair",
                details={"variable": dict(v)},
            )
        items.extend(v.items())
    return items


def format_value(value: Any) -> str:
    """Render a variable value for the container environment."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def env_list(job_name: str, variables, extra: Optional[Dict[str, str]] = None) -> List[str]:
    """KEY=VALUE strings for the container: job variables, then global ones."""
    env = [f"{k}={format_value(v)}" for k, v in variable_items(job_name, variables)]
    for k, v in (extra or {}).items():
        env.append(f"{k}={v}")
    return env
