# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

ARTIFACTS_DIR = os.environ.get("DOT_ARTIFACTS_DIR", ".artifacts")
JOB_TIMEOUT_SECONDS = float(os.environ.get("DOT_JOB_TIMEOUT", "3600"))
DOCKER_BIN = os.environ.get("DOT_DOCKER_BIN", "docker")
DOCKER_SOCKET = os.environ.get("DOT_DOCKER_SOCKET", "/var/run/docker.sock")

# Every job runs with this working directory; source trees and artifact
# paths are resolved against it.
WORKING_DIR = "/app"


@dataclass(frozen=True)
class RunConfig:
    """Options shared by every job of one run (built by the CLI)."""
    artifacts_dir: Path = Path(ARTIFACTS_DIR)
    job_timeout: float = JOB_TIMEOUT_SECONDS
    mount_docker_socket: bool = False
    show_image_pull: bool = True
    registry_username: str = ""
    registry_password: str = ""
    # -e KEY=VALUE injections, appended to every job's variables
    global_env: Dict[str, str] = field(default_factory=dict)
    export_dir: Optional[Path] = None


def parse_env_assignment(raw: str) -> tuple[str, str]:
    """
    Split a KEY=VALUE command line assignment on the first '='.

    Raises:
        ValueError: if there is no '=' or the key is empty
    """
    key, sep, value = raw.partition("=")
    key = key.strip()
    if not sep or not key:
        raise ValueError(f"variables should be defined as KEY=VALUE: {raw}")
    return key, value
