import dataclasses

import pytest

from dotci.dsl import job, manifest
from dotci.engine import DockerCLI
from dotci.errors import ExitFailure, JobTimeout
from dotci.scheduler import NOT_RUN, execute

pytestmark = [
    pytest.mark.docker,
    pytest.mark.skipif(not DockerCLI().available(), reason="docker daemon not reachable"),
]

IMAGE = "alpine:3.20"


@pytest.fixture
def docker():
    return DockerCLI()


def test_os_release(docker, run_config, capture):
    m = manifest(["s"], job("release", "cat /etc/os-release", stage="s", image=IMAGE))
    report = execute(m, run_config, engine=docker, stdout_for=capture.stdout_for, stderr_for=capture.stderr_for)
    assert report.ok, report.error
    assert "Alpine Linux" in capture.text("release")


def test_exit_failure_stops_later_stages(docker, run_config, capture):
    m = manifest(
        ["first", "second"],
        job("fail", "exit 1", stage="first", image=IMAGE),
        job("later", "echo unreachable", stage="second", image=IMAGE),
    )
    report = execute(m, run_config, engine=docker, stdout_for=capture.stdout_for, stderr_for=capture.stderr_for)
    assert isinstance(report.error, ExitFailure)
    assert report.error.exit_code == 1
    assert report.results["later"] == NOT_RUN


def test_timeout_removes_container(docker, run_config, capture):
    m = manifest(["s"], job("slow", "sleep 30", stage="s", image=IMAGE))
    config = dataclasses.replace(run_config, job_timeout=3)
    report = execute(m, config, engine=docker, stdout_for=capture.stdout_for, stderr_for=capture.stderr_for)
    assert isinstance(report.error, JobTimeout)
    name = report.error.message.rsplit(" ", 1)[-1]
    assert not docker.container_exists(name)


def test_artifacts_between_stages(docker, run_config, capture):
    m = manifest(
        ["build", "test"],
        job("build", "mkdir -p out/nested", "echo built > out/nested/file", stage="build", image=IMAGE, artifacts=["out"]),
        job("test", "cat out/nested/file", stage="test", image=IMAGE),
    )
    report = execute(m, run_config, engine=docker, stdout_for=capture.stdout_for, stderr_for=capture.stderr_for)
    assert report.ok, report.error
    assert capture.text("test") == "built\n"
