# scheduler.py
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .artifacts import ArtifactRelay
from .condition import ConditionEvaluator
from .config import JOB_TIMEOUT_SECONDS, RunConfig
from .deadline import Deadline
from .engine import ContainerEngine, DockerCLI, encode_registry_auth
from .errors import JobTimeout
from .model import Job, Manifest
from .runner import RunnerOptions, WorkloadRunner
from .store import MemStore
from .ui.console import get_console

SUCCESS = "success"
FAILED = "failed"
TIMEOUT = "timeout"
SKIPPED = "skipped(condition)"
NOT_RUN = "not-run"


@dataclass
class JobResult:
    name: str
    stage: str
    status: str
    error: Optional[BaseException] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    artifacts: List[str] = field(default_factory=list)


@dataclass
class RunReport:
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    stages_completed: List[str] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def results(self) -> Dict[str, str]:
        return {name: r.status for name, r in self.jobs.items()}


RunnerFactory = Callable[[Job], WorkloadRunner]


def _status_for(error: BaseException) -> str:
    return TIMEOUT if isinstance(error, JobTimeout) else FAILED


def _hint_for(error: BaseException) -> Optional[str]:
    if isinstance(error, JobTimeout):
        return "Raise --job-timeout if the job needs more time."
    return None


class StageScheduler:
    """
    Runs stages in declared order; the eligible jobs of a stage run
    concurrently, and the next stage starts only once every job of the
    current one is finished.

    On the first failing job the stage still waits for its siblings (they
    are not cancelled), then the run stops.
    """

    def __init__(
        self,
        runner_factory: RunnerFactory,
        *,
        evaluator: Optional[ConditionEvaluator] = None,
        job_timeout: float = JOB_TIMEOUT_SECONDS,
        parent: Optional[Deadline] = None,
    ):
        self.runner_factory = runner_factory
        self.evaluator = evaluator or ConditionEvaluator()
        self.job_timeout = job_timeout
        self.parent = parent or Deadline()
        self.console = get_console()

    def run(self, manifest: Manifest) -> RunReport:
        """
        Raises:
            ConfigError: undeclared stages, bad variables or conditions.
                Nothing of the affected stage has been started.
        """
        manifest.validate()
        report = RunReport()

        for stage in manifest.stages:
            if report.error is not None:
                for j in manifest.jobs_in(stage):
                    report.jobs[j.name] = JobResult(j.name, stage, NOT_RUN)
                continue

            eligible, skipped = self.evaluator.select(manifest.jobs_in(stage))
            for j in skipped:
                report.jobs[j.name] = JobResult(j.name, stage, SKIPPED)
                self.console.print_job_skipped(j.name, "condition is false")

            # runners are configured up front so bad variables fail the
            # stage before any of its containers exist
            runners = [self.runner_factory(j) for j in eligible]

            self.console.print_stage(stage, [r.job.name for r in runners])
            error = self._run_stage(stage, runners, report)
            if error is not None:
                report.error = error
            else:
                report.stages_completed.append(stage)

        return report

    def _run_stage(self, stage: str, runners: List[WorkloadRunner], report: RunReport) -> Optional[BaseException]:
        if not runners:
            return None

        first_error: Optional[BaseException] = None
        with ThreadPoolExecutor(max_workers=len(runners), thread_name_prefix=f"stage-{stage}") as pool:
            futures = {}
            for runner in runners:
                result = JobResult(runner.job.name, stage, "running")
                report.jobs[runner.job.name] = result
                futures[pool.submit(self._run_one, runner, result)] = result

            try:
                for future in as_completed(futures):
                    result = futures[future]
                    try:
                        result.artifacts = future.result()
                        result.status = SUCCESS
                        self.console.print_success(result.name)
                    except Exception as e:
                        result.status = _status_for(e)
                        result.error = e
                        self.console.print_failure(
                            result.name,
                            str(e),
                            exit_code=getattr(e, "exit_code", None),
                            hint=_hint_for(e),
                        )
                        if first_error is None:
                            first_error = e
            except KeyboardInterrupt:
                # the pool waits for its jobs on the way out; stop them first
                self.parent.cancel()
                raise
        return first_error

    def _run_one(self, runner: WorkloadRunner, result: JobResult) -> List[str]:
        # each job gets its own deadline; one timing out leaves siblings alone
        deadline = self.parent.child(self.job_timeout)
        self.console.print_job_start(runner.job.name)
        result.started_at = time.monotonic()
        try:
            return runner.run(deadline)
        finally:
            result.finished_at = time.monotonic()


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def execute(
    manifest: Manifest,
    config: Optional[RunConfig] = None,
    *,
    engine: Optional[ContainerEngine] = None,
    parent: Optional[Deadline] = None,
    stdout_for: Optional[Callable[[Job], object]] = None,
    stderr_for: Optional[Callable[[Job], object]] = None,
) -> RunReport:
    """
    Wire one run together: a fresh store and artifact cache, one runner per
    job, and the stage scheduler.
    """
    config = config or RunConfig()
    engine = engine or DockerCLI()
    console = get_console()

    relay = ArtifactRelay(engine, config.artifacts_dir, MemStore())
    auth = None
    if config.registry_username:
        auth = encode_registry_auth(config.registry_username, config.registry_password)

    def factory(job: Job) -> WorkloadRunner:
        options = RunnerOptions(
            show_image_pull=config.show_image_pull,
            stdout=stdout_for(job) if stdout_for else console.job_output(job.name),
            stderr=stderr_for(job) if stderr_for else console.job_output(job.name, err=True),
            mount_docker_socket=config.mount_docker_socket,
            registry_auth=auth,
            global_env=dict(config.global_env),
        )
        return WorkloadRunner(job, engine, relay, options)

    scheduler = StageScheduler(factory, job_timeout=config.job_timeout, parent=parent)
    report = scheduler.run(manifest)

    if report.ok and config.export_dir is not None:
        written = relay.export(config.export_dir)
        console.print_info(f"Exported {len(written)} artifact file(s) to {config.export_dir}")
    return report
