from .dsl import JobBuilder, build, job, manifest
from .model import Job, Manifest
from .scheduler import StageScheduler, execute

__version__ = "0.3.0"
__build_date__ = "unknown"
__commit__ = "unknown"

__all__ = ["job", "build", "manifest", "JobBuilder", "Job", "Manifest", "StageScheduler", "execute"]
