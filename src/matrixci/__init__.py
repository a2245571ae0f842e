from .dsl import matrix, phase, service, health, platform, pipeline, wf, Matrix
from .matrix import expand, expand_pipelines
from .phases import default_phases, run_phases
from .runner import run_all, run_job, run_workflow, load_workflow, RunConfig
from .model import (
    JobSpec,
    MatrixSpec,
    PhaseResult,
    PhaseSpec,
    PhaseStatus,
    Pipeline,
    Platform,
    ServiceSpec,
    Toolchain,
)

__all__ = [
    "matrix", "phase", "service", "health", "platform", "pipeline", "wf", "Matrix",
    "expand", "expand_pipelines", "default_phases", "run_phases",
    "run_all", "run_job", "run_workflow", "load_workflow", "RunConfig",
    "JobSpec", "MatrixSpec", "PhaseResult", "PhaseSpec", "PhaseStatus",
    "Pipeline", "Platform", "ServiceSpec", "Toolchain",
]
