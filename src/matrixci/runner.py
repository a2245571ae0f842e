# runner.py
from __future__ import annotations

import os
import runpy
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .cache import DEFAULT_CACHE_DIR, DependencyCache
from .errors import CIError
from .matrix import expand_pipelines
from .model import FailureCause, JobReport, JobSpec, PhaseResult, PhaseStatus, Pipeline, Platform, RunReport
from .phases import run_phases
from .provision import DEFAULT_WORK_DIR, Provisioner
from .services import ServiceHandleSet, ServiceManager
from .ui.console import Console, get_console


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass
class RunConfig:
    """Knobs for one run. Everything a job needs is passed explicitly, never global."""
    repo_root: Path = field(default_factory=lambda: Path("."))
    cache_root: Path = field(default_factory=lambda: Path(DEFAULT_CACHE_DIR))
    work_root: Path = field(default_factory=lambda: Path(DEFAULT_WORK_DIR))
    max_workers: Optional[int] = None
    provision_retries: int = 0
    keep_cache: bool = False
    check_host: bool = True


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> List[Pipeline]:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> List[Pipeline]
      - PIPELINES = [Pipeline, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"matrixci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    pipelines = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        pipelines = globals_dict["workflow"]()
    elif "PIPELINES" in globals_dict:
        pipelines = globals_dict["PIPELINES"]

    if isinstance(pipelines, Pipeline):
        pipelines = [pipelines]
    if not isinstance(pipelines, list) or not all(isinstance(p, Pipeline) for p in pipelines):
        raise TypeError(
            "Workflow must return/define a List[Pipeline]. "
            "Define workflow() -> List[Pipeline] or PIPELINES = [Pipeline, ...]."
        )

    return pipelines


def platforms_of(pipelines: Sequence[Pipeline]) -> List[Platform]:
    """Every Platform object declared in the pipelines' platform dimensions."""
    seen: Dict[str, Platform] = {}
    for p in pipelines:
        for value in p.matrix.dimensions.get(p.matrix.platform_key, []):
            if isinstance(value, Platform):
                seen.setdefault(value.name, value)
    return list(seen.values())


# ----------------------------------------------------------------------
# One job
# ----------------------------------------------------------------------

def make_provisioner(config: RunConfig, platforms: Sequence[Platform]) -> Provisioner:
    """Provisioner giving every job a private checkout of config.repo_root."""
    return Provisioner(
        platforms=platforms,
        work_root=config.work_root,
        source_root=config.repo_root,
        source_skip=[config.cache_root],
        retries=config.provision_retries,
        check_host=config.check_host,
    )


def _skipped(job: JobSpec) -> List[PhaseResult]:
    return [PhaseResult(phase_name=p.name, status=PhaseStatus.SKIPPED) for p in job.phases]


def run_job(
    job: JobSpec,
    *,
    provisioner: Provisioner,
    services: ServiceManager,
    cache: Optional[DependencyCache] = None,
    console: Optional[Console] = None,
) -> JobReport:
    """
    provision -> start services -> phases -> stop services.

    Never raises: every error becomes a Failed report for this job only.
    Services and the environment are released on every exit path.
    """
    console = console or get_console()
    started = time.monotonic()
    report = JobReport(job=job, status=PhaseStatus.FAILED)
    handle = None
    svc = ServiceHandleSet(job_id=job.job_id)

    console.print_job_start(job.job_id)
    try:
        handle = provisioner.provision(job)
        svc = services.start_services(job.services, job_id=job.job_id)

        report.phases = run_phases(
            handle,
            svc,
            job.phases,
            job=job,
            cache=cache,
            console=console,
            warnings=report.warnings,
        )
        failed = next((r for r in report.phases if r.status is PhaseStatus.FAILED), None)
        if failed is None:
            report.status = PhaseStatus.PASSED
        else:
            report.failed_phase = failed.phase_name
            report.cause = failed.cause
            report.message = (failed.output.strip().splitlines() or [""])[-1]
    except CIError as e:
        report.phases = _skipped(job)
        report.cause = e.cause
        report.message = e.message
    except Exception as e:
        report.phases = report.phases or _skipped(job)
        report.cause = FailureCause.ERROR
        report.message = f"{type(e).__name__}: {e}"
    finally:
        for w in services.stop_services(svc):
            report.warnings.append(w)
            console.print_warning(job.job_id, w)
        if handle is not None:
            for w in provisioner.release(handle):
                report.warnings.append(w)
                console.print_warning(job.job_id, w)

    report.duration = time.monotonic() - started
    console.print_job_done(job.job_id, report.status.value, report.duration)
    return report


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_all(
    jobs: Sequence[JobSpec],
    *,
    config: Optional[RunConfig] = None,
    provisioner: Optional[Provisioner] = None,
    services: Optional[ServiceManager] = None,
    cache: Optional[DependencyCache] = None,
    console: Optional[Console] = None,
) -> RunReport:
    """
    Dispatch every job independently on a bounded thread pool.

    There is no fail-fast across jobs: a failing or timed out job never
    cancels a sibling. The cache is cleared once after every job finished.
    Report rows follow the order of `jobs`, not completion order.
    """
    config = config or RunConfig()
    console = console or get_console()
    if provisioner is None:
        provisioner = make_provisioner(config, [j.platform for j in jobs if j.platform is not None])
    services = services or ServiceManager()
    if cache is None:
        cache = DependencyCache(config.cache_root)

    max_workers = config.max_workers or default_workers()
    started = time.monotonic()
    by_index: Dict[int, JobReport] = {}

    try:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = {
                pool.submit(
                    run_job,
                    job,
                    provisioner=provisioner,
                    services=services,
                    cache=cache,
                    console=console,
                ): idx
                for idx, job in enumerate(jobs)
            }
            for fut in as_completed(futures):
                by_index[futures[fut]] = fut.result()
    finally:
        warnings: List[str] = []
        if not config.keep_cache:
            try:
                s = cache.stats()
                console.print_debug(f"clearing cache: {s['entries']} entries, {s['blobs']} blobs, {s['bytes']} bytes")
            except CIError as e:
                console.print_debug(f"cache stats unavailable: {e.message}")
            try:
                cache.clear_all()
            except CIError as e:
                warnings.append(f"cache clear failed: {e.message}")
                console.print_warning(None, warnings[-1])

    return RunReport(
        jobs=[by_index[i] for i in sorted(by_index)],
        warnings=warnings,
        duration=time.monotonic() - started,
    )


def run_workflow(
    pipelines: Sequence[Pipeline],
    *,
    config: Optional[RunConfig] = None,
    console: Optional[Console] = None,
    **kwargs,
) -> RunReport:
    """Expand every pipeline and run all resulting jobs."""
    config = config or RunConfig()
    jobs = expand_pipelines(pipelines)
    provisioner = kwargs.pop("provisioner", None) or make_provisioner(config, platforms_of(pipelines))
    return run_all(jobs, config=config, provisioner=provisioner, console=console, **kwargs)
