# phases.py
from __future__ import annotations

import os
import signal
import subprocess
import time
from pathlib import Path
from typing import List, Optional, Sequence, Set

from .cache import DependencyCache, cache_key, manifest_digest
from .errors import CacheIOError, PhaseFailure
from .model import FailureCause, JobSpec, PhaseResult, PhaseSpec, PhaseStatus
from .provision import EnvironmentHandle
from .services import ServiceHandleSet
from .ui.console import Console, get_console


OUTPUT_TAIL = 4000


# ---------------------------------------------------------------------
# Canonical pipeline
# ---------------------------------------------------------------------

def default_phases(
    program: str = "cargo",
    *,
    test_timeout: float = 40 * 60,
    cache_dirs: Sequence[str] = ("target",),
    cache_inputs: Sequence[str] = ("Cargo.lock",),
) -> List[PhaseSpec]:
    """
    The fixed five-phase pipeline, cheapest first:
      minimal build -> minimal + examples -> default features -> tests -> doc tests
    """
    common = dict(cache_dirs=tuple(cache_dirs), cache_inputs=tuple(cache_inputs))
    return [
        PhaseSpec("check-min", program, ("ci-min",), **common),
        PhaseSpec("check-min-examples", program, ("ci-check-min-examples",), **common),
        PhaseSpec("check-default", program, ("ci-check",), **common),
        PhaseSpec("test", program, ("ci-test",), timeout=test_timeout, exclude_flag="--exclude={}", **common),
        PhaseSpec("doc-test", program, ("ci-doctest",), timeout=test_timeout, **common),
    ]


# ---------------------------------------------------------------------
# Execution primitives
# ---------------------------------------------------------------------

def _kill_tree(proc: subprocess.Popen) -> None:
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except (ProcessLookupError, PermissionError):
            pass
    proc.kill()


def _tail(text: Optional[str], n: int = OUTPUT_TAIL) -> str:
    if not text:
        return ""
    return text[-n:]


def _run_phase(
    job: JobSpec,
    phase: PhaseSpec,
    env: dict,
    cwd: Path,
    timeout: Optional[float],
) -> str:
    """Run one phase to completion. Returns captured output, raises PhaseFailure."""
    argv = [phase.program, *job.args_for(phase)]
    try:
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd),
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=(os.name == "posix"),
        )
    except OSError as e:
        raise PhaseFailure(
            job=job.job_id,
            message=f"could not start {phase.program}: {e}",
            phase=phase.name,
            reason=FailureCause.NON_ZERO_EXIT,
            exit_code=127,
        )

    try:
        out, _ = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_tree(proc)
        out, _ = proc.communicate()
        raise PhaseFailure(
            job=job.job_id,
            message=f"exceeded {timeout:.0f}s: {' '.join(argv)}",
            phase=phase.name,
            reason=FailureCause.TIMEOUT,
            output=_tail(out),
        )

    if proc.returncode != 0:
        raise PhaseFailure(
            job=job.job_id,
            message=" ".join(argv),
            phase=phase.name,
            reason=FailureCause.NON_ZERO_EXIT,
            exit_code=proc.returncode,
            output=_tail(out),
        )
    return _tail(out)


class _PhaseCache:
    """Per-job view of the shared cache: restores each key at most once."""

    def __init__(self, cache: Optional[DependencyCache], job: JobSpec, handle: EnvironmentHandle, console: Console):
        self.cache = cache
        self.job = job
        self.handle = handle
        self.console = console
        self.restored: Set[str] = set()
        self.warnings: List[str] = []

    def _key(self, phase: PhaseSpec) -> Optional[str]:
        if self.cache is None or not phase.cache_dirs:
            return None
        try:
            digest = manifest_digest(self.handle.srcdir, phase.cache_inputs)
        except (OSError, ValueError) as e:
            # e.g. an input symlinked out of the checkout
            raise CacheIOError(job=self.job.job_id, message=f"could not hash cache inputs of {phase.name}: {e}")
        return cache_key(self.job.toolchain_version, digest)

    def _warn(self, msg: str) -> None:
        self.warnings.append(msg)
        self.console.print_warning(self.job.job_id, msg)

    def restore(self, phase: PhaseSpec) -> None:
        try:
            key = self._key(phase)
            if key is None or key in self.restored:
                return
            ref = self.cache.get(key)
            if ref is None:
                self.console.print_cache(self.job.job_id, "miss", key)
                return
            self.cache.restore(ref, self.handle.workdir)
            self.restored.add(key)
            self.console.print_cache(self.job.job_id, "hit", key)
        except CacheIOError as e:
            self._warn(f"cache treated as miss: {e.message}")

    def save(self, phase: PhaseSpec) -> None:
        try:
            key = self._key(phase)
            if key is None:
                return
            art = self.cache.archive(key, self.handle.workdir, phase.cache_dirs)
            self.cache.put(key, str(art))
            self.restored.add(key)
            self.console.print_cache(self.job.job_id, "saved", key)
        except CacheIOError as e:
            self._warn(f"cache not saved: {e.message}")


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

def run_phases(
    handle: EnvironmentHandle,
    services: ServiceHandleSet,
    phases: Sequence[PhaseSpec],
    *,
    job: JobSpec,
    cache: Optional[DependencyCache] = None,
    console: Optional[Console] = None,
    warnings: Optional[List[str]] = None,
) -> List[PhaseResult]:
    """
    Run phases strictly in order. The first failure stops the job and every
    later phase is reported as skipped.

    Phases run in the job's checkout (handle.srcdir). Each phase is bounded
    by its own timeout, further capped by whatever is left of the job's
    timeout.
    """
    console = console or get_console()
    pc = _PhaseCache(cache, job, handle, console)

    base_env = dict(handle.env)
    base_env.update(services.env())

    started = time.monotonic()
    results: List[PhaseResult] = []
    failed = False

    for phase in phases:
        if failed:
            results.append(PhaseResult(phase_name=phase.name, status=PhaseStatus.SKIPPED))
            continue

        timeout = phase.timeout
        if job.timeout is not None:
            remaining = max(0.0, job.timeout - (time.monotonic() - started))
            timeout = remaining if timeout is None else min(timeout, remaining)

        console.print_phase(job.job_id, phase.name)
        env = dict(base_env)
        env.update(phase.env)

        pc.restore(phase)
        t0 = time.monotonic()
        try:
            out = _run_phase(job, phase, env, handle.srcdir, timeout)
        except PhaseFailure as e:
            failed = True
            results.append(
                PhaseResult(
                    phase_name=phase.name,
                    status=PhaseStatus.FAILED,
                    duration=time.monotonic() - t0,
                    output=e.output,
                    cause=e.reason,
                    exit_code=e.exit_code,
                )
            )
            console.print_phase_failed(job.job_id, phase.name, str(e))
            continue

        results.append(
            PhaseResult(
                phase_name=phase.name,
                status=PhaseStatus.PASSED,
                duration=time.monotonic() - t0,
                output=out,
                exit_code=0,
            )
        )
        pc.save(phase)

    if warnings is not None:
        warnings.extend(pc.warnings)
    return results
