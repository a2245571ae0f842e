"""Tests for the phase runner: ordering, fail-fast, timeouts, caching."""

from __future__ import annotations

import time

from matrixci.cache import DependencyCache
from matrixci.model import FailureCause, JobSpec, PhaseStatus
from matrixci.phases import default_phases, run_phases
from matrixci.services import ServiceHandleSet

from helpers import LOCAL, PLAT_A, fail, ok, py_phase, sleeper


def _job(phases, **kwargs) -> JobSpec:
    return JobSpec(pipeline="ci", platform_id="A", toolchain_version="1", platform=PLAT_A, phases=tuple(phases), toolchain=LOCAL, **kwargs)


def _run(handle, job, console, **kwargs):
    return run_phases(handle, ServiceHandleSet(job_id=job.job_id), job.phases, job=job, console=console, **kwargs)


def test_all_phases_pass_in_order(handle, console, tmp_path):
    log = tmp_path / "order.log"
    phases = [py_phase(f"p{i}", f"open(r'{log}', 'a').write('{i}')") for i in range(1, 6)]
    results = _run(handle, _job(phases), console)

    assert [r.phase_name for r in results] == ["p1", "p2", "p3", "p4", "p5"]
    assert all(r.status is PhaseStatus.PASSED for r in results)
    assert log.read_text() == "12345"


def test_first_failure_skips_the_rest(handle, console, tmp_path):
    marker = tmp_path / "ran"
    phases = [fail("check-min")] + [py_phase(f"p{i}", f"open(r'{marker}', 'w')") for i in range(2, 6)]
    results = _run(handle, _job(phases), console)

    assert results[0].status is PhaseStatus.FAILED
    assert results[0].cause is FailureCause.NON_ZERO_EXIT
    assert results[0].exit_code == 3
    assert [r.status for r in results[1:]] == [PhaseStatus.SKIPPED] * 4
    assert not marker.exists()


def test_repeated_runs_halt_at_same_phase(handle, console):
    job = _job([ok("a"), ok("b"), fail("c"), ok("d")])
    first = [(r.phase_name, r.status) for r in _run(handle, job, console)]
    second = [(r.phase_name, r.status) for r in _run(handle, job, console)]
    assert first == second
    assert first[2] == ("c", PhaseStatus.FAILED)


def test_timeout_kills_and_fails(handle, console):
    job = _job([sleeper("test", 30, timeout=0.5), ok("doc-test")])
    t0 = time.monotonic()
    results = _run(handle, job, console)

    assert time.monotonic() - t0 < 15
    assert results[0].status is PhaseStatus.FAILED
    assert results[0].cause is FailureCause.TIMEOUT
    assert results[1].status is PhaseStatus.SKIPPED


def test_job_timeout_caps_phase_timeout(handle, console):
    job = _job([sleeper("slow", 30, timeout=600)], timeout=0.5)
    (result,) = _run(handle, job, console)
    assert result.cause is FailureCause.TIMEOUT


def test_missing_program_is_a_failed_phase(handle, console):
    from matrixci.model import PhaseSpec

    job = _job([PhaseSpec("check-min", "definitely-not-a-real-tool-xyz"), ok("after")])
    results = _run(handle, job, console)
    assert results[0].status is PhaseStatus.FAILED
    assert results[0].exit_code == 127
    assert results[1].status is PhaseStatus.SKIPPED


def test_output_is_captured(handle, console):
    job = _job([py_phase("hello", "print('hello from phase')")])
    (result,) = _run(handle, job, console)
    assert "hello from phase" in result.output


def test_environment_and_services_reach_phases(handle, console):
    from matrixci.model import ServiceSpec
    from matrixci.services import ServiceHandle

    svc = ServiceHandleSet(job_id="x", handles=[ServiceHandle(spec=ServiceSpec("redis", "redis:6"), instance="r", port=1234)])
    code = "import os, sys; sys.exit(0 if os.environ['REDIS_PORT'] == '1234' and os.environ['OUT_DIR'] else 1)"
    job = _job([py_phase("env", code)])
    (result,) = run_phases(handle, svc, job.phases, job=job, console=console)
    assert result.status is PhaseStatus.PASSED


def test_override_args_are_used(handle, console):
    phase = fail("test")
    job = _job([phase], argument_overrides={"test": ("-c", "pass")})
    (result,) = _run(handle, job, console)
    assert result.status is PhaseStatus.PASSED


def test_cache_saved_and_restored_across_jobs(tmp_path, handle, console):
    import os

    from matrixci.provision import EnvironmentHandle

    cache = DependencyCache(tmp_path / "cache")
    build = py_phase(
        "build",
        "import os; os.makedirs(os.environ['OUT_DIR'], exist_ok=True); open(os.path.join(os.environ['OUT_DIR'], 'artifact'), 'w').write('x')",
        cache_dirs=("target",),
    )
    (r1,) = _run(handle, _job([build]), console, cache=cache)
    assert r1.status is PhaseStatus.PASSED
    assert len(cache.keys()) == 1

    # a second job with a fresh workdir sees the artifact before its phase runs
    other = tmp_path / "other"
    other.mkdir()
    env = os.environ.copy()
    env["OUT_DIR"] = str(other / "target")
    h2 = EnvironmentHandle(job_id="ci / A / 1 (2)", platform=PLAT_A, version="1", workdir=other, env=env)
    check = py_phase(
        "check",
        "import os, sys; sys.exit(0 if os.path.exists(os.path.join(os.environ['OUT_DIR'], 'artifact')) else 1)",
        cache_dirs=("target",),
    )
    (r2,) = _run(h2, _job([check]), console, cache=cache)
    assert r2.status is PhaseStatus.PASSED


def test_unreadable_cache_is_a_miss(tmp_path, handle, console):
    from matrixci.cache import cache_key, manifest_digest

    cache = DependencyCache(tmp_path / "cache")
    key = cache_key("1", manifest_digest(".", ()))
    cache.entry_path(key).write_text("garbage", encoding="utf-8")

    warnings = []
    (result,) = _run(handle, _job([ok("build", cache_dirs=("target",))]), console, cache=cache, warnings=warnings)
    assert result.status is PhaseStatus.PASSED
    assert any("miss" in w for w in warnings)


def test_default_phases_shape():
    phases = default_phases()
    assert [p.args for p in phases] == [
        ("ci-min",),
        ("ci-check-min-examples",),
        ("ci-check",),
        ("ci-test",),
        ("ci-doctest",),
    ]
    test = phases[3]
    assert test.timeout == 40 * 60
    assert test.exclude_flag == "--exclude={}"


def test_unhashable_cache_input_is_a_miss(tmp_path, handle, console):
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "Cargo.lock").write_text("lock", encoding="utf-8")
    (handle.srcdir / "Cargo.lock").symlink_to(outside / "Cargo.lock")

    cache = DependencyCache(tmp_path / "cache")
    job = _job([ok("a"), ok("b", cache_dirs=("target",), cache_inputs=("Cargo.lock",))])
    warnings = []
    results = _run(handle, job, console, cache=cache, warnings=warnings)

    assert [(r.phase_name, r.status) for r in results] == [("a", PhaseStatus.PASSED), ("b", PhaseStatus.PASSED)]
    assert any("could not hash cache inputs" in w for w in warnings)
    assert cache.keys() == []


def test_phases_run_in_the_checkout(tmp_path, handle, console):
    (handle.srcdir / "marker").write_text("here", encoding="utf-8")
    job = _job([py_phase("cwd", "import sys; sys.exit(0 if open('marker').read() == 'here' else 1)")])
    (result,) = _run(handle, job, console)
    assert result.status is PhaseStatus.PASSED
