"""CLI tests: plan output and exit codes."""

from __future__ import annotations

from pathlib import Path

from click.testing import CliRunner

from matrixci.cli import cli

WORKFLOW = '''
import sys
from matrixci.dsl import matrix, phase, pipeline, wf
from matrixci.model import Toolchain

LOCAL = Toolchain(name="local", install=None, probe=None, env={{}})


def workflow():
    return wf(
        pipeline(
            "ci",
            matrix(platform=["A", "B"], version=["1", "2"]).exclude(platform="B", version="1"),
            phase("check", sys.executable, "-c", "pass"),
            phase("test", sys.executable, "-c", "{test_code}"),
            toolchain=LOCAL,
        ),
    )
'''


def _write(test_code: str = "pass") -> None:
    Path("matrixci_workflow.py").write_text(WORKFLOW.format(test_code=test_code), encoding="utf-8")


def test_plan_lists_expanded_jobs():
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write()
        result = runner.invoke(cli, ["plan"])
    assert result.exit_code == 0, result.output
    assert "PLAN (3 job(s))" in result.output
    assert "ci / A / 1" in result.output
    assert "ci / B / 2" in result.output
    assert "ci / B / 1" not in result.output


def test_run_passes():
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write()
        result = runner.invoke(cli, ["run", "--workers", "2"])
    assert result.exit_code == 0, result.output
    assert "3/3 job(s) passed" in result.output


def test_run_failure_exit_code_names_phase():
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write("raise SystemExit(4)")
        result = runner.invoke(cli, ["--quiet", "run"])
    assert result.exit_code == 1
    assert "phase=test cause=non_zero_exit" in result.output
    assert "0/3 job(s) passed" in result.output


def test_missing_workflow():
    runner = CliRunner()
    with runner.isolated_filesystem():
        result = runner.invoke(cli, ["run", "--workflow", "nope.py"])
    assert result.exit_code == 1


def test_multiple_workflows_need_explicit_choice():
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write()
        Path("other_workflow.py").write_text("PIPELINES = []\n", encoding="utf-8")
        result = runner.invoke(cli, ["plan"])
        assert result.exit_code == 1

        result = runner.invoke(cli, ["plan", "--workflow", "other_workflow.py"])
        assert result.exit_code == 0
        assert "PLAN (0 job(s))" in result.output
