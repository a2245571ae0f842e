"""Tests for matrix expansion, exclusions and argument overrides."""

from __future__ import annotations

import pytest

from matrixci.dsl import matrix, pipeline
from matrixci.matrix import expand, expand_pipelines
from matrixci.model import PhaseSpec, Platform

from helpers import LOCAL, ok


def _pairs(jobs):
    return [(j.platform_id, j.toolchain_version) for j in jobs]


class TestExpand:
    """Cartesian product + exclusions."""

    def test_two_by_two_with_one_exclusion(self):
        spec = matrix(platform=["A", "B"], version=["1", "2"]).exclude(platform="B", version="1").build()
        jobs = expand(spec)
        assert _pairs(jobs) == [("A", "1"), ("A", "2"), ("B", "2")]

    def test_count_is_product_minus_excluded(self):
        spec = (
            matrix(platform=["A", "B", "C"], version=["1", "2", "3", "4"])
            .exclude(platform="C")
            .exclude(lambda v: v["version"] == "4")
            .build()
        )
        jobs = expand(spec)
        # 12 cells, C drops 4, version 4 drops A4 and B4
        assert len(jobs) == 12 - 4 - 2
        assert len(set(j.key for j in jobs)) == len(jobs)

    def test_declared_order_is_preserved(self):
        spec = matrix(platform=["Z", "A"], version=["stable", "1.57"]).build()
        assert _pairs(expand(spec)) == [("Z", "stable"), ("Z", "1.57"), ("A", "stable"), ("A", "1.57")]

    def test_exclusion_is_idempotent(self):
        once = matrix(platform=["A", "B"], version=["1", "2"]).exclude(platform="B", version="1").build()
        twice = (
            matrix(platform=["A", "B"], version=["1", "2"])
            .exclude(platform="B", version="1")
            .exclude(platform="B", version="1")
            .build()
        )
        assert _pairs(expand(once)) == _pairs(expand(twice))
        assert _pairs(expand(once)) == _pairs(expand(once))

    def test_exclusion_matches_platform_objects_by_name(self):
        linux = Platform("Linux", "x86_64-unknown-linux-gnu")
        mac = Platform("macOS", "x86_64-apple-darwin")
        spec = matrix(platform=[linux, mac], version=["1.57", "stable"]).exclude(platform="macOS", version="1.57").build()
        jobs = expand(spec)
        assert _pairs(jobs) == [("Linux", "1.57"), ("Linux", "stable"), ("macOS", "stable")]
        assert jobs[0].platform is linux

    def test_mapping_values_match_by_subset(self):
        spec = (
            matrix(
                platform=[{"name": "Linux", "triple": "x86_64-unknown-linux-gnu"}, {"name": "Windows", "triple": "x86_64-pc-windows-msvc"}],
                version=["stable"],
            )
            .exclude(platform={"name": "Windows"})
            .build()
        )
        jobs = expand(spec)
        assert _pairs(jobs) == [("Linux", "stable")]
        assert jobs[0].platform.triple == "x86_64-unknown-linux-gnu"

    def test_extra_dimensions_keep_values(self):
        spec = matrix(platform=["A"], version=["1"], features=["min"]).build()
        (j,) = expand(spec)
        assert j.values == {"platform": "A", "version": "1", "features": "min"}

    def test_missing_version_dimension(self):
        with pytest.raises(ValueError, match="version"):
            expand(matrix(platform=["A"]).build())

    def test_duplicate_cells_rejected(self):
        spec = matrix(platform=["A", "A"], version=["1"]).build()
        with pytest.raises(ValueError, match="Duplicate job"):
            expand(spec)

    def test_everything_excluded(self):
        spec = matrix(platform=["A"], version=["1"]).exclude(lambda v: True).build()
        assert expand(spec) == []

    def test_custom_dimension_keys(self):
        spec = matrix(target=["A"], rust=["1.57"]).keys(platform="target", version="rust").build()
        assert _pairs(expand(spec)) == [("A", "1.57")]


class TestOverrides:
    """Per-combination argument overrides replace phase defaults."""

    def test_override_replaces_default_args(self):
        test = PhaseSpec("test", "cargo", ("ci-test", "--all"))
        spec = matrix(platform=["A", "B"], version=["1"]).override({"platform": "B"}, args=["ci-test"]).build()
        a, b = expand(spec, phases=(test,))
        assert a.args_for(test) == ["ci-test", "--all"]
        assert b.args_for(test) == ["ci-test"]

    def test_override_only_touches_named_phase(self):
        check = PhaseSpec("check", "cargo", ("ci-check",))
        spec = matrix(platform=["A"], version=["1"]).override({}, args=["x"], phase="test").build()
        (j,) = expand(spec, phases=(check,))
        assert j.args_for(check) == ["ci-check"]

    def test_last_matching_override_wins(self):
        test = PhaseSpec("test", "cargo", ("ci-test",))
        spec = (
            matrix(platform=["A"], version=["1"])
            .override({"platform": "A"}, args=["first"])
            .override({"version": "1"}, args=["second"])
            .build()
        )
        (j,) = expand(spec)
        assert j.args_for(test) == ["second"]

    def test_exclusions_render_before_separator(self):
        test = PhaseSpec("test", "cargo", ("ci-test", "--", "--nocapture"), exclude_flag="--exclude={}")
        spec = matrix(platform=["B"], version=["1"]).override({}, exclusions=["redis", "session"]).build()
        (j,) = expand(spec)
        assert j.exclusions == frozenset({"redis", "session"})
        assert j.args_for(test) == ["ci-test", "--exclude=redis", "--exclude=session", "--", "--nocapture"]

    def test_exclusions_ignored_without_flag(self):
        check = PhaseSpec("check", "cargo", ("ci-check",))
        spec = matrix(platform=["B"], version=["1"]).override({}, exclusions=["redis"]).build()
        (j,) = expand(spec)
        assert j.args_for(check) == ["ci-check"]


class TestPipelines:
    def test_pipelines_expand_in_order(self):
        jobs = expand_pipelines(
            [
                pipeline("first", matrix(platform=["A"], version=["1", "2"]), ok("p"), toolchain=LOCAL, timeout=60),
                pipeline("second", matrix(platform=["A"], version=["1"]), ok("p"), toolchain=LOCAL),
            ]
        )
        assert [j.job_id for j in jobs] == ["first / A / 1", "first / A / 2", "second / A / 1"]
        assert jobs[0].timeout == 60
        assert jobs[0].toolchain is LOCAL

    def test_same_cell_in_two_pipelines_is_allowed(self):
        jobs = expand_pipelines(
            [
                pipeline("x", matrix(platform=["A"], version=["1"]), ok("p")),
                pipeline("y", matrix(platform=["A"], version=["1"]), ok("p")),
            ]
        )
        assert len(jobs) == 2

    def test_duplicate_pipeline_names(self):
        p = pipeline("x", matrix(platform=["A"], version=["1"]), ok("p"))
        with pytest.raises(ValueError, match="Duplicate pipeline"):
            expand_pipelines([p, p])

    def test_default_phases_when_none_given(self):
        p = pipeline("x", matrix(platform=["A"], version=["1"]))
        assert [ph.name for ph in p.phases] == [
            "check-min",
            "check-min-examples",
            "check-default",
            "test",
            "doc-test",
        ]
