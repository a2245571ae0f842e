# matrix.py
from __future__ import annotations

from itertools import product
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .model import Exclusion, JobSpec, MatrixSpec, Override, Pipeline, Platform, Toolchain


# ---------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------

def _value_matches(actual: Any, expected: Any) -> bool:
    if isinstance(actual, Platform):
        if isinstance(expected, Platform):
            return actual == expected
        if isinstance(expected, Mapping):
            return all(getattr(actual, k, None) == v for k, v in expected.items())
        return actual.name == expected
    if isinstance(actual, Mapping) and isinstance(expected, Mapping):
        # subset match: {"name": "Linux"} matches {"name": "Linux", "os": ...}
        return all(k in actual and actual[k] == v for k, v in expected.items())
    return actual == expected or str(actual) == str(expected)


def matches(rule: Any, values: Mapping[str, Any]) -> bool:
    """True if an Exclusion/Override `match` selects this combination."""
    if callable(rule):
        return bool(rule(values))
    for key, expected in rule.items():
        if key not in values:
            return False
        if not _value_matches(values[key], expected):
            return False
    return True


# ---------------------------------------------------------------------
# Identity helpers
# ---------------------------------------------------------------------

def _platform_of(value: Any) -> Tuple[str, Optional[Platform]]:
    if isinstance(value, Platform):
        return value.name, value
    if isinstance(value, Mapping) and "name" in value:
        p = Platform(name=str(value["name"]), triple=str(value.get("triple", "")), os=value.get("os"))
        return p.name, p
    # bare id: the provisioner may still swap in a registered Platform of that name
    return str(value), Platform(name=str(value), triple="")


def _apply_overrides(
    overrides: Iterable[Override],
    values: Mapping[str, Any],
) -> Tuple[Dict[str, Tuple[str, ...]], frozenset]:
    args_by_phase: Dict[str, Tuple[str, ...]] = {}
    excluded: set = set()
    for ov in overrides:
        if not matches(ov.match, values):
            continue
        if ov.args is not None:
            # replace, never merge; the last matching override wins
            args_by_phase[ov.phase] = tuple(ov.args)
        excluded.update(ov.exclusions)
    return args_by_phase, frozenset(excluded)


# ---------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------

def combinations(spec: MatrixSpec) -> List[Dict[str, Any]]:
    """Cartesian product in declared dimension order, values in declared order."""
    names = list(spec.dimensions.keys())
    value_lists = [list(spec.dimensions[n]) for n in names]
    return [dict(zip(names, combo)) for combo in product(*value_lists)]


def is_excluded(spec: MatrixSpec, values: Mapping[str, Any]) -> bool:
    return any(matches(ex.match, values) for ex in spec.exclude)


def expand(
    spec: MatrixSpec,
    *,
    pipeline: str = "ci",
    phases: Tuple = (),
    services: Tuple = (),
    toolchain: Optional[Toolchain] = None,
    timeout: Optional[float] = None,
) -> List[JobSpec]:
    """
    Expand a matrix into concrete jobs.

    Excluded combinations are dropped entirely. Raises ValueError when the
    platform/version dimensions are missing or two cells share an identity.
    """
    for key in (spec.platform_key, spec.version_key):
        if key not in spec.dimensions:
            raise ValueError(
                f"Matrix for '{pipeline}' has no '{key}' dimension. "
                f"Known dimensions: {list(spec.dimensions)}"
            )

    jobs: List[JobSpec] = []
    seen: set = set()

    for values in combinations(spec):
        if is_excluded(spec, values):
            continue

        platform_id, platform = _platform_of(values[spec.platform_key])
        version = str(values[spec.version_key])
        overrides, excluded = _apply_overrides(spec.overrides, values)

        j = JobSpec(
            pipeline=pipeline,
            platform_id=platform_id,
            toolchain_version=version,
            values=dict(values),
            argument_overrides=overrides,
            exclusions=excluded,
            timeout=timeout,
            platform=platform,
            phases=tuple(phases),
            services=tuple(services),
            toolchain=toolchain or Toolchain(),
        )
        if j.key in seen:
            raise ValueError(f"Duplicate job in matrix: {j.job_id}")
        seen.add(j.key)
        jobs.append(j)

    return jobs


def expand_pipeline(p: Pipeline) -> List[JobSpec]:
    return expand(
        p.matrix,
        pipeline=p.name,
        phases=p.phases,
        services=p.services,
        toolchain=p.toolchain,
        timeout=p.timeout,
    )


def expand_pipelines(pipelines: Iterable[Pipeline]) -> List[JobSpec]:
    pipelines = list(pipelines)
    names = [p.name for p in pipelines]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValueError(f"Duplicate pipeline names found: {dupes}")

    jobs: List[JobSpec] = []
    for p in pipelines:
        jobs.extend(expand_pipeline(p))
    return jobs
