# src/matrixci/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence

from .model import (
    Exclusion,
    HealthCheck,
    MatrixSpec,
    Override,
    PhaseSpec,
    Pipeline,
    Platform,
    Predicate,
    ServiceSpec,
    Toolchain,
)
from .phases import default_phases


# ---------------------------------------------------------------------
# Phase / service helpers
# ---------------------------------------------------------------------

def phase(
    name: str,
    program: str,
    *args: str,
    timeout: Optional[float] = None,
    exclude_flag: Optional[str] = None,
    cache_dirs: Sequence[str] = (),
    cache_inputs: Sequence[str] = (),
    env: Optional[Dict[str, str]] = None,
) -> PhaseSpec:
    """Create a phase: phase("test", "cargo", "ci-test", timeout=2400)."""
    return PhaseSpec(
        name=name,
        program=program,
        args=tuple(args),
        timeout=timeout,
        exclude_flag=exclude_flag,
        cache_dirs=tuple(cache_dirs),
        cache_inputs=tuple(cache_inputs),
        env={k: str(v) for k, v in (env or {}).items()},
    )


def health(command: str, *, interval: float = 10.0, timeout: float = 5.0, retries: int = 5) -> HealthCheck:
    return HealthCheck(command=command, interval=interval, timeout=timeout, max_retries=retries)


def service(
    name: str,
    ref: str,
    *,
    port: int = 0,
    kind: str = "container",
    health_check: Optional[HealthCheck] = None,
    entrypoint: Optional[str] = None,
    args: Sequence[str] = (),
    env: Optional[Dict[str, str]] = None,
) -> ServiceSpec:
    if kind not in ("container", "process"):
        raise ValueError(f"service({name!r}): kind must be 'container' or 'process', got {kind!r}")
    return ServiceSpec(
        name=name,
        ref=ref,
        port=port,
        kind=kind,
        health=health_check,
        entrypoint=entrypoint,
        args=tuple(args),
        env={k: str(v) for k, v in (env or {}).items()},
    )


def platform(name: str, triple: str = "", *, os: Optional[str] = None) -> Platform:
    return Platform(name=name, triple=triple, os=os)


# ---------------------------------------------------------------------
# Matrix builder
# ---------------------------------------------------------------------

class Matrix:
    """
    Matrix builder.

    Example:
        matrix(platform=[LINUX, MACOS], version=["1.57", "stable"])
            .exclude(platform="macOS", version="1.57")
            .override({"platform": "macOS"}, exclusions=["actix-redis"])
    """

    def __init__(self, dimensions: Dict[str, Iterable[Any]]):
        if not dimensions:
            raise ValueError("matrix() needs at least one dimension")
        self.dimensions: Dict[str, List[Any]] = {k: list(v) for k, v in dimensions.items()}
        self._exclude: List[Exclusion] = []
        self._overrides: List[Override] = []
        self._platform_key = "platform"
        self._version_key = "version"

    def exclude(self, predicate: Optional[Predicate] = None, **values: Any) -> "Matrix":
        if predicate is not None and values:
            raise ValueError("exclude() takes either a predicate or dimension values, not both")
        self._exclude.append(Exclusion(match=predicate if predicate is not None else dict(values)))
        return self

    def override(
        self,
        match: Any,
        *,
        args: Optional[Sequence[str]] = None,
        phase: str = "test",
        exclusions: Sequence[str] = (),
    ) -> "Matrix":
        self._overrides.append(
            Override(
                match=match,
                args=tuple(args) if args is not None else None,
                phase=phase,
                exclusions=tuple(exclusions),
            )
        )
        return self

    def keys(self, *, platform: str = "platform", version: str = "version") -> "Matrix":
        self._platform_key = platform
        self._version_key = version
        return self

    def build(self) -> MatrixSpec:
        return MatrixSpec(
            dimensions={k: list(v) for k, v in self.dimensions.items()},
            exclude=tuple(self._exclude),
            overrides=tuple(self._overrides),
            platform_key=self._platform_key,
            version_key=self._version_key,
        )


def matrix(**dimensions: Iterable[Any]) -> Matrix:
    return Matrix(dimensions)


# ---------------------------------------------------------------------
# Pipeline helper
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    matrix: Matrix | MatrixSpec,
    *phases: PhaseSpec,
    services: Sequence[ServiceSpec] = (),
    toolchain: Optional[Toolchain] = None,
    timeout: Optional[float] = None,
) -> Pipeline:
    """Phases default to the canonical cargo pipeline when none are given."""
    spec = matrix.build() if isinstance(matrix, Matrix) else matrix
    return Pipeline(
        name=name,
        matrix=spec,
        phases=tuple(phases) if phases else tuple(default_phases()),
        services=tuple(services),
        toolchain=toolchain or Toolchain(),
        timeout=timeout,
    )


def wf(*pipelines: Pipeline) -> List[Pipeline]:
    """
    Workflow definition helper:

        from matrixci import wf, pipeline, matrix

        def workflow():
            return wf(
                pipeline("linux", matrix(platform=[LINUX], version=["stable"])),
            )
    """
    return list(pipelines)
