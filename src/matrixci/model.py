# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union


class PhaseStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class FailureCause(str, Enum):
    NON_ZERO_EXIT = "non_zero_exit"
    TIMEOUT = "timeout"
    PROVISION_FAILED = "provision_failed"
    SERVICE_START_FAILED = "service_start_failed"
    SERVICE_UNHEALTHY = "service_unhealthy"
    ERROR = "error"


# ---------------------------------------------------------------------
# Targets / toolchains
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Platform:
    """A named build target, e.g. Linux / x86_64-unknown-linux-gnu."""
    name: str
    triple: str
    os: Optional[str] = None  # host OS this target needs; None = any host

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Toolchain:
    """
    How to install and select a toolchain version for a job.

    Every string is a template formatted with:
      {version} {triple} {platform} {workdir} {srcdir}
    """
    name: str = "rust"
    install: Optional[str] = "rustup toolchain install {version}-{triple} --profile minimal"
    probe: Optional[str] = "rustc +{version}-{triple} --version"
    setup: Tuple[str, ...] = ()
    env: Dict[str, str] = field(
        default_factory=lambda: {
            "RUSTUP_TOOLCHAIN": "{version}-{triple}",
            "CARGO_TARGET_DIR": "{workdir}/target",
        },
        hash=False,
    )


# ---------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class HealthCheck:
    command: str
    interval: float = 10.0
    timeout: float = 5.0
    max_retries: int = 5


@dataclass(frozen=True)
class ServiceSpec:
    """An auxiliary service a job needs (a container image or a local binary)."""
    name: str
    ref: str
    port: int = 0
    kind: str = "container"  # "container" | "process"
    health: Optional[HealthCheck] = None
    entrypoint: Optional[str] = None
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict, hash=False)


# ---------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class PhaseSpec:
    """One verification phase: `program *args`, bounded by `timeout` seconds."""
    name: str
    program: str
    args: Tuple[str, ...] = ()
    timeout: Optional[float] = None
    exclude_flag: Optional[str] = None  # e.g. "--exclude={}", rendered per excluded component
    cache_dirs: Tuple[str, ...] = ()
    cache_inputs: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class PhaseResult:
    phase_name: str
    status: PhaseStatus
    duration: float = 0.0
    output: str = ""
    cause: Optional[FailureCause] = None
    exit_code: Optional[int] = None


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

Predicate = Callable[[Mapping[str, Any]], bool]


@dataclass(frozen=True)
class Exclusion:
    """Drops every combination `match` selects (a value mapping or a predicate)."""
    match: Union[Dict[str, Any], Predicate] = field(hash=False)


@dataclass(frozen=True)
class Override:
    """
    For matching combinations, `args` replaces the default arguments of `phase`.
    `exclusions` are component ids rendered through the phase's exclude_flag.
    """
    match: Union[Dict[str, Any], Predicate] = field(hash=False)
    args: Optional[Tuple[str, ...]] = None
    phase: str = "test"
    exclusions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MatrixSpec:
    dimensions: Dict[str, List[Any]] = field(hash=False)
    exclude: Tuple[Exclusion, ...] = ()
    overrides: Tuple[Override, ...] = ()
    platform_key: str = "platform"
    version_key: str = "version"


@dataclass(frozen=True)
class Pipeline:
    """A named matrix of jobs sharing phases, services and a toolchain."""
    name: str
    matrix: MatrixSpec
    phases: Tuple[PhaseSpec, ...]
    services: Tuple[ServiceSpec, ...] = ()
    toolchain: Toolchain = field(default_factory=Toolchain)
    timeout: Optional[float] = None


@dataclass(frozen=True)
class JobSpec:
    """A concrete matrix cell. Never mutated after expansion."""
    pipeline: str
    platform_id: str
    toolchain_version: str
    values: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    argument_overrides: Dict[str, Tuple[str, ...]] = field(default_factory=dict, hash=False)
    exclusions: frozenset = frozenset()
    timeout: Optional[float] = None
    platform: Optional[Platform] = None
    phases: Tuple[PhaseSpec, ...] = ()
    services: Tuple[ServiceSpec, ...] = ()
    toolchain: Toolchain = field(default_factory=Toolchain)

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.pipeline, self.platform_id, self.toolchain_version)

    @property
    def job_id(self) -> str:
        return f"{self.pipeline} / {self.platform_id} / {self.toolchain_version}"

    def args_for(self, phase: PhaseSpec) -> List[str]:
        """Effective argv tail for `phase`: the override replaces defaults, then exclusions."""
        args = list(self.argument_overrides.get(phase.name, phase.args))
        if phase.exclude_flag and self.exclusions:
            flags = [phase.exclude_flag.format(c) for c in sorted(self.exclusions)]
            # flags belong to the tool, not to whatever follows a "--"
            cut = args.index("--") if "--" in args else len(args)
            args[cut:cut] = flags
        return args


# ---------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------

@dataclass
class JobReport:
    job: JobSpec
    status: PhaseStatus
    phases: List[PhaseResult] = field(default_factory=list)
    cause: Optional[FailureCause] = None
    failed_phase: Optional[str] = None
    message: str = ""
    warnings: List[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def passed(self) -> bool:
        return self.status is PhaseStatus.PASSED


@dataclass
class RunReport:
    jobs: List[JobReport] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def passed(self) -> bool:
        return all(j.passed for j in self.jobs)

    @property
    def failed_jobs(self) -> List[JobReport]:
        return [j for j in self.jobs if not j.passed]

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 1


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload_ref: str
    last_used_at: float
