# provision.py
from __future__ import annotations

import os
import re
import shutil
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import ProvisionError
from .model import JobSpec, Platform, Toolchain


DEFAULT_WORK_DIR = ".matrixci/work"

# never copied into a job checkout
DEFAULT_SOURCE_IGNORE = (".git", ".matrixci", "target")

TOOL_HINTS = {
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "cargo": "Install a Rust toolchain (rustup) or fix PATH.",
    "docker": "Install Docker and ensure the daemon is running.",
}


def host_os() -> str:
    if sys.platform.startswith("linux"):
        return "linux"
    if sys.platform == "darwin":
        return "macos"
    if sys.platform in ("win32", "cygwin"):
        return "windows"
    return sys.platform


@dataclass(frozen=True)
class EnvironmentHandle:
    """
    A job's private toolchain environment.

    `env` is the full process environment phases run with; `workdir` is owned
    by exactly one job and removed on release. `srcdir` is the job's private
    copy of the repository (inside workdir) and the cwd of setup and phases;
    it is the workdir itself when there is no source to copy.
    """
    job_id: str
    platform: Platform
    version: str
    workdir: Path
    env: Dict[str, str] = field(default_factory=dict, hash=False)
    srcdir: Optional[Path] = None

    def __post_init__(self):
        if self.srcdir is None:
            object.__setattr__(self, "srcdir", self.workdir)

    @property
    def toolchain_id(self) -> str:
        return f"{self.version}-{self.platform.triple}" if self.platform.triple else self.version


def _slug(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "-", text).strip("-").lower() or "job"


class Provisioner:
    """
    Installs/selects a toolchain per (platform, version) and hands each job an
    isolated EnvironmentHandle.

    Repeated provision() calls for one job return the same handle; two jobs
    never share a workdir, a source checkout or an env mapping.

    With a `source_root`, each job gets its own copy of it (minus
    `source_ignore` names, the work root and any `source_skip` paths).
    """

    def __init__(
        self,
        platforms: Iterable[Platform] = (),
        *,
        work_root: str | Path = DEFAULT_WORK_DIR,
        source_root: Optional[str | Path] = None,
        source_ignore: Iterable[str] = DEFAULT_SOURCE_IGNORE,
        source_skip: Iterable[str | Path] = (),
        retries: int = 0,
        retry_delay: float = 2.0,
        command_timeout: Optional[float] = 600.0,
        check_host: bool = True,
    ):
        self.platforms: Dict[str, Platform] = {p.name: p for p in platforms}
        self.work_root = Path(work_root).resolve()
        self.source_root = Path(source_root).resolve() if source_root is not None else None
        self.source_ignore = tuple(source_ignore)
        self.source_skip = {Path(p).resolve() for p in source_skip} | {self.work_root}
        self.retries = max(0, int(retries))
        self.retry_delay = retry_delay
        self.command_timeout = command_timeout
        self.check_host = check_host
        self._handles: Dict[str, EnvironmentHandle] = {}
        self._lock = threading.Lock()

    # ---- resolution ----

    def resolve_platform(self, job_id: str, platform_id: str, platform: Optional[Platform] = None) -> Platform:
        p = platform
        if p is None or (not p.triple and platform_id in self.platforms):
            p = self.platforms.get(platform_id, p)
        if p is None:
            raise ProvisionError(
                job=job_id,
                message=f"unknown platform '{platform_id}'",
                details={"known": sorted(self.platforms)},
            )
        if self.check_host and p.os and p.os != host_os():
            raise ProvisionError(
                job=job_id,
                message=f"platform '{p.name}' ({p.triple}) needs a {p.os} host, this host is {host_os()}",
            )
        return p

    # ---- public API ----

    def provision(self, job: JobSpec) -> EnvironmentHandle:
        return self.provision_for(
            job.platform_id,
            job.toolchain_version,
            job_id=job.job_id,
            toolchain=job.toolchain,
            platform=job.platform,
        )

    def provision_for(
        self,
        platform_id: str,
        version: str,
        *,
        job_id: Optional[str] = None,
        toolchain: Optional[Toolchain] = None,
        platform: Optional[Platform] = None,
    ) -> EnvironmentHandle:
        job_id = job_id or f"{platform_id} / {version}"

        with self._lock:
            existing = self._handles.get(job_id)
        if existing is not None:
            return existing

        tc = toolchain or Toolchain()
        p = self.resolve_platform(job_id, platform_id, platform)

        workdir = self.work_root / _slug(job_id)
        workdir.mkdir(parents=True, exist_ok=True)
        srcdir = workdir / "src" if self.source_root is not None else workdir

        fmt = {
            "version": version,
            "triple": p.triple,
            "platform": p.name,
            "workdir": str(workdir),
            "srcdir": str(srcdir),
        }

        env = os.environ.copy()
        env.update({k: v.format(**fmt) for k, v in tc.env.items()})
        env["MATRIXCI_JOB"] = job_id
        env["MATRIXCI_PLATFORM"] = p.name
        env["MATRIXCI_TOOLCHAIN"] = version

        try:
            if self.source_root is not None:
                self._checkout(job_id, srcdir)
            if tc.install:
                self._run_with_retries(job_id, "install", tc.install.format(**fmt), env, srcdir)
            if tc.probe:
                self._run(job_id, "probe", tc.probe.format(**fmt), env, srcdir)
            for i, cmd in enumerate(tc.setup):
                self._run(job_id, f"setup[{i}]", cmd.format(**fmt), env, srcdir)
        except ProvisionError:
            shutil.rmtree(workdir, ignore_errors=True)
            raise

        handle = EnvironmentHandle(job_id=job_id, platform=p, version=version, workdir=workdir, env=env, srcdir=srcdir)
        with self._lock:
            # another thread may have won the race for the same job id
            return self._handles.setdefault(job_id, handle)

    def release(self, handle: EnvironmentHandle) -> List[str]:
        """Forget the handle and remove its workdir. Never raises."""
        warnings: List[str] = []
        with self._lock:
            self._handles.pop(handle.job_id, None)
        try:
            if handle.workdir.exists():
                shutil.rmtree(handle.workdir)
        except OSError as e:
            warnings.append(f"could not remove workdir {handle.workdir}: {e}")
        return warnings

    # ---- execution primitives ----

    def _checkout(self, job_id: str, dest: Path) -> None:
        """Copy source_root into dest so setup/phases can write freely."""
        skip = self.source_skip

        def ignore(directory: str, names: List[str]) -> List[str]:
            base = Path(directory).resolve()
            return [n for n in names if n in self.source_ignore or (base / n) in skip]

        try:
            if dest.exists():
                shutil.rmtree(dest)
            shutil.copytree(self.source_root, dest, symlinks=True, ignore=ignore)
        except OSError as e:
            raise ProvisionError(
                job=job_id,
                message=f"could not copy {self.source_root} into the job checkout: {e}",
                details={"dest": str(dest)},
            )

    def _run_with_retries(self, job_id: str, label: str, cmd: str, env: Dict[str, str], cwd: Path) -> None:
        attempt = 0
        while True:
            try:
                self._run(job_id, label, cmd, env, cwd)
                return
            except ProvisionError:
                if attempt >= self.retries:
                    raise
                attempt += 1
                time.sleep(self.retry_delay)

    def _run(self, job_id: str, label: str, cmd: str, env: Dict[str, str], cwd: Path) -> None:
        try:
            proc = subprocess.run(
                cmd,
                shell=True,
                cwd=str(cwd),
                env=env,
                text=True,
                capture_output=True,
                timeout=self.command_timeout,
            )
        except subprocess.TimeoutExpired:
            raise ProvisionError(
                job=job_id,
                message=f"toolchain {label} timed out after {self.command_timeout}s",
                details={"cmd": cmd},
            )
        except OSError as e:
            raise ProvisionError(job=job_id, message=f"toolchain {label} could not start: {e}", details={"cmd": cmd})

        if proc.returncode != 0:
            details = {"cmd": cmd, "exit_code": proc.returncode}
            tool = cmd.split()[0] if cmd.split() else ""
            if tool in TOOL_HINTS and proc.returncode == 127:
                details["hint"] = TOOL_HINTS[tool]
            tail = (proc.stderr or proc.stdout or "").strip()[-2000:]
            if tail:
                details["output"] = tail
            raise ProvisionError(job=job_id, message=f"toolchain {label} failed", details=details)
