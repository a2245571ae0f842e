# services.py
from __future__ import annotations

import os
import re
import shlex
import socket
import subprocess
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from .errors import CIError, ServiceStartError, ServiceUnhealthyError
from .model import ServiceSpec


@dataclass
class ServiceHandle:
    """One running service instance, owned by exactly one job."""
    spec: ServiceSpec
    instance: str        # unique per job: container name / process label
    host: str = "127.0.0.1"
    port: int = 0
    ref: Any = None      # runtime specific: container id or Popen

    def env(self) -> Dict[str, str]:
        prefix = re.sub(r"[^A-Za-z0-9]+", "_", self.spec.name).upper()
        return {f"{prefix}_HOST": self.host, f"{prefix}_PORT": str(self.port)}


@dataclass
class ServiceHandleSet:
    job_id: str
    handles: List[ServiceHandle] = field(default_factory=list)

    def env(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for h in self.handles:
            out.update(h.env())
        return out

    def __iter__(self) -> Iterator[ServiceHandle]:
        return iter(self.handles)

    def __len__(self) -> int:
        return len(self.handles)


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


# ---------------------------------------------------------------------
# Runtimes (start / health / stop primitives)
# ---------------------------------------------------------------------

class DockerRuntime:
    """Runs container services through the docker CLI."""

    def __init__(self, docker: str = "docker"):
        self.docker = docker

    def _docker(self, args: List[str], timeout: Optional[float] = 60.0) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self.docker, *args],
            text=True,
            capture_output=True,
            timeout=timeout,
        )

    def start(self, spec: ServiceSpec, instance: str) -> ServiceHandle:
        cmd = ["run", "-d", "--rm", "--name", instance]
        if spec.port:
            # container port published on a docker-assigned host port, so two
            # jobs asking for 6379 never collide
            cmd.extend(["-p", f"127.0.0.1::{spec.port}"])
        for k, v in spec.env.items():
            cmd.extend(["-e", f"{k}={v}"])
        if spec.entrypoint:
            cmd.extend(["--entrypoint", spec.entrypoint])
        cmd.append(spec.ref)
        cmd.extend(spec.args)

        try:
            proc = self._docker(cmd, timeout=300.0)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ServiceStartError(job="", message=f"docker run failed for {spec.name}: {e}")
        if proc.returncode != 0:
            raise ServiceStartError(
                job="",
                message=f"could not start service '{spec.name}' ({spec.ref})",
                details={"exit_code": proc.returncode, "stderr": proc.stderr.strip()[-2000:]},
            )

        handle = ServiceHandle(spec=spec, instance=instance, ref=proc.stdout.strip())
        if spec.port:
            try:
                handle.host, handle.port = self._published(instance, spec.port)
            except ServiceStartError:
                self._docker(["rm", "-f", instance])
                raise
        return handle

    def _published(self, instance: str, port: int) -> tuple:
        try:
            proc = self._docker(["port", instance, f"{port}/tcp"])
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ServiceStartError(job="", message=f"could not read published port {port} of {instance}: {e}")
        lines = [ln.strip() for ln in (proc.stdout or "").splitlines() if ln.strip()]
        if proc.returncode != 0 or not lines:
            raise ServiceStartError(job="", message=f"could not read published port {port} of {instance}")
        # "127.0.0.1:49153", "0.0.0.0:49153" or "[::]:49153"; prefer IPv4
        line = next((ln for ln in lines if not ln.startswith("[")), lines[0])
        host, _, host_port = line.rpartition(":")
        host = host.strip("[]")
        if host in ("", "0.0.0.0"):
            host = "127.0.0.1"
        elif host == "::":
            host = "::1"
        try:
            return host, int(host_port)
        except ValueError:
            raise ServiceStartError(job="", message=f"unexpected docker port output for {instance}: {line!r}")

    def check(self, handle: ServiceHandle, command: str, timeout: float) -> bool:
        try:
            proc = self._docker(["exec", handle.instance, "sh", "-c", command], timeout=timeout)
        except (OSError, subprocess.TimeoutExpired):
            return False
        return proc.returncode == 0

    def stop(self, handle: ServiceHandle) -> None:
        proc = self._docker(["rm", "-f", handle.instance])
        if proc.returncode != 0:
            raise RuntimeError(proc.stderr.strip() or f"docker rm -f {handle.instance} failed")


class ProcessRuntime:
    """Runs a local binary as a service; health checks are shell commands."""

    def start(self, spec: ServiceSpec, instance: str) -> ServiceHandle:
        port = spec.port or _free_port()
        env = os.environ.copy()
        env.update(spec.env)
        env["PORT"] = str(port)

        argv = shlex.split(spec.ref) + list(spec.args)
        try:
            proc = subprocess.Popen(
                argv,
                env=env,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            raise ServiceStartError(job="", message=f"could not launch '{spec.ref}': {e}")
        return ServiceHandle(spec=spec, instance=instance, port=port, ref=proc)

    def check(self, handle: ServiceHandle, command: str, timeout: float) -> bool:
        proc: subprocess.Popen = handle.ref
        if proc.poll() is not None:
            return False
        env = os.environ.copy()
        env.update(handle.env())
        env["PORT"] = str(handle.port)
        try:
            done = subprocess.run(command, shell=True, env=env, capture_output=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            return False
        return done.returncode == 0

    def stop(self, handle: ServiceHandle) -> None:
        proc: subprocess.Popen = handle.ref
        if proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=10)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait(timeout=10)


# ---------------------------------------------------------------------
# Lifecycle manager
# ---------------------------------------------------------------------

class ServiceManager:
    """
    Starts a job's services, blocks until every health check passes, and tears
    them down again. Instances are never shared between jobs.
    """

    def __init__(
        self,
        runtimes: Optional[Dict[str, Any]] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runtimes = runtimes if runtimes is not None else {
            "container": DockerRuntime(),
            "process": ProcessRuntime(),
        }
        self._sleep = sleep

    def _runtime(self, spec: ServiceSpec, job_id: str):
        rt = self.runtimes.get(spec.kind)
        if rt is None:
            raise ServiceStartError(
                job=job_id,
                message=f"no runtime for service kind '{spec.kind}'",
                details={"service": spec.name, "known": sorted(self.runtimes)},
            )
        return rt

    def start_services(self, specs: Sequence[ServiceSpec], *, job_id: str) -> ServiceHandleSet:
        handles = ServiceHandleSet(job_id=job_id)

        try:
            for spec in specs:
                rt = self._runtime(spec, job_id)
                instance = f"matrixci-{re.sub(r'[^a-z0-9]+', '-', spec.name.lower())}-{uuid.uuid4().hex[:10]}"
                try:
                    h = rt.start(spec, instance)
                except ServiceStartError as e:
                    e.job = job_id
                    raise
                handles.handles.append(h)

            for h in handles:
                self._wait_healthy(h, job_id)
        except Exception as e:
            leftovers = self.stop_services(handles)
            if leftovers and isinstance(e, CIError):
                e.details["teardown"] = "; ".join(leftovers)
            raise

        return handles

    def _wait_healthy(self, handle: ServiceHandle, job_id: str) -> None:
        hc = handle.spec.health
        if hc is None:
            return

        rt = self.runtimes[handle.spec.kind]
        attempts = max(1, hc.max_retries)
        for attempt in range(1, attempts + 1):
            if rt.check(handle, hc.command, hc.timeout):
                return
            if attempt < attempts:
                self._sleep(hc.interval)

        raise ServiceUnhealthyError(
            job=job_id,
            message=f"service '{handle.spec.name}' failed {attempts} health check(s)",
            details={"command": hc.command, "interval": hc.interval},
        )

    def stop_services(self, handles: ServiceHandleSet) -> List[str]:
        """Best-effort teardown. Never raises; returns warnings."""
        warnings: List[str] = []
        for h in reversed(handles.handles):
            try:
                self.runtimes[h.spec.kind].stop(h)
            except Exception as e:
                warnings.append(f"could not stop service '{h.spec.name}' ({h.instance}): {e}")
        handles.handles.clear()
        return warnings
