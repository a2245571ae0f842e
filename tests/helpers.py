from __future__ import annotations

import sys

from matrixci.model import PhaseSpec, Platform, Toolchain

# no install, no probe: the interpreter running the tests is the toolchain
LOCAL = Toolchain(name="local", install=None, probe=None, setup=(), env={})

PLAT_A = Platform(name="A", triple="a-unknown-none")
PLAT_B = Platform(name="B", triple="b-unknown-none")


def py_phase(name: str, code: str, **kwargs) -> PhaseSpec:
    """A phase that runs `python -c code` with the test interpreter."""
    return PhaseSpec(name=name, program=sys.executable, args=("-c", code), **kwargs)


def ok(name: str, **kwargs) -> PhaseSpec:
    return py_phase(name, "pass", **kwargs)


def fail(name: str, code: int = 3, **kwargs) -> PhaseSpec:
    return py_phase(name, f"raise SystemExit({code})", **kwargs)


def sleeper(name: str, seconds: float = 30, **kwargs) -> PhaseSpec:
    return py_phase(name, f"import time; time.sleep({seconds})", **kwargs)


class FakeRuntime:
    """In-memory service runtime: scripted health results, records starts/stops."""

    def __init__(self, health=None, fail_start=(), fail_stop=False):
        self.health = list(health) if health is not None else None
        self.fail_start = set(fail_start)
        self.fail_stop = fail_stop
        self.started = []
        self.stopped = []
        self.checks = 0

    def start(self, spec, instance):
        from matrixci.errors import ServiceStartError
        from matrixci.services import ServiceHandle

        if spec.name in self.fail_start:
            raise ServiceStartError(job="", message=f"cannot start {spec.name}")
        self.started.append(instance)
        return ServiceHandle(spec=spec, instance=instance, port=40000 + len(self.started))

    def check(self, handle, command, timeout):
        self.checks += 1
        if self.health is None:
            return True
        return self.health.pop(0) if self.health else False

    def stop(self, handle):
        if self.fail_stop:
            raise RuntimeError("daemon went away")
        self.stopped.append(handle.instance)
