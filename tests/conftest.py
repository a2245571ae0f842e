from __future__ import annotations

import os

import pytest

from matrixci.provision import EnvironmentHandle
from matrixci.ui.console import Console

from helpers import PLAT_A


@pytest.fixture
def console():
    return Console(quiet=True)


@pytest.fixture
def handle(tmp_path):
    workdir = tmp_path / "work"
    workdir.mkdir()
    env = os.environ.copy()
    env["OUT_DIR"] = str(workdir / "target")
    return EnvironmentHandle(job_id="ci / A / 1", platform=PLAT_A, version="1", workdir=workdir, env=env)
