from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]

MODULES = [
    "circlecalib.core",
    "circlecalib.core.detector",
    "circlecalib.core.pipeline",
    "circlecalib.utils.report",
    "circlecalib.viz.debug_images",
    "circlecalib.viz.heatmaps",
    "circlecalib.cli",
]


@pytest.mark.parametrize("module", MODULES)
def test_module_imports_first_in_fresh_interpreter(module: str) -> None:
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(p for p in (str(PROJECT_ROOT), env.get("PYTHONPATH", "")) if p)
    completed = subprocess.run([sys.executable, "-c", f"import {module}"], cwd=str(PROJECT_ROOT),
                               env=env, capture_output=True, text=True, check=False)
    assert completed.returncode == 0, completed.stderr
