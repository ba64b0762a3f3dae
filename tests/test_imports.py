from __future__ import annotations

import subprocess
import sys

import pytest


@pytest.mark.parametrize(
    "module",
    ["taskhub.graph", "taskhub.stores", "taskhub.hub", "taskhub.cli", "taskhub.web"],
)
def test_module_imports_in_fresh_interpreter(module: str) -> None:
    proc = subprocess.run(
        [sys.executable, "-c", f"import {module}"],
        capture_output=True,
        text=True,
        check=False,
    )

    assert proc.returncode == 0, proc.stderr


def test_console_entry_point_prints_version() -> None:
    proc = subprocess.run(
        [sys.executable, "-m", "taskhub", "--version"],
        capture_output=True,
        text=True,
        check=False,
    )

    assert proc.returncode == 0, proc.stderr
    assert proc.stdout.startswith("taskhub ")
