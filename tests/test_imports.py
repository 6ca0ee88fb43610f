"""
Each package must import on its own, in a fresh interpreter, without relying
on another package having been loaded first.
"""
import os
import subprocess
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent


@pytest.mark.unit
@pytest.mark.parametrize(
    "module",
    [
        "integrations",
        "integrations.normalizers",
        "integrations.workflow_client",
        "core",
        "core.reconciliation",
        "core.orders",
        "api.main",
        "workers.webhook_dispatcher",
    ],
)
def test_module_imports_cleanly(module: str) -> None:
    result = subprocess.run(
        [sys.executable, "-c", f"import {module}"],
        cwd=ROOT,
        capture_output=True,
        text=True,
        env={**os.environ, "DATABASE_URL": "sqlite+aiosqlite:///:memory:"},
    )
    assert result.returncode == 0, result.stderr
