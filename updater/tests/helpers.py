"""Pipeline scripts and polling helpers shared by the updater tests."""

from __future__ import annotations

import time
from typing import Callable

# Pipelines are small Python scripts run with the current interpreter so the
# tests do not depend on a particular shell being installed.
SUCCESS_PIPELINE = """
import sys
print("[1/6] backup created", flush=True)
print("[2/6] fetched revision", flush=True)
print("warning: image cache cold", file=sys.stderr, flush=True)
print("[5/6] health check passed", flush=True)
print("UPDATE_OK", flush=True)
"""

FAILING_PIPELINE = """
import sys
print("[5/6] health check failed", flush=True)
print("rolling back to previous backup", file=sys.stderr, flush=True)
print("rollback complete", flush=True)
sys.exit(1)
"""

# Blocks until the file named by the GATE_FILE option exists.
GATED_PIPELINE = """
import os, time
print("step-1 started", flush=True)
gate = os.environ.get("GATE_FILE", "")
deadline = time.time() + 30
while gate and not os.path.exists(gate) and time.time() < deadline:
    time.sleep(0.02)
print("step-2 finished", flush=True)
"""

HANGING_PIPELINE = """
import time
print("waiting forever", flush=True)
while True:
    time.sleep(0.1)
"""

ENV_PIPELINE = """
import os
for name in ("FORCE_ENABLE_AGENT", "PROJECT_PORT", "DB_PORT", "CUSTOM_FLAG"):
    print(f"{name}={os.environ.get(name, '<unset>')}", flush=True)
print(f"CWD={os.getcwd()}", flush=True)
"""


# Extra option names the test pipelines read from their environment.
EXTRA_OPTIONS = ("GATE_FILE", "CUSTOM_FLAG")


def wait_until(predicate: Callable[[], bool], timeout_s: float = 10.0) -> None:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.02)
    raise AssertionError("condition not met before timeout")
