import io
import sys
import time
from pathlib import Path

import pytest

from pipeline_manifold.supervisor import NodeState, ProcessManager

FIXTURES_DIR = Path(__file__).parent / "fixtures"
PYTHON = sys.executable
SLEEPER_ARGS = ["-c", "import time; time.sleep(60)"]


def fixture_script(name: str) -> str:
    return str(FIXTURES_DIR / name)


def wait_until(manager, predicate, timeout: float = 10.0) -> bool:
    """Drives the manager's poll loop until `predicate()` holds or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        manager.poll()
        if predicate():
            return True
        time.sleep(0.02)
    return False


def read_text(path: Path) -> str:
    return path.read_text() if path.exists() else ""


@pytest.fixture
def manager():
    """A ProcessManager writing to an in-memory output, torn down with its whole tree."""
    pm = ProcessManager(output=io.BytesIO(), poll_interval=0.02, drain_timeout=5.0)
    yield pm

    pm.shutdown()
    wait_until(pm, lambda: all(node.state is NodeState.EXITED for node in pm.nodes.values()), timeout=5.0)
