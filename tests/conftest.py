import os
import signal
import sys
from pathlib import Path

import pytest

from orchestrator.lifecycle import BulkJobService
from orchestrator.settings import Settings
from orchestrator.supervisor import ProcessRegistry, Supervisor
from storage.jobstore import FileBackend, JobStore

APP_DIR = Path(__file__).resolve().parents[1] / "app"

SLEEP_RUNNER = [sys.executable, "-c", "import time; time.sleep(60)"]


@pytest.fixture(autouse=True)
def no_network_calls(monkeypatch):
    """Block all external requests (safety)."""
    def blocked(*a, **kw):
        raise RuntimeError("NETWORK CALL BLOCKED IN TEST")

    monkeypatch.setattr("requests.get", blocked)
    monkeypatch.setattr("requests.put", blocked)
    monkeypatch.setattr("requests.post", blocked)
    yield


@pytest.fixture
def app_on_pythonpath(monkeypatch):
    """Child processes run `python -m worker.runner`, so they need app/ importable."""
    existing = os.environ.get("PYTHONPATH")
    value = str(APP_DIR) if not existing else os.pathsep.join([str(APP_DIR), existing])
    monkeypatch.setenv("PYTHONPATH", value)


@pytest.fixture
def settings(tmp_path):
    return Settings.for_data_dir(tmp_path, runner_command=SLEEP_RUNNER, log_interval=0.05)


@pytest.fixture
def store(settings):
    return JobStore(FileBackend(settings.store_path))


@pytest.fixture
def registry():
    reg = ProcessRegistry()
    yield reg
    reg.close(timeout=0.1)


@pytest.fixture
def supervisor(store, registry, settings):
    sup = Supervisor(store, registry, settings)
    yield sup
    # never leave spawned worker pools behind
    for job in store.list():
        if job.status != "running" or job.pid == os.getpid():
            continue
        try:
            # only groups we started: the pool leads its own session
            if os.getpgid(job.pid) == job.pid:
                os.killpg(job.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass


@pytest.fixture
def service(store, supervisor, settings):
    return BulkJobService(store, supervisor, settings)

