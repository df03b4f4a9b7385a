import pytest

from quarry_runner.config import Settings
from quarry_runner.worker_bridge import WorkerBridge


@pytest.fixture
def make_settings():
    """Settings with short timeouts suitable for tests; keyword overrides win."""
    def _make(**overrides) -> Settings:
        values = {
            "EXEC_TIMEOUT_MS": 2000,
            "WORKER_READY_TIMEOUT_MS": 20000,
            "COMPILE_SERVICE_URL": "http://compile.test",
        }
        values.update(overrides)
        return Settings(**values)
    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
async def bridge(settings):
    bridge = WorkerBridge(settings)
    await bridge.initialize()
    yield bridge
    await bridge.terminate()
