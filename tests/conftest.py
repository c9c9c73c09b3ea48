import os
from pathlib import Path
import sys

# Ensure the src layout and shared fakes are importable without installing
ROOT = Path(__file__).resolve().parents[1]
for path in (ROOT / "src", Path(__file__).resolve().parent):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

# Keep tests hermetic: no console span exporter, no developer .env
os.environ["DEPLOYEASE_DISABLE_TRACING"] = "1"
os.environ["DOTENV_PATH"] = str(ROOT / "tests" / ".env.test-missing")

import pytest  # noqa: E402

from deployease import config as cfg  # noqa: E402
from fakes import FakeHosting, FakeRepository, make_runtime  # noqa: E402


@pytest.fixture(autouse=True)
def _clear_config_cache():
    cfg._config_adapter.cache_clear()
    cfg.get_app_settings.cache_clear()
    yield
    cfg._config_adapter.cache_clear()
    cfg.get_app_settings.cache_clear()


@pytest.fixture
def repo() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def hosting() -> FakeHosting:
    return FakeHosting()


@pytest.fixture
def runtime(repo, hosting):
    return make_runtime(repo=repo, hosting=hosting)
