import os

import pytest

# Settings are read at import time by app.main; keep the suite hermetic.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AI_EXTRACT_PROVIDER", "mock")
os.environ.setdefault("STORAGE_BACKEND", "local")

from app.core.config import get_settings  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Some tests mutate env vars and clear the settings cache. Ensure we don't leak
    # a cached Settings instance across tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
