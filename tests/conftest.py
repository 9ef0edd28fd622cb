import sys
from pathlib import Path

import pytest

# Ensure the `reputation` package is importable when running pytest from the repository root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from reputation.core import config, session_store  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Every test starts from default settings and an empty in-memory session backend."""
    for name in (
        "REPUTATION_API_BASE_URL",
        "REPUTATION_API_TIMEOUT",
        "HISTORY_POLL_INTERVAL",
        "HISTORY_LIMIT",
        "DATABASE_URL",
        "PORT",
        "SESSION_IDLE_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SESSION_SECRET_KEY", "test-secret")
    monkeypatch.setattr(config, "load_dotenv", lambda: None)
    config.get_settings.cache_clear()
    monkeypatch.setattr(session_store, "_backend", session_store.MemorySessionBackend())
    yield
    config.get_settings.cache_clear()
