from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway sqlite file before any tenantguard module builds it.
_TEST_DB_PATH = os.path.join(tempfile.gettempdir(), f"tenantguard-test-{os.getpid()}.db")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_PATH}")

import pytest

from tenantguard.core.config import get_settings
from tenantguard.persistence.repos.tenants import clear_quarantine_cache
from tenantguard.services.tenancy import warning_tracker
from tenantguard.services.tenancy.health import invalidate_caches


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Settings, caches and the warning buffer are process-global; isolate each test.
    get_settings.cache_clear()
    invalidate_caches()
    clear_quarantine_cache()
    warning_tracker.reset_warnings()
    yield
    get_settings.cache_clear()
    warning_tracker.reset_warnings()
