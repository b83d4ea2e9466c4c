from __future__ import annotations

import pytest

from tenantguard.domain.models import Base
from tenantguard.persistence.db import engine


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Rebuild every table so integration tests never see each other's rows.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
