import logging
import os
import tempfile
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import AsyncEngine

from pestops.integrations.credentials import CredentialStore
from pestops.storage import DatabaseContext, get_db_context, init_db
from pestops.storage.base import create_engine_with_sqlite_optimizations
from pestops.utils.clock import MockClock
from pestops.utils.crypto import TokenCipher

# Configure logging for tests
logging.basicConfig(level=logging.INFO)

logger = logging.getLogger(__name__)

# Tuesday 2025-03-04 17:00 UTC (09:00 in Los Angeles)
FIXED_NOW = datetime(2025, 3, 4, 17, 0, tzinfo=UTC)


@pytest_asyncio.fixture(scope="function")
async def db_engine(
    request: pytest.FixtureRequest,
) -> AsyncGenerator[AsyncEngine, None]:
    """A fresh on-disk SQLite database per test, schema already created."""
    with tempfile.NamedTemporaryFile(
        prefix="pestops_test_", suffix=".sqlite", delete=False
    ) as tmp_file:
        tmp_name = tmp_file.name
    engine = create_engine_with_sqlite_optimizations(f"sqlite+aiosqlite:///{tmp_name}")
    logger.info(f"--- SQLite Test DB Setup ({request.node.name}) ---")
    try:
        await init_db(engine)
        yield engine
    finally:
        await engine.dispose()
        for suffix in ("", "-wal", "-shm"):
            path = tmp_name + suffix
            if os.path.exists(path):
                os.unlink(path)


@pytest.fixture
def get_db_context_func(db_engine: AsyncEngine) -> Callable[[], DatabaseContext]:
    return lambda: get_db_context(db_engine)


@pytest.fixture
def mock_clock() -> MockClock:
    return MockClock(FIXED_NOW)


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(Fernet.generate_key().decode())


@pytest.fixture
def credential_store(
    get_db_context_func: Callable[[], DatabaseContext],
    cipher: TokenCipher,
    mock_clock: MockClock,
) -> CredentialStore:
    return CredentialStore(get_db_context_func, cipher, mock_clock)
