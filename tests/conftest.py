import pytest

from order_pipeline import db


@pytest.fixture
async def session_factory(tmp_path):
    """Create a file-backed async SQLite database with all tables."""
    engine, async_session = db.create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await db.init_schema(engine)
    yield async_session
    await engine.dispose()
