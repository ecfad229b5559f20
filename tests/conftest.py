import os
import sys

import pytest

# Ensure repository root is on sys.path so `import alertwatch` works under pytest
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from alertwatch.db.session import init_db, make_engine, make_session_factory  # noqa: E402


@pytest.fixture
def sqlite_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'alertwatch-test.db'}"


@pytest.fixture
def open_db(sqlite_url):
    """Async helper: ``engine, sessions = await open_db()`` inside the test's event loop.

    Engines are bound to the loop that opened them, so each test builds its
    own inside ``asyncio.run`` and disposes it there.
    """
    async def _open():
        engine = make_engine(sqlite_url)
        await init_db(engine)
        return engine, make_session_factory(engine)
    return _open
