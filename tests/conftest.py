from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from models.base import Base
import models.chat  # noqa: F401
import models.schedule  # noqa: F401
from routes.chat_context import ContextRegistry, TurnContext
from routes.schedule import ScheduleToolDispatcher
from routes.schedule_state import DisambiguationStore

TODAY = date(2025, 7, 10)
CALLER = "user-1"
SESSION = "sess-1"


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite so worker threads share one database."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    with session_factory() as s:
        yield s


@pytest.fixture
def registry():
    return ContextRegistry()


@pytest.fixture
def disambiguation():
    return DisambiguationStore()


@pytest.fixture
def dispatcher(session_factory, registry, disambiguation):
    return ScheduleToolDispatcher(session_factory, registry, disambiguation, today_fn=lambda: TODAY)


@pytest.fixture
def ctx(registry):
    c = TurnContext(caller_id=CALLER, session_id=SESSION)
    registry.bind(c.session_id, c.caller_id)
    return c


@pytest.fixture
def handle(dispatcher, ctx):
    return dispatcher.create_tool_handler(ctx)
