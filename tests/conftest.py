import pytest

from bindexer.adapters.sql_store import SqlEventStore
from fakes import APPROVAL, TRANSFER


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "logs.sqlite")


@pytest.fixture
def store(db_path):
    s = SqlEventStore(f"sqlite:///{db_path}")
    s.sync_schemas([TRANSFER, APPROVAL])
    yield s
    s.close()
