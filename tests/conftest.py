import sys
from pathlib import Path

import pytest

# Ensure src/ is importable for test modules
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from sqlusage.table_index import TableDescriptor, build_index  # noqa: E402

TABLES = [
    ("Customers", "dbo"),
    ("Orders", "dbo"),
    ("OrderLines", "dbo"),
    ("OrderArchive", "dbo"),
    ("Products", "dbo"),
    ("Staging", "dbo"),
    ("Invoices", "sales"),
    ("Employees", "hr"),
]


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeAdapter:
    def __init__(self, definitions=None, tables=None, objects=None, fail_definition=None, fail_tables=None):
        self.definitions = definitions or {}
        self.tables = tables if tables is not None else make_tables()
        self.objects = objects or []
        self.fail_definition = fail_definition
        self.fail_tables = fail_tables
        self.definition_calls = []
        self.table_calls = []
        self.disposed = False

    def get_object_definition(self, database, object_name):
        self.definition_calls.append((database, object_name))
        if self.fail_definition:
            raise self.fail_definition
        return self.definitions.get(object_name)

    def list_tables(self, database):
        self.table_calls.append(database)
        if self.fail_tables:
            raise self.fail_tables
        return list(self.tables)

    def list_objects(self, database):
        return list(self.objects)

    def dispose(self):
        self.disposed = True


def make_tables(extra=()):
    return [TableDescriptor.create(name, schema) for name, schema in list(TABLES) + list(extra)]


@pytest.fixture
def tables():
    return make_tables()


@pytest.fixture
def index(tables):
    return build_index(tables)


@pytest.fixture
def clock():
    return FakeClock()
