import psycopg2
import pytest
from psycopg2 import errors

from listing_import.core import db
from listing_import.core.errors import DuplicateKeyError
from listing_import.core.postgres_store import PostgresListingStore, _prepare_params


class DummyCursor:
    def __init__(self, connection):
        self.connection = connection
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        statement = " ".join(sql.split())
        self.connection.executed.append((statement, params))
        for prefix, exc in self.connection.failures:
            if statement.startswith(prefix):
                raise exc
        self.rowcount = self.connection.rowcount

    def fetchone(self):
        return self.connection.rows.pop(0) if self.connection.rows else None

    def fetchall(self):
        rows, self.connection.rows = self.connection.rows, []
        return rows


class DummyConnection:
    def __init__(self):
        self.executed = []
        self.rows = []
        self.failures = []
        self.rowcount = 0
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def cursor(self):
        return DummyCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def statements(self):
        return [sql for sql, _ in self.executed]


class DummyPool:
    def __init__(self, connection):
        self.connection = connection

    def getconn(self):
        return self.connection

    def putconn(self, conn, close=False):
        assert conn is self.connection


@pytest.fixture
def connection():
    conn = DummyConnection()
    db._connection_pool = DummyPool(conn)
    yield conn
    db._connection_pool = None


def _listing_row(**overrides):
    row = {
        "slug": "suds-denver-co-1a2b3c4d",
        "name": "Suds",
        "address": "1 Main St",
        "city": "Denver",
        "state": "Colorado",
        "zip": "80202",
        "phone": "555",
        "latitude": "0",
        "longitude": "0",
        "rating": 4.0,
        "review_count": 3,
        "hours": "Call for hours",
        "services": ["Wash and fold"],
        "features": {"wash_and_fold": True},
        "seo_tags": ["laundromat"],
        "premium_score": 40,
        "is_premium": False,
        "is_featured": False,
        "city_id": 1,
        "state_id": 1,
        "raw": {"Name": "Suds"},
    }
    row.update(overrides)
    return row


def test_prepare_params_wraps_json_columns():
    params = _prepare_params(_listing_row(seo_tags=None))

    assert params["services"].adapted == ["Wash and fold"]
    assert params["features"].adapted == {"wash_and_fold": True}
    assert params["seo_tags"].adapted == []
    assert params["raw"].adapted == {"Name": "Suds"}
    assert params["website"] is None
    assert params["description"] is None


def test_insert_listing_returns_id_or_none_on_conflict(connection):
    store = PostgresListingStore()
    connection.rows = [(42,)]

    with store.transaction():
        assert store.insert_listing(_listing_row()) == 42
        assert store.insert_listing(_listing_row()) is None

    statements = connection.statements()
    assert statements[0].startswith("INSERT INTO listings")
    assert "ON CONFLICT (slug) DO NOTHING RETURNING id" in statements[0]
    assert connection.commits == 1


def test_store_requires_transaction():
    with pytest.raises(RuntimeError):
        PostgresListingStore().find_state("CO")


def test_savepoints_are_named_by_depth(connection):
    store = PostgresListingStore()

    with store.transaction():
        with store.savepoint():
            pass
        with pytest.raises(ValueError):
            with store.savepoint():
                raise ValueError("bad record")

    assert connection.statements() == [
        "SAVEPOINT listing_sp_1",
        "RELEASE SAVEPOINT listing_sp_1",
        "SAVEPOINT listing_sp_1",
        "ROLLBACK TO SAVEPOINT listing_sp_1",
    ]


def test_insert_state_maps_unique_violation(connection):
    store = PostgresListingStore()
    connection.failures = [("INSERT INTO states", errors.UniqueViolation("duplicate key"))]

    with store.transaction():
        with pytest.raises(DuplicateKeyError):
            store.insert_state("CO", "Colorado", "colorado")

    assert "ROLLBACK TO SAVEPOINT dimension_insert" in connection.statements()


def test_find_and_insert_city(connection):
    store = PostgresListingStore()
    connection.rows = [None, (7,)]

    with store.transaction():
        assert store.find_city("Denver", 1) is None
        assert store.insert_city("Denver", 1, "denver-co") == 7

    sql, params = connection.executed[0]
    assert sql == "SELECT id FROM cities WHERE name = %s AND state_id = %s"
    assert params == ("Denver", 1)
    assert any("ON CONFLICT (state_id, name) DO NOTHING" in s for s in connection.statements())


def test_refresh_counts_only_touches_given_ids(connection):
    store = PostgresListingStore()

    with store.transaction():
        store.refresh_counts({3, 1}, set())

    sql, params = connection.executed[0]
    assert sql.startswith("UPDATE cities SET listing_count = (SELECT COUNT(*)")
    assert params == ([1, 3],)
    assert len(connection.executed) == 1


def test_is_transient_classifies_connection_errors():
    store = PostgresListingStore()
    assert store.is_transient(psycopg2.OperationalError("server closed the connection"))
    assert store.is_transient(psycopg2.InterfaceError("connection already closed"))
    assert not store.is_transient(ValueError("bad value"))


def test_summary_reports_counts(connection):
    connection.rows = [(12,), (2,), (5,), ("CO", 10), ("TX", 2)]

    summary = PostgresListingStore().summary()

    assert summary == {
        "listings": 12,
        "states": 2,
        "cities": 5,
        "topStates": [{"state": "CO", "listings": 10}, {"state": "TX", "listings": 2}],
    }


def test_update_coordinates_only_replaces_placeholder(connection):
    connection.rowcount = 1

    assert PostgresListingStore().update_coordinates(5, "39.7", "-104.9", "0") is True

    sql, params = connection.executed[0]
    assert "AND latitude = %(placeholder)s AND longitude = %(placeholder)s" in sql
    assert params == {"id": 5, "latitude": "39.7", "longitude": "-104.9", "placeholder": "0"}
    assert connection.commits == 1


def test_missing_coordinates_skips_rows_without_street_address(connection):
    connection.rows = [(7, "1 Main St", "Denver", "Colorado", "80202")]

    rows = PostgresListingStore().listings_missing_coordinates("0", 50, "Address not provided")

    sql, params = connection.executed[0]
    assert "AND address <> '' AND address <> %(missing_address)s" in sql
    assert params == {"placeholder": "0", "missing_address": "Address not provided", "limit": 50}
    assert rows == [{"id": 7, "address": "1 Main St", "city": "Denver", "state": "Colorado", "zip": "80202"}]
