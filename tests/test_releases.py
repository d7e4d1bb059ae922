from datetime import datetime

import pytest

from prtimes_engine.core import db, releases
from prtimes_engine.models import SearchFilter


class DummyCursor:
    def __init__(self, connection, name=None):
        self.connection = connection
        self.name = name
        self.itersize = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.connection.executed.append((" ".join(sql.split()), params, self.name))

    def fetchone(self):
        return self.connection.rows.pop(0)

    def fetchall(self):
        rows, self.connection.rows = self.connection.rows, []
        return rows

    def __iter__(self):
        return iter(self.fetchall())


class DummyConnection:
    def __init__(self, rows=None):
        self.rows = list(rows or [])
        self.executed = []
        self.cursors = []
        self.rollbacks = 0

    def cursor(self, name=None, cursor_factory=None):
        cursor = DummyCursor(self, name)
        self.cursors.append(cursor)
        return cursor

    def rollback(self):
        self.rollbacks += 1


class DummyPool:
    def __init__(self, connection):
        self.connection = connection

    def getconn(self):
        return self.connection

    def putconn(self, conn):
        pass


@pytest.fixture(autouse=True)
def reset_pool():
    db._connection_pool = None
    yield
    db._connection_pool = None


def _install(connection):
    db._connection_pool = DummyPool(connection)
    return connection


def test_build_where_parameterises_every_predicate():
    where, params = releases.build_where(
        SearchFilter(
            company_name="100%_株式",
            industry=["IT"],
            listing_status=["未上場"],
            capital_max=5000,
            established_year_min=2000,
            delivery_date_from=datetime(2024, 1, 1),
        )
    )

    assert where.startswith("WHERE company_website IS NOT NULL")
    assert "company_name ILIKE %s" in where
    assert "business_category = ANY(%s)" in where
    assert "capital_amount_numeric > 0" in where
    assert "capital_amount_numeric <= %s" in where
    assert "established_year >= %s" in where
    assert "established_year > 0" in where
    assert params == ["%100\\%\\_株式%", ["IT"], ["未上場"], 5000, 2000, datetime(2024, 1, 1)]


def test_search_deduplicated_filters_after_distinct_on():
    connection = _install(DummyConnection(rows=[{"id": 3, "company_name": "Beta", "company_website": "https://beta.jp"}]))

    records = releases.search_deduplicated(SearchFilter(industry=["IT"]), limit=50, offset=100)

    sql, params, _ = connection.executed[0]
    assert "SELECT DISTINCT ON (canonical_key) *" in sql
    assert "ORDER BY canonical_key, delivery_date DESC NULLS LAST, id DESC" in sql
    assert sql.index("business_category = ANY(%s)") > sql.index("FROM deduplicated")
    assert sql.endswith("ORDER BY delivery_date DESC NULLS LAST, id DESC LIMIT %s OFFSET %s")
    assert params == [["IT"], 50, 100]
    assert records[0].id == 3
    assert connection.rollbacks == 1


def test_count_deduplicated_returns_canonical_and_raw_totals():
    connection = _install(DummyConnection(rows=[(4, 9)]))

    assert releases.count_deduplicated(SearchFilter(industry=["IT"])) == (4, 9)

    sql, params, _ = connection.executed[0]
    assert "FROM deduplicated WHERE" in sql
    assert "FROM prtimes_companies WHERE" in sql
    assert params == [["IT"], ["IT"]]


def test_iter_usable_releases_streams_with_timeout():
    rows = [
        {"id": 2, "company_name": "Alpha", "company_website": "https://alpha.jp", "delivery_date": datetime(2024, 3, 1)},
        {"id": 1, "company_name": "Alpha", "company_website": "https://alpha.jp", "delivery_date": datetime(2024, 1, 1)},
    ]
    connection = _install(DummyConnection(rows=rows))

    records = list(releases.iter_usable_releases(1500, itersize=100))

    assert [record.id for record in records] == [2, 1]
    assert connection.executed[0][:2] == ("SET LOCAL statement_timeout = %s", (1500,))
    assert connection.executed[1][2] == "prtimes_snapshot"
    assert connection.cursors[1].itersize == 100
    assert connection.rollbacks == 1


def test_list_categories_collects_each_dimension():
    class CategoryConnection(DummyConnection):
        def cursor(self, name=None, cursor_factory=None):
            outer = self

            class CategoryCursor(DummyCursor):
                def fetchall(self):
                    return [(f"value-{len(outer.executed)}",)]

            return CategoryCursor(self, name)

    _install(CategoryConnection())

    categories = releases.list_categories()

    assert list(categories) == ["industries", "listingStatuses", "pressReleaseTypes", "category1", "category2"]
    assert categories["industries"] == ["value-1"]
    assert categories["category2"] == ["value-5"]
