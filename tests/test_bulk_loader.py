import io

import pytest

from prtimes_engine.core import batches, bulk_loader, db
from prtimes_engine.models import UploadBatch

CSV_TEXT = (
    "delivery_date,press_release_url,press_release_title,press_release_type,press_release_category1,"
    "press_release_category2,company_name,company_website,business_category,address,phone_number,"
    "representative,listing_status,capital_amount_text,established_date_text,capital_amount_numeric,"
    "established_year,established_month\n"
    "2024-01-01,https://prtimes.jp/1,First,商品,IT,,Example,https://example.com,情報通信,,,,,,,1000,2010,4\n"
    "2024-01-03,https://prtimes.jp/2,Second,商品,IT,,,not a url,情報通信,,,,,,,,,\n"
    "\n"
    "2024-01-05,https://prtimes.jp/3,Third,商品,IT,,Example,https://www.example.com,情報通信,,,,,,,bad,2010,4\n"
)


class DummyCursor:
    def __init__(self, connection):
        self.connection = connection
        self.rowcount = 0
        self._fetch = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        normalized = " ".join(sql.split())
        self.connection.executed.append((normalized, params))
        if normalized.startswith("SELECT count(*)"):
            self._fetch = (self.connection.staged,)
        elif normalized.startswith("INSERT INTO prtimes_companies"):
            self.rowcount = self.connection.promoted

    def copy_expert(self, sql, stream):
        if self.connection.copy_error:
            raise self.connection.copy_error
        self.connection.copied.append((sql, stream.read()))

    def fetchone(self):
        return self._fetch


class DummyConnection:
    def __init__(self, staged=0, promoted=0, copy_error=None):
        self.staged = staged
        self.promoted = promoted
        self.copy_error = copy_error
        self.executed = []
        self.copied = []
        self.commits = 0
        self.rollbacks = 0

    def cursor(self, cursor_factory=None):
        return DummyCursor(self)

    def commit(self):
        self.commits += 1

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


@pytest.fixture
def progress_calls(monkeypatch):
    calls = []

    def fake_update(batch_id, *, success, error, status, conn=None):
        calls.append({"batch_id": batch_id, "success": success, "error": error, "status": status, "conn": conn})

    monkeypatch.setattr(batches, "update_progress", fake_update)
    return calls


def _stream():
    return io.BytesIO(CSV_TEXT.encode("utf-8"))


def test_count_data_rows_skips_blank_lines_and_rewinds():
    stream = _stream()

    assert bulk_loader.count_data_rows(stream) == 3
    assert stream.tell() == 0


def test_copy_statement_lists_columns_in_csv_order():
    statement = bulk_loader.copy_statement("NULL")

    assert statement.startswith("COPY prtimes_staging (delivery_date, press_release_url,")
    assert "FORMAT csv, HEADER true" in statement
    assert "NULL 'NULL'" in statement


@pytest.mark.parametrize(
    "policy,expected",
    [
        ("count", (2, 1, False)),
        ("ignore", (2, 0, False)),
        ("reject", (0, 1, True)),
    ],
)
def test_resolve_counts(policy, expected):
    assert bulk_loader.resolve_counts(3, 2, policy) == expected


def test_reject_policy_keeps_clean_batches():
    assert bulk_loader.resolve_counts(3, 3, "reject") == (3, 0, False)


def test_start_creates_batch_with_row_count(monkeypatch):
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return UploadBatch(batch_id="bulk_1_x", filename=kwargs["filename"], total_records=kwargs["total_records"])

    monkeypatch.setattr(batches, "create_batch", fake_create)
    loader = bulk_loader.BulkLoader(row_error_policy="count")

    batch = loader.start(_stream(), filename="prtimes.csv", file_size=2048, uploaded_by="ops")

    assert batch.total_records == 3
    assert captured["file_size_bytes"] == 2048
    assert captured["uploaded_by"] == "ops"


def test_run_stages_promotes_and_finalises_in_one_transaction(progress_calls):
    connection = DummyConnection(staged=3, promoted=2)
    db._connection_pool = DummyPool(connection)
    refreshed = []
    loader = bulk_loader.BulkLoader(row_error_policy="count", on_promoted=lambda: refreshed.append(True))

    outcome = loader.run("bulk_1_x", _stream())

    statements = [sql for sql, _ in connection.executed]
    assert statements[0].startswith("CREATE OR REPLACE FUNCTION pg_temp.prtimes_try_int")
    assert statements[1].startswith("CREATE TEMPORARY TABLE prtimes_staging")
    assert statements[3].startswith("INSERT INTO prtimes_companies")
    assert connection.executed[3][1] == {"batch_id": "bulk_1_x"}
    assert connection.copied[0][0].startswith("COPY prtimes_staging")
    assert connection.copied[0][1] == CSV_TEXT.encode("utf-8")

    assert (outcome.status, outcome.success, outcome.errors) == ("partial", 2, 1)
    assert progress_calls == [
        {"batch_id": "bulk_1_x", "success": 2, "error": 1, "status": "partial", "conn": connection}
    ]
    assert connection.commits == 1
    assert refreshed == [True]


def test_run_reject_policy_rolls_back_promotion(progress_calls):
    connection = DummyConnection(staged=3, promoted=2)
    db._connection_pool = DummyPool(connection)
    refreshed = []
    loader = bulk_loader.BulkLoader(row_error_policy="reject", on_promoted=lambda: refreshed.append(True))

    outcome = loader.run("bulk_1_x", _stream())

    assert outcome.status == "failed"
    assert outcome.promoted == 0
    assert connection.rollbacks == 1
    assert connection.commits == 1
    assert progress_calls[0]["status"] == "failed"
    assert refreshed == []


def test_run_copy_failure_marks_batch_failed(monkeypatch, progress_calls):
    connection = DummyConnection(copy_error=RuntimeError("malformed CSV"))
    db._connection_pool = DummyPool(connection)
    failed = []
    monkeypatch.setattr(batches, "mark_failed", lambda batch_id, error_count=1: failed.append((batch_id, error_count)))
    loader = bulk_loader.BulkLoader(row_error_policy="count", on_promoted=lambda: pytest.fail("no refresh expected"))

    outcome = loader.run("bulk_1_x", _stream())

    assert outcome.status == "failed"
    assert outcome.errors == 1
    assert failed == [("bulk_1_x", 1)]
    assert connection.rollbacks == 1
    assert connection.commits == 0
    assert not any(sql.startswith("INSERT INTO prtimes_companies") for sql, _ in connection.executed)
    assert progress_calls == []


def test_run_survives_refresh_trigger_failure(progress_calls, caplog):
    connection = DummyConnection(staged=1, promoted=1)
    db._connection_pool = DummyPool(connection)

    def broken_refresh():
        raise RuntimeError("timer unavailable")

    loader = bulk_loader.BulkLoader(row_error_policy="count", on_promoted=broken_refresh)

    with caplog.at_level("WARNING"):
        outcome = loader.run("bulk_1_x", _stream())

    assert outcome.status == "completed"
    assert "Post-load refresh trigger failed" in " ".join(caplog.messages)


def test_unknown_policy_rejected():
    with pytest.raises(ValueError):
        bulk_loader.BulkLoader(row_error_policy="skip")
