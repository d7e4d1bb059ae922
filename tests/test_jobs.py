from datetime import datetime

import pytest

from prtimes_engine.core.bulk_loader import LoadOutcome
from prtimes_engine.core.config import ConfigError, Settings
from prtimes_engine.core.snapshot import build_snapshot
from prtimes_engine.jobs import load_csv, sync_index
from prtimes_engine.models import CompanyRelease


class RecordingIndex:
    def __init__(self):
        self.calls = []

    def __getattr__(self, name):
        def record(*args, **kwargs):
            self.calls.append((name, args))
            if name == "get_stats":
                return {"numberOfDocuments": 2}
            return {"taskUid": len(self.calls)}

        return record


def _records(count):
    return [
        CompanyRelease(id=i, company_name=f"Company {i}", company_website=f"https://c{i}.jp", delivery_date=datetime(2024, 1, i))
        for i in range(1, count + 1)
    ]


def test_load_job_returns_failure_code(monkeypatch, tmp_path):
    csv_path = tmp_path / "prtimes.csv"
    csv_path.write_bytes(b"header\nrow\n")
    seen = {}

    class FakeLoader:
        def __init__(self, row_error_policy):
            seen["policy"] = row_error_policy

        def load(self, stream, *, filename, file_size, uploaded_by):
            seen.update(filename=filename, file_size=file_size, uploaded_by=uploaded_by)
            return LoadOutcome(batch_id="bulk_1_x", status=seen["status"], staged=1, success=1)

    monkeypatch.setattr(load_csv, "init_pool", lambda: None)
    monkeypatch.setattr(load_csv, "BulkLoader", FakeLoader)

    seen["status"] = "completed"
    assert load_csv.run_load_job(path=str(csv_path), uploaded_by="ops", row_error_policy="ignore") == 0
    assert seen["policy"] == "ignore"
    assert seen["filename"] == "prtimes.csv"
    assert seen["file_size"] == 11

    seen["status"] = "failed"
    assert load_csv.run_load_job(path=str(csv_path), uploaded_by="ops", row_error_policy="count") == 1


def test_load_job_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_csv.run_load_job(path=str(tmp_path / "missing.csv"), uploaded_by="ops", row_error_policy="count")


def test_sync_index_replaces_documents_in_batches():
    index = RecordingIndex()

    sent = sync_index.sync_index(index, _records(5), batch_size=2, configure=False)

    names = [name for name, _ in index.calls]
    assert sent == 5
    assert names == ["delete_all_documents", "add_documents", "add_documents", "add_documents"]
    assert [len(args[0]) for name, args in index.calls if name == "add_documents"] == [2, 2, 1]


def test_sync_index_configures_before_upload():
    index = RecordingIndex()

    sync_index.sync_index(index, _records(1), batch_size=10, configure=True)

    names = [name for name, _ in index.calls]
    assert names.index("update_distinct_attribute") < names.index("add_documents")


def test_sync_index_rejects_bad_batch_size():
    with pytest.raises(ValueError):
        sync_index.sync_index(RecordingIndex(), [], batch_size=0, configure=False)


def test_run_sync_job_requires_host(monkeypatch):
    monkeypatch.setattr(sync_index, "get_settings", lambda: Settings(database_url="postgres://"))

    with pytest.raises(ConfigError):
        sync_index.run_sync_job(batch_size=10, configure=False)


def test_run_sync_job_pushes_canonical_snapshot(monkeypatch):
    index = RecordingIndex()
    records = _records(2) + [CompanyRelease(id=9, company_name="Company 1", company_website="https://www.c1.jp", delivery_date=datetime(2023, 1, 1))]
    monkeypatch.setattr(
        sync_index, "get_settings", lambda: Settings(database_url="postgres://", meilisearch_host="http://search:7700")
    )
    monkeypatch.setattr(sync_index, "init_pool", lambda: None)
    monkeypatch.setattr(sync_index, "build_snapshot_from_store", lambda timeout_ms: build_snapshot(records))
    monkeypatch.setattr(sync_index, "MeiliSearchIndex", lambda *args, **kwargs: index)

    sync_index.run_sync_job(batch_size=10, configure=False)

    uploaded = next(args[0] for name, args in index.calls if name == "add_documents")
    assert sorted(document["id"] for document in uploaded) == [1, 2]


def test_sync_main_exits_on_config_error(monkeypatch):
    def broken(**kwargs):
        raise ConfigError("MEILISEARCH_HOST is required")

    monkeypatch.setattr(sync_index, "run_sync_job", broken)
    monkeypatch.setattr("sys.argv", ["sync_index"])

    with pytest.raises(SystemExit) as excinfo:
        sync_index.main()

    assert excinfo.value.code == 2
