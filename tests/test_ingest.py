import io
import os
from dataclasses import replace

import pytest
import requests

import ingest
from conftest import csv_text
from errors import ConflictingIngestion, CsvParseError, PayloadTooLarge, StorageError, ValidationError
from ingest import Ingestor
from storage import Database


class FakeResponse:
    def __init__(self, body: bytes, status: int = 200, headers=None):
        self.body = body
        self.status = status
        self.headers = headers or {}

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} Error")

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i:i + chunk_size]


@pytest.fixture
def ingestor(db, settings):
    return Ingestor(db, settings)


def upload_dir_files(settings):
    if not os.path.isdir(settings.upload_dir):
        return []
    return os.listdir(settings.upload_dir)


def test_ingest_path_loads_rows(ingestor, db, make_csv):
    result = ingestor.ingest_path(make_csv(csv_text(["a", "b"], [[1, 2], [3, 4], [5, 6]])))
    assert result.row_count == 3
    assert result.total_rows == 3
    assert result.columns == ["a", "b"]
    assert db.table_columns() == ["a", "b"]
    assert db.row_count() == 3


def test_ingest_path_leaves_source_file(ingestor, make_csv):
    path = make_csv(csv_text(["a"], [[1]]))
    ingestor.ingest_path(path)
    assert os.path.exists(path)


def test_count_rows_first_reports_total_up_front(db, settings, make_csv):
    counting = Ingestor(db, replace(settings, count_rows_first=True, batch_size=2))
    seen = []
    result = counting.ingest_path(
        make_csv(csv_text(["a"], [[i] for i in range(5)])),
        on_progress=lambda done, total: seen.append((done, total)),
    )
    assert result.total_rows == 5
    assert seen == [(2, 5), (4, 5), (5, 5)]


def test_single_pass_progress_has_no_total(ingestor, make_csv):
    seen = []
    ingestor.ingest_path(
        make_csv(csv_text(["a"], [[1], [2]])),
        on_progress=lambda done, total: seen.append((done, total)),
    )
    assert seen == [(2, None)]


def test_ingest_upload_removes_temp_file_on_success(ingestor, settings):
    data = io.BytesIO(csv_text(["a"], [[1], [2]]).encode("utf-8"))
    assert ingestor.ingest_upload(data, "x.csv").row_count == 2
    assert upload_dir_files(settings) == []


def test_ingest_upload_removes_temp_file_on_failure(ingestor, settings):
    data = io.BytesIO(csv_text(["a", "a"], [[1, 2]]).encode("utf-8"))
    with pytest.raises(ValidationError):
        ingestor.ingest_upload(data, "dupes.csv")
    assert upload_dir_files(settings) == []


def test_ingest_upload_enforces_size_limit(db, settings):
    small = Ingestor(db, replace(settings, max_upload_bytes=10))
    with pytest.raises(PayloadTooLarge):
        small.ingest_upload(io.BytesIO(b"a,b\n" + b"1,2\n" * 10), "big.csv")
    assert upload_dir_files(settings) == []


def test_second_ingestion_fails_fast(ingestor, make_csv):
    path = make_csv(csv_text(["a"], [[1]]))
    ingestor._lock.acquire()
    try:
        assert ingestor.busy
        with pytest.raises(ConflictingIngestion):
            ingestor.ingest_path(path)
        with pytest.raises(ConflictingIngestion):
            ingestor.ingest_upload(io.BytesIO(b"a\n1\n"))
    finally:
        ingestor._lock.release()
    assert not ingestor.busy
    assert ingestor.ingest_path(path).row_count == 1


def test_lock_is_released_after_failure(ingestor, make_csv):
    with pytest.raises(ValidationError):
        ingestor.ingest_path(make_csv(""))
    assert not ingestor.busy


def test_failed_batch_keeps_earlier_batches(db, settings, monkeypatch, make_csv):
    small = Ingestor(db, replace(settings, batch_size=2))
    original = ingest.batch_loader.row_values
    calls = {"n": 0}

    def flaky(record, columns):
        calls["n"] += 1
        if calls["n"] == 4:
            raise StorageError("disk on fire")
        return original(record, columns)

    monkeypatch.setattr(ingest.batch_loader, "row_values", flaky)
    with pytest.raises(StorageError):
        small.ingest_path(make_csv(csv_text(["a"], [[i] for i in range(6)])))
    assert db.row_count() == 2


def test_malformed_csv_is_a_parse_error(ingestor, make_csv):
    path = make_csv('a,b\n1,"unterminated\n')
    with pytest.raises(CsvParseError):
        ingestor.ingest_path(path)


def test_ingest_url(ingestor, db, settings, monkeypatch):
    body = csv_text(["store_number", "brand_name"], [["5", "Acme"], ["6", "Other"]]).encode("utf-8")
    calls = []

    def fake_get(url, stream, timeout):
        calls.append((url, stream, timeout))
        return FakeResponse(body, headers={"Content-Length": str(len(body))})

    monkeypatch.setattr(ingest.requests, "get", fake_get)
    result = ingestor.ingest_url("https://example.com/data.csv")

    assert result.row_count == 2
    assert calls == [("https://example.com/data.csv", True, settings.fetch_timeout)]
    assert db.table_columns() == ["store_number", "brand_name"]
    assert upload_dir_files(settings) == []


def test_ingest_url_rejects_large_content_length(db, settings, monkeypatch):
    small = Ingestor(db, replace(settings, max_upload_bytes=10))
    monkeypatch.setattr(
        ingest.requests,
        "get",
        lambda url, stream, timeout: FakeResponse(b"a\n1\n", headers={"Content-Length": "999"}),
    )
    with pytest.raises(PayloadTooLarge):
        small.ingest_url("https://example.com/data.csv")


def test_ingest_url_rejects_large_body_without_length(db, settings, monkeypatch):
    small = Ingestor(db, replace(settings, max_upload_bytes=10))
    monkeypatch.setattr(
        ingest.requests,
        "get",
        lambda url, stream, timeout: FakeResponse(b"a\n" + b"1\n" * 100),
    )
    with pytest.raises(PayloadTooLarge):
        small.ingest_url("https://example.com/data.csv")
    assert upload_dir_files(settings) == []


def test_ingest_url_http_error(ingestor, monkeypatch):
    monkeypatch.setattr(
        ingest.requests,
        "get",
        lambda url, stream, timeout: FakeResponse(b"", status=404),
    )
    with pytest.raises(ValidationError) as exc:
        ingestor.ingest_url("https://example.com/missing.csv")
    assert exc.value.error == "Failed to download CSV from URL"


@pytest.mark.parametrize("url", ["", "ftp://example.com/x.csv", "/etc/passwd"])
def test_ingest_url_rejects_non_http(ingestor, url):
    with pytest.raises(ValidationError):
        ingestor.ingest_url(url)


def test_upload_url_through_api(client, monkeypatch):
    body = csv_text(["a", "b"], [[1, 2]]).encode("utf-8")
    monkeypatch.setattr(ingest.requests, "get", lambda url, stream, timeout: FakeResponse(body))

    resp = client.post("/upload", json={"url": "https://example.com/data.csv"})
    assert resp.status_code == 200
    assert resp.json()["rowCount"] == 1


def test_cli_main(tmp_path, make_csv):
    db_path = str(tmp_path / "cli" / "cli.db")
    path = make_csv(csv_text(["a", "b"], [[1, 2], [3, 4]]))

    result = ingest.main(["--csv", path, "--db-path", db_path, "--batch-size", "1", "--count-first"])
    assert result.row_count == 2

    with Database(db_path) as db:
        assert db.row_count() == 2
        assert db.table_columns() == ["a", "b"]
