import math
import sqlite3
from contextlib import contextmanager

import pytest

import batch_loader
from errors import IngestionTimeout, StorageError
from schema_infer import infer_schema
from storage import Database


class CountingDatabase(Database):
    """Database that counts how many transactions were opened."""

    def __init__(self, path):
        super().__init__(path)
        self.transactions = 0

    @contextmanager
    def transaction(self):
        self.transactions += 1
        with super().transaction() as conn:
            yield conn


@pytest.fixture
def counting_db(settings):
    with CountingDatabase(settings.db_path) as database:
        yield database


def make_records(n, columns=("a", "b")):
    return [{c: f"{c}{i}" for c in columns} for i in range(n)]


@pytest.mark.parametrize("n_rows, batch_size", [(0, 10), (1, 10), (10, 10), (25, 10), (7, 1), (1000, 300)])
def test_one_transaction_per_batch(counting_db, n_rows, batch_size):
    spec = infer_schema(["a", "b"])
    loaded = batch_loader.load(counting_db, spec, batch_size, iter(make_records(n_rows)))

    assert loaded == n_rows
    assert counting_db.transactions == math.ceil(n_rows / batch_size)
    assert counting_db.row_count() == n_rows


def test_progress_after_every_batch(db):
    seen = []
    spec = infer_schema(["a", "b"])
    batch_loader.load(
        db,
        spec,
        10,
        make_records(25),
        on_progress=lambda done, total: seen.append((done, total)),
        total_rows=25,
    )
    assert seen == [(10, 25), (20, 25), (25, 25)]


def test_recreates_table_with_new_columns(db):
    batch_loader.load(db, infer_schema(["a", "b", "c"]), 10, make_records(5, ("a", "b", "c")))
    batch_loader.load(db, infer_schema(["x"]), 10, make_records(2, ("x",)))

    assert db.table_columns() == ["x"]
    assert db.row_count() == 2


def test_wrong_arity_rolls_back_whole_batch(db):
    records = make_records(25)
    records[14]["extra"] = "boom"

    with pytest.raises(StorageError):
        batch_loader.load(db, infer_schema(["a", "b"]), 10, records)

    # first batch committed, second rolled back, third never started
    assert db.row_count() == 10


def test_unbindable_value_rolls_back_whole_batch(db):
    records = make_records(12)
    records[11]["b"] = ["not", "a", "scalar"]

    with pytest.raises(StorageError) as exc:
        batch_loader.load(db, infer_schema(["a", "b"]), 10, records)

    assert "batch 2" in exc.value.error
    assert db.row_count() == 10


def test_failure_stops_consuming_the_stream(db):
    pulled = []

    def records():
        for i, rec in enumerate(make_records(50)):
            pulled.append(i)
            if i == 5:
                rec = {"a": "only one field"}
            yield rec

    with pytest.raises(StorageError):
        batch_loader.load(db, infer_schema(["a", "b"]), 10, records())

    assert max(pulled) < 10
    assert db.row_count() == 0


def test_values_are_bound_not_interpolated(db):
    tricky = [{"a": "it's", "b": 'say "hi", ok'}, {"a": "x); DROP TABLE store_metrics; --", "b": None}]
    batch_loader.load(db, infer_schema(["a", "b"]), 10, tricky)

    rows = db.run_sql_dicts("SELECT a, b FROM store_metrics")
    assert rows == tricky


def test_timeout_between_batches(db, monkeypatch):
    class FakeTime:
        def __init__(self):
            self.ticks = iter([0.0, 1.0, 50.0, 50.0])

        def monotonic(self):
            return next(self.ticks)

    monkeypatch.setattr(batch_loader, "time", FakeTime())

    with pytest.raises(IngestionTimeout) as exc:
        batch_loader.load(db, infer_schema(["a", "b"]), 10, make_records(30), timeout=10)

    assert exc.value.rows_committed == 10
    assert db.row_count() == 10


def test_rejects_bad_batch_size(db):
    with pytest.raises(ValueError):
        batch_loader.load(db, infer_schema(["a"]), 0, [])


def test_failed_commit_is_rolled_back(tmp_path):
    path = str(tmp_path / "locked.db")
    readers = []

    def hold_read_lock(done, total):
        # a second connection keeps a read transaction open, so the next COMMIT is busy
        if done == 1:
            reader = sqlite3.connect(path, isolation_level=None)
            reader.execute("BEGIN")
            reader.execute("SELECT * FROM store_metrics").fetchall()
            readers.append(reader)

    with Database(path, timeout=0.1) as db:
        try:
            with pytest.raises(StorageError) as exc:
                batch_loader.load(
                    db,
                    infer_schema(["a"]),
                    1,
                    [{"a": "1"}, {"a": "2"}],
                    on_progress=hold_read_lock,
                )
            assert "batch 2" in exc.value.error
            assert not db.conn.in_transaction
        finally:
            for reader in readers:
                reader.close()

        assert db.row_count() == 1
        assert batch_loader.load(db, infer_schema(["a"]), 1, [{"a": "3"}, {"a": "4"}]) == 2
        assert db.row_count() == 2
