# batch_loader.py
"""
Load header-keyed records into store_metrics in fixed-size transactions.

The target table is dropped and recreated before the first batch, then every
batch of up to `batch_size` rows is committed as one transaction. A failing row
rolls back its whole batch and stops the load; batches committed before it
stay in place.
"""

import sqlite3
import time
from itertools import islice
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple

from config import log
from errors import IngestionTimeout, StorageError
from schema_infer import TableSpec, create_table_sql, insert_sql, quote_identifier
from storage import Database, storage_errors

ProgressCallback = Callable[[int, Optional[int]], None]


def recreate_table(db: Database, spec: TableSpec):
    """Drop the target table if present and create it from `spec`."""
    with storage_errors(f"recreating table {spec.name}"):
        db.execute(f"DROP TABLE IF EXISTS {quote_identifier(spec.name)}")
        db.execute(create_table_sql(spec))
    log(f"Created table {spec.name} with {len(spec.columns)} columns")


def row_values(record: Mapping[str, Any], columns: List[str]) -> Tuple[Any, ...]:
    if len(record) != len(columns):
        raise StorageError(
            f"Row has {len(record)} fields, table has {len(columns)} columns",
            details=f"row keys: {list(record.keys())}",
        )
    try:
        return tuple(record[c] for c in columns)
    except KeyError as e:
        raise StorageError(f"Row is missing column {e.args[0]!r}") from e


def log_progress(processed: int, total: Optional[int]):
    if total:
        progress = round(processed / total * 100)
        log(f"Processing progress: {progress}% ({processed}/{total} rows)")
    else:
        log(f"Processing progress: {processed} rows")


def load(
    db: Database,
    spec: TableSpec,
    batch_size: int,
    records: Iterable[Mapping[str, Any]],
    on_progress: Optional[ProgressCallback] = None,
    total_rows: Optional[int] = None,
    timeout: Optional[float] = None,
) -> int:
    """
    Recreate `spec.name` and insert every record; returns the row count.

    `timeout` (seconds) bounds the whole load; it is checked before each batch.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    deadline = time.monotonic() + timeout if timeout else None
    recreate_table(db, spec)

    sql = insert_sql(spec)
    columns = spec.column_names
    it = iter(records)
    processed = 0
    batch_no = 0

    while True:
        batch = list(islice(it, batch_size))
        if not batch:
            break
        if deadline is not None and time.monotonic() > deadline:
            raise IngestionTimeout(timeout, processed)

        batch_no += 1
        try:
            with db.transaction() as conn:
                cur = conn.cursor()
                try:
                    for record in batch:
                        cur.execute(sql, row_values(record, columns))
                finally:
                    cur.close()
        except sqlite3.Error as e:
            log(f"Batch {batch_no} rolled back: {e}", level="ERROR")
            raise StorageError(
                f"Failed to insert batch {batch_no}: {e}",
                message=f"{processed} rows were committed before the failure.",
            ) from e
        except StorageError as e:
            log(f"Batch {batch_no} rolled back: {e}", level="ERROR")
            raise

        processed += len(batch)
        if on_progress is not None:
            on_progress(processed, total_rows)

    log(f"Loaded {processed} rows into {spec.name} in {batch_no} batch(es)")
    return processed
