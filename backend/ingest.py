# ingest.py
"""
CSV ingestion into the store_metrics table.

Used by the /upload endpoint (multipart file or JSON {"url": ...}) and from the
command line:

    python ingest.py --csv ./input-files/store_level_mock_data.csv --db-path ./data/store_metrics.db

Flow: the upload is copied to a temp file under the upload dir (size-capped),
the header row decides the table shape, and the Batch Loader recreates the
table and commits the rows in batches. The temp file is always removed.
"""

import argparse
import os
import tempfile
import threading
from dataclasses import dataclass, field
from typing import BinaryIO, List, Optional

import requests
from tqdm import tqdm

import batch_loader
from batch_loader import ProgressCallback, log_progress
from config import TABLE_NAME, Settings, log
from csv_reader import COPY_BLOCK_SIZE, CsvSource, copy_limited
from errors import ConflictingIngestion, PayloadTooLarge, ValidationError
from schema_infer import infer_schema
from storage import Database


@dataclass
class IngestResult:
    row_count: int
    total_rows: int
    columns: List[str] = field(default_factory=list)

    def to_response(self) -> dict:
        return {
            "message": "File processed successfully",
            "rowCount": self.row_count,
            "totalRows": self.total_rows,
        }


def _remove_quietly(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


class Ingestor:
    """
    Owns the single-flight ingestion lock. One upload runs at a time; a second
    one fails fast with ConflictingIngestion instead of interleaving batches
    into the same drop/recreate cycle.
    """

    def __init__(self, db: Database, settings: Settings):
        self.db = db
        self.settings = settings
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    # -----------------------------------------------------
    # Entry points
    # -----------------------------------------------------

    def ingest_path(
        self,
        path: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> IngestResult:
        """Load a CSV already on disk. The file is left in place."""
        if not self._lock.acquire(blocking=False):
            raise ConflictingIngestion()
        try:
            return self._load(path, on_progress)
        finally:
            self._lock.release()

    def ingest_upload(
        self,
        fileobj: BinaryIO,
        filename: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> IngestResult:
        """Copy an uploaded file to the upload dir, load it, then delete it."""
        if not self._lock.acquire(blocking=False):
            raise ConflictingIngestion()
        try:
            log(f"Receiving upload: {filename or '<unnamed>'}")
            path = self._new_temp_path()
            try:
                with open(path, "wb") as out:
                    size = copy_limited(fileobj, out, self.settings.max_upload_bytes)
                log(f"Saved upload to {path} ({size} bytes)")
                return self._load(path, on_progress)
            finally:
                _remove_quietly(path)
        finally:
            self._lock.release()

    def ingest_url(
        self,
        url: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> IngestResult:
        """Download a remote CSV to the upload dir, load it, then delete it."""
        if not url or not url.lower().startswith(("http://", "https://")):
            raise ValidationError("Invalid URL", message="Only http(s) URLs can be loaded.")
        if not self._lock.acquire(blocking=False):
            raise ConflictingIngestion()
        try:
            path = self._new_temp_path()
            try:
                self._download(url, path)
                return self._load(path, on_progress)
            finally:
                _remove_quietly(path)
        finally:
            self._lock.release()

    # -----------------------------------------------------
    # Internals
    # -----------------------------------------------------

    def _new_temp_path(self) -> str:
        os.makedirs(self.settings.upload_dir, exist_ok=True)
        fd, path = tempfile.mkstemp(prefix="upload-", suffix=".csv", dir=self.settings.upload_dir)
        os.close(fd)
        return path

    def _download(self, url: str, path: str):
        limit = self.settings.max_upload_bytes
        log(f"Downloading CSV from: {url}")
        try:
            with requests.get(url, stream=True, timeout=self.settings.fetch_timeout) as resp:
                resp.raise_for_status()
                length = resp.headers.get("Content-Length")
                if length and length.isdigit() and int(length) > limit:
                    raise PayloadTooLarge(limit)
                written = 0
                with open(path, "wb") as out:
                    for block in resp.iter_content(chunk_size=COPY_BLOCK_SIZE):
                        if not block:
                            continue
                        written += len(block)
                        if written > limit:
                            raise PayloadTooLarge(limit)
                        out.write(block)
        except requests.RequestException as e:
            raise ValidationError(
                "Failed to download CSV from URL",
                message=url,
                details=str(e),
            ) from e
        log(f"Downloaded {written} bytes to {path}")

    def _load(self, path: str, on_progress: Optional[ProgressCallback]) -> IngestResult:
        settings = self.settings
        source = CsvSource(path, max_bytes=settings.max_upload_bytes, chunksize=settings.batch_size)
        columns = source.columns

        total: Optional[int] = None
        if settings.count_rows_first:
            total = source.count_rows()
            log(f"Counted {total} rows in {path}")

        records = source.records()
        try:
            first = next(records, None)
            spec = infer_schema(columns, sample=first, infer_types=settings.infer_types, table=TABLE_NAME)
            stream = records if first is None else _prepend(first, records)
            row_count = batch_loader.load(
                self.db,
                spec,
                settings.batch_size,
                stream,
                on_progress=on_progress or log_progress,
                total_rows=total,
                timeout=settings.upload_timeout,
            )
        finally:
            records.close()

        return IngestResult(
            row_count=row_count,
            total_rows=total if total is not None else row_count,
            columns=spec.column_names,
        )


def _prepend(first, rest):
    yield first
    yield from rest


# ---------------------------------------------------
# Main entrypoint
# ---------------------------------------------------

def main(argv=None):
    defaults = Settings.from_env()
    parser = argparse.ArgumentParser(description="Load a store metrics CSV into SQLite")
    parser.add_argument("--csv", required=True, help="Path to the CSV file to load")
    parser.add_argument("--db-path", default=defaults.db_path, help="SQLite database path")
    parser.add_argument("--batch-size", type=int, default=defaults.batch_size, help="Rows per transaction")
    parser.add_argument("--infer-types", action="store_true", help="Type columns from the first data row")
    parser.add_argument("--count-first", action="store_true", help="Count rows before loading for a % progress bar")
    args = parser.parse_args(argv)

    settings = Settings(
        db_path=args.db_path,
        upload_dir=defaults.upload_dir,
        batch_size=args.batch_size,
        max_upload_bytes=defaults.max_upload_bytes,
        infer_types=args.infer_types or defaults.infer_types,
        count_rows_first=args.count_first or defaults.count_rows_first,
        upload_timeout=defaults.upload_timeout,
    )

    with Database(settings.db_path) as db:
        ingestor = Ingestor(db, settings)
        with tqdm(unit="rows", desc="store_metrics") as bar:

            def on_progress(processed: int, total: Optional[int]):
                if total and bar.total != total:
                    bar.total = total
                bar.update(processed - bar.n)

            result = ingestor.ingest_path(args.csv, on_progress=on_progress)

    log(f"Ingestion completed. {result.row_count} rows in {TABLE_NAME} at: {settings.db_path}")
    return result


if __name__ == "__main__":
    main()
