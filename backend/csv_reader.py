# csv_reader.py
"""
Streaming CSV reader for uploaded store metrics files.

Files are parsed with pandas in chunks so a 100MB upload never sits in memory
as one DataFrame. Every value is read as text; the Batch Loader and SQLite
decide what to do with it.
"""

import os
from typing import Any, BinaryIO, Dict, Iterator, List, Optional

import pandas as pd

from config import DEFAULT_BATCH_SIZE, DEFAULT_MAX_UPLOAD_BYTES
from errors import CsvParseError, PayloadTooLarge, ValidationError
from schema_infer import check_header

COPY_BLOCK_SIZE = 64 * 1024

# Shared by the header read and the record read so both see the same file.
READ_OPTIONS: Dict[str, Any] = {
    "dtype": str,
    "keep_default_na": False,
    "na_filter": False,
    "skip_blank_lines": True,
    "encoding": "utf-8-sig",
}


def copy_limited(src: BinaryIO, dst: BinaryIO, max_bytes: int) -> int:
    """
    Copy src to dst in fixed-size blocks, failing as soon as more than
    max_bytes have been seen. Returns the number of bytes written.
    """
    written = 0
    while True:
        block = src.read(COPY_BLOCK_SIZE)
        if not block:
            break
        written += len(block)
        if written > max_bytes:
            raise PayloadTooLarge(max_bytes)
        dst.write(block)
    return written


def to_cell(v: Any) -> Optional[str]:
    if v is None:
        return None
    try:
        if pd.isna(v):
            return None
    except (TypeError, ValueError):
        pass
    return str(v)


class CsvSource:
    """
    A CSV file on disk, read lazily.

    `columns` is the raw header row (duplicates preserved so they can be
    rejected). `records()` starts a new pass over the file on every call.
    """

    def __init__(
        self,
        path: str,
        max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        chunksize: int = DEFAULT_BATCH_SIZE,
    ):
        self.path = path
        self.max_bytes = max_bytes
        self.chunksize = chunksize
        self._columns: Optional[List[str]] = None

        size = os.path.getsize(path)
        if size > max_bytes:
            raise PayloadTooLarge(max_bytes)
        self.size_bytes = size

    @property
    def columns(self) -> List[str]:
        if self._columns is None:
            self._columns = self._read_header()
        return self._columns

    def _read_header(self) -> List[str]:
        try:
            head = pd.read_csv(self.path, header=None, nrows=1, **READ_OPTIONS)
        except pd.errors.EmptyDataError as e:
            raise ValidationError("CSV file is empty", message="Upload a file with a header row.") from e
        except (pd.errors.ParserError, UnicodeDecodeError) as e:
            raise CsvParseError("Could not parse CSV header", details=str(e)) from e
        if head.empty:
            raise ValidationError("CSV file is empty", message="Upload a file with a header row.")
        return [str(v) for v in head.iloc[0].tolist()]

    def records(self) -> Iterator[Dict[str, Optional[str]]]:
        """Lazily yield one {column: value} dict per data row."""
        names = check_header(self.columns)
        try:
            with pd.read_csv(
                self.path,
                header=0,
                index_col=False,
                chunksize=self.chunksize,
                **READ_OPTIONS,
            ) as reader:
                for chunk in reader:
                    chunk.columns = names
                    for row in chunk.itertuples(index=False, name=None):
                        yield {col: to_cell(v) for col, v in zip(names, row)}
        except pd.errors.EmptyDataError:
            return
        except (pd.errors.ParserError, UnicodeDecodeError) as e:
            raise CsvParseError("Failed to parse CSV file", details=str(e)) from e

    def count_rows(self) -> int:
        """Full counting pass with exactly the parse rules of records()."""
        return sum(1 for _ in self.records())


def open_csv(
    path: str,
    max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
    chunksize: int = DEFAULT_BATCH_SIZE,
) -> CsvSource:
    return CsvSource(path, max_bytes=max_bytes, chunksize=chunksize)
