# schema_infer.py
"""
Decide the column set (and optionally the storage types) of store_metrics
from an uploaded CSV header and its first data row.
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from config import TABLE_NAME
from errors import DuplicateColumn, ValidationError

TEXT = "TEXT"
INTEGER = "INTEGER"
REAL = "REAL"

INTEGER_RE = re.compile(r"[+-]?\d+")
REAL_RE = re.compile(r"[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    storage_type: str = TEXT


@dataclass
class TableSpec:
    name: str
    columns: List[ColumnSpec] = field(default_factory=list)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def as_pairs(self) -> List[tuple]:
        return [(c.name, c.storage_type) for c in self.columns]


def quote_identifier(name: str) -> str:
    """Double-quote an SQL identifier, escaping embedded quotes."""
    return '"' + str(name).replace('"', '""') + '"'


def classify_value(raw: Optional[str]) -> str:
    """
    INTEGER if the text is a base-10 integer, REAL if it parses as a float,
    TEXT otherwise (including empty values).
    """
    if raw is None:
        return TEXT
    s = str(raw).strip()
    if INTEGER_RE.fullmatch(s):
        return INTEGER
    if REAL_RE.fullmatch(s):
        return REAL
    return TEXT


def check_header(columns: Sequence[str]) -> List[str]:
    names = [str(c) for c in columns]
    if not names:
        raise ValidationError("CSV header row is empty")
    if any(not n.strip() for n in names):
        raise ValidationError(
            "CSV header contains an empty column name",
            message="Every column in the header row needs a name.",
        )
    dupes = [name for name, n in Counter(names).items() if n > 1]
    # SQLite compares column names case-insensitively
    if not dupes:
        folded = Counter(n.lower() for n in names)
        dupes = [n for n in names if folded[n.lower()] > 1]
    if dupes:
        raise DuplicateColumn(dupes)
    return names


def infer_schema(
    columns: Sequence[str],
    sample: Optional[Mapping[str, Optional[str]]] = None,
    infer_types: bool = False,
    table: str = TABLE_NAME,
) -> TableSpec:
    """
    Build the TableSpec for an upload.

    With infer_types off every column is TEXT. With it on, each column takes
    the type of its value in `sample` (the first data row); columns missing
    from the sample stay TEXT.
    """
    names = check_header(columns)
    types: Dict[str, str] = {}
    for name in names:
        if infer_types and sample is not None:
            types[name] = classify_value(sample.get(name))
        else:
            types[name] = TEXT
    return TableSpec(name=table, columns=[ColumnSpec(n, types[n]) for n in names])


def create_table_sql(spec: TableSpec) -> str:
    column_defs = ", ".join(
        f"{quote_identifier(c.name)} {c.storage_type}" for c in spec.columns
    )
    return f"CREATE TABLE {quote_identifier(spec.name)} ({column_defs})"


def insert_sql(spec: TableSpec) -> str:
    col_list = ", ".join(quote_identifier(c) for c in spec.column_names)
    placeholders = ", ".join(["?"] * len(spec.columns))
    return f"INSERT INTO {quote_identifier(spec.name)} ({col_list}) VALUES ({placeholders})"
