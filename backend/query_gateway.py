# query_gateway.py
"""
Read side of store_metrics: paginated ad-hoc queries, counts, schema and CSV
export.

The query text comes straight from the dashboard and is executed as-is. These
functions sit behind the internal trust boundary and must not be exposed to
untrusted clients. Filter *values* are always bound as parameters.
"""

import json
import re
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import pandas as pd

from config import TABLE_NAME
from errors import TableNotFound, ValidationError
from schema_infer import quote_identifier
from storage import Database

DEFAULT_QUERY = f"SELECT * FROM {TABLE_NAME}"
DEFAULT_PAGE = 1
DEFAULT_LIMIT = 100
EXPORT_CHUNK_ROWS = 1000

LIMIT_RE = re.compile(r"\blimit\b", re.IGNORECASE)

SCALAR_TYPES = (str, int, float, bool, type(None))


def has_limit_clause(sql_text: str) -> bool:
    return LIMIT_RE.search(sql_text) is not None


def paginate(sql_text: str, page: int, limit: int) -> str:
    """Append LIMIT/OFFSET unless the query already limits itself."""
    if has_limit_clause(sql_text):
        return sql_text
    offset = (page - 1) * limit
    return f"{sql_text.rstrip().rstrip(';')} LIMIT {limit} OFFSET {offset}"


def _positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"'{name}' must be a positive integer")
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{name}' must be a positive integer") from None
    if n < 1:
        raise ValidationError(f"'{name}' must be a positive integer")
    return n


def query(
    db: Database,
    sql_text: Optional[str] = None,
    page: Any = DEFAULT_PAGE,
    limit: Any = DEFAULT_LIMIT,
) -> Dict[str, Any]:
    """
    Run a caller-supplied read query against store_metrics.

    `total` is the unfiltered row count of the table, not the size of the
    query result.
    """
    page = _positive_int("page", page)
    limit = _positive_int("limit", limit)
    sql_text = (sql_text or "").strip() or DEFAULT_QUERY

    if not db.table_exists(TABLE_NAME):
        raise TableNotFound()

    total = db.row_count(TABLE_NAME)
    rows = db.run_sql_dicts(paginate(sql_text, page, limit))
    return {
        "data": rows,
        "total": total,
        "page": page,
        "limit": limit,
    }


def where_clause(
    conditions: Mapping[str, Any],
    columns: Optional[List[str]] = None,
) -> Tuple[str, List[Any]]:
    """
    Build `"a" = ? AND "b" = ?` plus its parameters. When `columns` is given,
    every key must be one of them (SQLite would otherwise read an unknown
    double-quoted name as a string literal).
    """
    check_keys(conditions, columns)
    clauses = [f"{quote_identifier(k)} = ?" for k in conditions]
    return " AND ".join(clauses), [conditions[k] for k in conditions]


def check_keys(values: Mapping[str, Any], columns: Optional[List[str]]):
    if columns is not None:
        known = {c.lower() for c in columns}
        unknown = [k for k in values if str(k).lower() not in known]
        if unknown:
            raise ValidationError(f"Unknown column(s): {', '.join(map(str, unknown))}")
    bad = [k for k, v in values.items() if not isinstance(v, SCALAR_TYPES)]
    if bad:
        raise ValidationError(f"Values must be strings, numbers, booleans or null: {', '.join(bad)}")


def parse_filter(raw: Optional[str]) -> Dict[str, Any]:
    """Decode the JSON `filter` query parameter of /count."""
    if raw is None or not raw.strip():
        return {}
    try:
        conditions = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError("Invalid filter", message="filter must be a JSON object", details=str(e)) from e
    if not isinstance(conditions, dict):
        raise ValidationError("Invalid filter", message="filter must be a JSON object")
    return conditions


def count(db: Database, conditions: Optional[Mapping[str, Any]] = None) -> int:
    sql = f"SELECT COUNT(*) AS count FROM {TABLE_NAME}"
    params: List[Any] = []
    if conditions:
        columns = db.table_columns(TABLE_NAME) if db.table_exists(TABLE_NAME) else None
        where_sql, params = where_clause(conditions, columns)
        sql += f" WHERE {where_sql}"
    return int(db.scalar(sql, params) or 0)


def table_schema(db: Database) -> List[Dict[str, Any]]:
    """Column descriptors from PRAGMA table_info; [] when nothing is loaded."""
    return db.table_info(TABLE_NAME)


def export_csv(db: Database, sql_text: Optional[str] = None) -> Iterator[str]:
    """
    Run the export query now, then hand back an iterator of CSV text.

    The query executes before the first chunk is produced so SQL errors reach
    the caller while it can still send an error response. Rows are fetched
    EXPORT_CHUNK_ROWS at a time as the response is written.
    """
    sql_text = (sql_text or "").strip() or DEFAULT_QUERY
    columns, frames = db.iter_frames(sql_text, chunk_rows=EXPORT_CHUNK_ROWS)

    def chunks() -> Iterator[str]:
        header = True
        for frame in frames:
            yield frame.to_csv(index=False, header=header)
            header = False
        if header:
            # no rows: still send the header line
            yield pd.DataFrame(columns=columns).to_csv(index=False)

    return chunks()
