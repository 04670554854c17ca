# mutation_gateway.py
"""
Write side of store_metrics: targeted updates, caller-supplied cleanup
statements and the full table drop behind /db-cleanup.
"""

from typing import Any, Mapping, Optional

from config import TABLE_NAME, log
from errors import BadRequest, TableNotFound
from query_gateway import check_keys, where_clause
from schema_infer import quote_identifier
from storage import Database


def update(
    db: Database,
    conditions: Optional[Mapping[str, Any]],
    updates: Optional[Mapping[str, Any]],
) -> int:
    """
    UPDATE store_metrics SET <updates> WHERE <conditions>; returns the number
    of changed rows. Both mappings must be non-empty: a mass update with no
    filter is not supported.
    """
    if not conditions or not updates:
        raise BadRequest(
            "Both filter and updates must be non-empty objects",
            message="An update needs at least one filter column and one column to set.",
        )
    if not db.table_exists(TABLE_NAME):
        raise TableNotFound()

    columns = db.table_columns(TABLE_NAME)
    check_keys(updates, columns)
    set_clause = ", ".join(f"{quote_identifier(k)} = ?" for k in updates)
    where_sql, where_params = where_clause(conditions, columns)

    sql = f"UPDATE {TABLE_NAME} SET {set_clause} WHERE {where_sql}"
    params = list(updates.values()) + where_params
    affected = db.execute(sql, params)
    log(f"Updated {affected} row(s) in {TABLE_NAME}")
    return affected


def cleanup(db: Database, sql_text: Optional[str]) -> int:
    """Execute one caller-supplied statement (trusted callers only)."""
    if not sql_text or not sql_text.strip():
        raise BadRequest("Missing 'query'", message="Provide the SQL statement to run.")
    affected = db.execute(sql_text)
    log(f"Cleanup statement affected {affected} row(s)")
    return affected


def drop_table(db: Database):
    """Drop store_metrics and give the freed pages back to the filesystem."""
    db.drop_table(TABLE_NAME)
    db.vacuum()
    log(f"Dropped table {TABLE_NAME}")
