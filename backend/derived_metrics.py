# derived_metrics.py
"""
Store metrics view for the dashboard.

A fixed, read-only query over the raw store_metrics rows. Everything is
computed in a single pass with CASE expressions; numeric inputs go through
COALESCE(x, '0') and CAST(... AS NUMERIC), so blanks and non-numeric text count
as 0 instead of failing the query.
"""

from typing import Any, Dict, List, Set

from config import TABLE_NAME, log
from errors import NotFoundError
from schema_infer import quote_identifier
from storage import Database

ROW_CAP = 1000

NO_DATA_MESSAGE = "Please upload a CSV file to view store metrics."

# Passed through as text.
IDENTITY_COLUMNS = [
    "wm_time_window_week",
    "all_links_item_description",
    "all_links_item_number",
    "brand_id",
    "brand_name",
    "buyer_name",
    "consumer_id",
    "country_of_origin",
    "omni_category_group_description",
    "omni_department_number",
    "season_description",
    "season_year",
    "walmart_upc_number",
    "vendor_name",
    "vendor_number",
    "store_number",
    "city_name",
    "catalog_item_id",
]

# Cast to numbers, defaulting to 0.
NUMERIC_COLUMNS = [
    "base_unit_retail_amount",
    "dollar_per_str_with_sales_per_week_or_per_day_ty",
    "store_in_transit_quantity_this_year",
    "store_in_warehouse_quantity_this_year",
    "store_on_hand_quantity_this_year",
    "store_on_order_quantity_this_year",
    "pos_quantity_this_year",
    "units_per_str_with_sales_per_week_or_per_day_ty",
    "gross_receipt_quantity_this_year",
    "net_receipt_quantity_this_year",
    "total_store_customer_returns_quantity_defective_this_year",
    "instock_percentage_this_year",
    "repl_instock_percentage_this_year",
    "valid_store_count_this_year",
]

WOS_SQL = """
        CASE
          WHEN pos_quantity_this_year / 4.0 > 0 THEN
            ROUND((store_on_hand_quantity_this_year
                   + store_in_warehouse_quantity_this_year
                   + store_in_transit_quantity_this_year)
                  / (pos_quantity_this_year / 4.0), 2)
          ELSE 0
        END"""


def _source(col: str, present: Set[str]) -> str:
    # Columns missing from the upload read as NULL and fall back to the defaults.
    return quote_identifier(col) if col.lower() in present else "NULL"


def build_query(present_columns: List[str]) -> str:
    present = {c.lower() for c in present_columns}
    desc = f"COALESCE({_source('all_links_item_description', present)}, '')"

    base_select = []
    for col in IDENTITY_COLUMNS:
        base_select.append(f"COALESCE({_source(col, present)}, '') AS {col}")
    for col in NUMERIC_COLUMNS:
        base_select.append(f"CAST(COALESCE({_source(col, present)}, '0') AS NUMERIC) AS {col}")
    base_select.append(f"CAST(COALESCE({_source('case_packs', present)}, '0') AS INTEGER) AS case_packs")
    base_select.append(
        f"""CASE
            WHEN {desc} LIKE 'MS%' THEN 6
            WHEN {desc} LIKE 'BHG%' THEN 5
            ELSE 0
          END AS units_per_case_pack"""
    )
    base_cols = ",\n          ".join(base_select)

    return f"""
    WITH base_data AS (
        SELECT
          {base_cols}
        FROM {TABLE_NAME}
    ),
    computed AS (
        SELECT
          *,
          {WOS_SQL.strip()} AS wos
        FROM base_data
    )
    SELECT
        wm_time_window_week,
        all_links_item_description,
        all_links_item_number,
        base_unit_retail_amount,
        brand_id,
        brand_name,
        buyer_name,
        consumer_id,
        country_of_origin,
        omni_category_group_description,
        omni_department_number,
        season_description,
        season_year,
        walmart_upc_number,
        vendor_name,
        vendor_number,
        store_number,
        city_name,
        catalog_item_id,
        all_links_item_number || '/' || store_number || '/' || city_name AS item_store_city,
        store_in_transit_quantity_this_year,
        store_in_warehouse_quantity_this_year,
        store_on_hand_quantity_this_year,
        store_on_order_quantity_this_year,
        pos_quantity_this_year,
        ROUND(pos_quantity_this_year / 4.0, 2)                              AS l4w_pos_quantity_this_year,
        ROUND(pos_quantity_this_year / 4.0, 2)                              AS l4w_pos_quantity,
        ROUND(pos_quantity_this_year / 52.0, 2)                             AS average_weekly_sales,
        units_per_str_with_sales_per_week_or_per_day_ty,
        ROUND(units_per_str_with_sales_per_week_or_per_day_ty / 4.0, 2)     AS l4w_units_per_str_with_sales_per_week_or_per_day_ty,
        dollar_per_str_with_sales_per_week_or_per_day_ty,
        ROUND(dollar_per_str_with_sales_per_week_or_per_day_ty / 4.0, 2)    AS l4w_dollar_per_str_with_sales_per_week_or_per_day_ty,
        gross_receipt_quantity_this_year,
        net_receipt_quantity_this_year,
        total_store_customer_returns_quantity_defective_this_year,
        instock_percentage_this_year,
        repl_instock_percentage_this_year,
        valid_store_count_this_year,
        store_in_warehouse_quantity_this_year
          + store_in_transit_quantity_this_year                            AS pipeline_iw_it,
        wos                                                                 AS wos_with_instore_pipeline,
        wos                                                                 AS weeks_of_supply,
        units_per_case_pack,
        case_packs,
        CASE
          WHEN case_packs > 0 AND wos > 0 THEN case_packs * wos
          ELSE 0
        END                                                                 AS total_units
    FROM computed
    ORDER BY store_number, all_links_item_number
    LIMIT {ROW_CAP};
    """


def store_metrics(db: Database) -> List[Dict[str, Any]]:
    """
    One derived row per (item, store), capped at ROW_CAP rows.

    Raises NotFoundError when nothing has been uploaded yet.
    """
    if not db.table_exists(TABLE_NAME) or db.row_count(TABLE_NAME) == 0:
        raise NotFoundError("No data available", message=NO_DATA_MESSAGE)

    columns = db.table_columns(TABLE_NAME)
    log(f"Executing store metrics query over {len(columns)} columns...")
    rows = db.run_sql_dicts(build_query(columns))
    log(f"Store metrics query returned {len(rows)} rows")
    if not rows:
        raise NotFoundError("No data found", message="No data found. Please upload a CSV file with data.")
    return rows
