"""Spreadsheet column headers shared by the import parser, template and exports."""

COLUMN_ACTION = "Import Action"
COLUMN_LOADER_CODE = "Loader Code"
COLUMN_LOADER_SQL = "SQL Query"
COLUMN_MIN_INTERVAL = "Min Interval (seconds)"
COLUMN_MAX_INTERVAL = "Max Interval (seconds)"
COLUMN_MAX_QUERY_PERIOD = "Query Period (seconds)"
COLUMN_MAX_PARALLEL = "Max Parallel Executions"
COLUMN_PURGE_STRATEGY = "Purge Strategy"
COLUMN_TIMEZONE_OFFSET = "Timezone Offset (hours)"
COLUMN_AGGREGATION_PERIOD = "Aggregation Period (seconds)"
COLUMN_SOURCE_DATABASE = "Source Database Code"
COLUMN_ENABLED = "Enabled"

# Header -> LoaderConfiguration attribute.
COLUMN_TO_FIELD: dict[str, str] = {
    COLUMN_LOADER_SQL: "loader_sql",
    COLUMN_MIN_INTERVAL: "min_interval_seconds",
    COLUMN_MAX_INTERVAL: "max_interval_seconds",
    COLUMN_MAX_QUERY_PERIOD: "max_query_period_seconds",
    COLUMN_MAX_PARALLEL: "max_parallel_executions",
    COLUMN_PURGE_STRATEGY: "purge_strategy",
    COLUMN_TIMEZONE_OFFSET: "source_timezone_offset_hours",
    COLUMN_AGGREGATION_PERIOD: "aggregation_period_seconds",
    COLUMN_SOURCE_DATABASE: "source_database_code",
    COLUMN_ENABLED: "enabled",
}

FIELD_TO_COLUMN: dict[str, str] = {field: column for column, field in COLUMN_TO_FIELD.items()}
FIELD_TO_COLUMN.update(action=COLUMN_ACTION, loader_code=COLUMN_LOADER_CODE)

IMPORT_COLUMNS: tuple[str, ...] = (
    COLUMN_ACTION,
    COLUMN_LOADER_CODE,
    *COLUMN_TO_FIELD.keys(),
)

EXPORT_COLUMNS: tuple[str, ...] = (
    COLUMN_LOADER_CODE,
    *COLUMN_TO_FIELD.keys(),
    "Version",
    "Approved By",
    "Approved At",
)

ERROR_REPORT_SHEET = "Import Errors"
ERROR_REPORT_COLUMNS: tuple[str, ...] = ("Row", "Loader Code", "Field", "Error", "Error Type")

PROTECTED_PLACEHOLDER = "***protected***"
