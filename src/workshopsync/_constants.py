"""Internal constants shared across the library."""

USER_AGENT = "workshopsync/0.1"

#: PostgREST error code for "single row requested, none (or many) found".
ROW_NOT_FOUND_CODE = "PGRST116"
#: PostgREST/GoTrue codes meaning the bearer token is no longer accepted.
SESSION_EXPIRED_CODES: frozenset[str] = frozenset({"PGRST301", "PGRST302", "bad_jwt", "session_not_found"})

#: Settings row holding the shared application configuration.
SETTINGS_TABLE = "app_settings"
SETTINGS_ROW_ID = 1

# ------------------------------------------------------------------
# Column projections
# ------------------------------------------------------------------

#: Narrow projection used for list pages; heavy JSON columns
#: (notes, findings, voice memos) are only fetched for a single request.
REQUEST_LIST_COLUMNS: tuple[str, ...] = (
    "id",
    "request_number",
    "client_id",
    "car_id",
    "car_snapshot",
    "inspection_type_id",
    "payment_type",
    "split_payment_details",
    "price",
    "status",
    "created_at",
    "employee_id",
    "broker",
    "activity_log",
    "technician_assignments",
    "updated_at",
    "attached_files",
    "report_stamps",
)

FINANCIAL_REQUEST_COLUMNS: tuple[str, ...] = (
    "id",
    "request_number",
    "client_id",
    "car_id",
    "price",
    "status",
    "payment_type",
    "split_payment_details",
    "payment_note",
    "broker",
    "created_at",
)

# ------------------------------------------------------------------
# Bulk-load and search limits
# ------------------------------------------------------------------

CLIENT_PREFETCH_LIMIT = 100
CAR_PREFETCH_LIMIT = 100
NOTIFICATION_PREFETCH_LIMIT = 50
RESERVATION_PREFETCH_LIMIT = 50

CAR_SEARCH_LIMIT = 50
MAKE_MODEL_CAR_LIMIT = 100
CLIENT_SEARCH_LIMIT = 50
LOOKUP_LIMIT = 20
CAR_HISTORY_LIMIT = 5

# ------------------------------------------------------------------
# Financials
# ------------------------------------------------------------------

#: Expense categories that are not operational costs. Deductions never
#: leave the cash drawer; advances do, but are settled through payroll.
EXPENSE_CATEGORY_DEDUCTIONS = "خصومات"
EXPENSE_CATEGORY_ADVANCES = "سلف"
NON_OPERATIONAL_EXPENSE_CATEGORIES: frozenset[str] = frozenset(
    {EXPENSE_CATEGORY_DEDUCTIONS, EXPENSE_CATEGORY_ADVANCES}
)

FORECAST_HISTORY_DAYS = 30
FORECAST_HORIZON_DAYS = 7
CHART_HISTORY_DAYS = 14
TREND_SLOPE_THRESHOLD = 50.0

#: Root view the navigation history collapses to after inactivity.
ROOT_PAGE = "dashboard"

#: Defaults for the shared settings row; stored values win key by key
#: and nested sections are merged one level deep.
DEFAULT_SETTINGS: dict[str, object] = {
    "appName": "Workshop",
    "setupCompleted": False,
    "plateCharacters": [],
    "platePreviewSettings": {},
    "reportSettings": {},
}
