# Pipeline configuration
# Column layout, cleaning rules, report settings and data-quality thresholds

import os

# Data locations
DEFAULT_DATA_PATH = "./data"
DEFAULT_CSV_FILE = "./data/raw/Swiggy_Data.csv"


def get_data_path() -> str:
    """Directory holding the pipeline databases and log file"""
    return os.getenv("PIPELINE_DATA_PATH", DEFAULT_DATA_PATH)


# Raw file layout (fixed order, header line is skipped)
RAW_COLUMNS = [
    'state', 'city', 'order_date', 'restaurant_name', 'location',
    'category', 'dish_name', 'price_inr', 'rating', 'rating_count'
]

TEXT_COLUMNS = ['state', 'city', 'restaurant_name', 'location', 'category', 'dish_name']
DATE_COLUMN = 'order_date'
DATE_FORMAT = '%Y-%m-%d'

# Decimal places kept for each decimal column (DECIMAL(10,2) / DECIMAL(3,1))
DECIMAL_COLUMNS = {'price_inr': 2, 'rating': 1}
INTEGER_COLUMNS = ['rating_count']

# Marker used by the export tool for NULL fields
NULL_MARKER = '\\N'

# Rejection reasons for malformed rows
REJECT_COLUMN_COUNT = 'column_count'
REJECT_INVALID_TYPE = 'invalid_type'

# Star schema: dimension table -> (surrogate key, natural key columns)
DIMENSIONS = {
    'dim_date': ('date_id', ['full_date']),
    'dim_location': ('location_id', ['state', 'city', 'location']),
    'dim_restaurant': ('restaurant_id', ['restaurant_name']),
    'dim_category': ('category_id', ['category']),
    'dim_dish': ('dish_id', ['dish_name']),
}

# Cleaned-record columns matched against each dimension's natural key.
# Order matters: the first failing dimension names the exclusion reason.
FACT_JOINS = {
    'dim_date': ['order_date'],
    'dim_location': ['state', 'city', 'location'],
    'dim_restaurant': ['restaurant_name'],
    'dim_category': ['category'],
    'dim_dish': ['dish_name'],
}

FACT_TABLE = 'fact_swiggy_orders'
FACT_MEASURES = ['price_inr', 'rating', 'rating_count']

# Price histogram buckets: (label, lower bound inclusive, upper bound exclusive)
PRICE_BUCKETS = [
    ('Under 100', None, 100),
    ('100 - 199', 100, 200),
    ('200 - 299', 200, 300),
    ('300 - 499', 300, 500),
    ('500+', 500, None),
]

# Reporting
DEFAULT_TOP_N = 10

# Data quality thresholds
MIN_RAW_ROWS = 1
MAX_NULL_ORDER_DATE_PCT = 5.0

# Logging
LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
