# Layer 2: Data Warehouse Pipeline
# Builds the order star schema (five dimensions and one fact table) from cleaned records

import pandas as pd
from typing import Dict, List

from .pipeline_orchestrator import DataPipelineOrchestrator, DataQualityChecker, frame_for_sqlite
from .layer1_staging import read_cleaned_records
from .config import DIMENSIONS, FACT_JOINS, FACT_TABLE, FACT_MEASURES, DATE_COLUMN


def _distinct_projection(records: pd.DataFrame, natural_key: List[str], surrogate_key: str) -> pd.DataFrame:
    """
    Distinct non-null values of natural_key with surrogate keys 1..n

    Keys follow the order in which each value first appears in records.
    """
    projection = records[natural_key].dropna().drop_duplicates().reset_index(drop=True)
    projection.insert(0, surrogate_key, range(1, len(projection) + 1))
    return projection


def build_date_dimension(cleaned: pd.DataFrame) -> pd.DataFrame:
    """Date dimension with calendar attributes; null dates are left out"""

    surrogate_key, natural_key = DIMENSIONS['dim_date']
    dates = pd.DataFrame({natural_key[0]: pd.to_datetime(cleaned[DATE_COLUMN])})
    dim_date = _distinct_projection(dates, natural_key, surrogate_key)

    full_date = dim_date['full_date']
    dim_date['year'] = full_date.dt.year
    dim_date['month'] = full_date.dt.month
    dim_date['month_name'] = full_date.dt.month_name()
    dim_date['quarter'] = full_date.dt.quarter
    dim_date['day'] = full_date.dt.day
    # Week of year with Sunday as first day; days before the first Sunday are week 0
    dim_date['week'] = full_date.dt.strftime('%U').astype(int)
    # 1 = Sunday ... 7 = Saturday
    dim_date['day_of_week'] = (full_date.dt.dayofweek + 1) % 7 + 1
    dim_date['day_name'] = full_date.dt.day_name()

    return dim_date


def build_location_dimension(cleaned: pd.DataFrame) -> pd.DataFrame:
    surrogate_key, natural_key = DIMENSIONS['dim_location']
    return _distinct_projection(cleaned, natural_key, surrogate_key)


def build_restaurant_dimension(cleaned: pd.DataFrame) -> pd.DataFrame:
    surrogate_key, natural_key = DIMENSIONS['dim_restaurant']
    return _distinct_projection(cleaned, natural_key, surrogate_key)


def build_category_dimension(cleaned: pd.DataFrame) -> pd.DataFrame:
    surrogate_key, natural_key = DIMENSIONS['dim_category']
    return _distinct_projection(cleaned, natural_key, surrogate_key)


def build_dish_dimension(cleaned: pd.DataFrame) -> pd.DataFrame:
    surrogate_key, natural_key = DIMENSIONS['dim_dish']
    return _distinct_projection(cleaned, natural_key, surrogate_key)


DIMENSION_BUILDERS = {
    'dim_date': build_date_dimension,
    'dim_location': build_location_dimension,
    'dim_restaurant': build_restaurant_dimension,
    'dim_category': build_category_dimension,
    'dim_dish': build_dish_dimension,
}


def build_dimensions(cleaned: pd.DataFrame) -> Dict[str, pd.DataFrame]:
    """Build all five dimensions from the cleaned records"""
    return {name: builder(cleaned) for name, builder in DIMENSION_BUILDERS.items()}


def build_fact_table(cleaned: pd.DataFrame, dimensions: Dict[str, pd.DataFrame]):
    """
    Resolve surrogate keys for every cleaned record

    Each dimension is joined once on its natural key (exact, case and
    whitespace sensitive match). A record that fails any join is excluded;
    the first failing dimension in FACT_JOINS order names the reason:
    'null_<field>' when the record's own key has a null, otherwise
    'unmatched_<dimension>'.

    Returns:
        (fact, excluded) where excluded holds the dropped cleaned records
        plus an exclusion_reason column
    """
    records = cleaned.reset_index(drop=True)
    resolved = records.copy()
    reasons = pd.Series(None, index=records.index, dtype=object)

    for dim_name, record_columns in FACT_JOINS.items():
        surrogate_key, natural_key = DIMENSIONS[dim_name]

        lookup = dimensions[dim_name][[surrogate_key] + natural_key].dropna(subset=natural_key)
        lookup = lookup.rename(columns=dict(zip(natural_key, record_columns)))

        matched = resolved[record_columns].merge(
            lookup, how='left', on=record_columns, validate='many_to_one'
        )
        resolved[surrogate_key] = matched[surrogate_key].to_numpy()

        unresolved = resolved[surrogate_key].isna() & reasons.isna()
        key_nulls = records[record_columns].isna()
        has_null = key_nulls.any(axis=1)

        null_rows = unresolved & has_null
        if null_rows.any():
            # First null field of the record's key
            first_null = key_nulls[null_rows].astype(int).idxmax(axis=1)
            reasons[null_rows] = 'null_' + first_null
        reasons[unresolved & ~has_null] = f'unmatched_{dim_name}'

    included = reasons.isna()

    fact_columns = ['date_id'] + FACT_MEASURES + ['location_id', 'restaurant_id', 'category_id', 'dish_id']
    fact = resolved.loc[included, fact_columns].reset_index(drop=True)
    for surrogate_key, _ in DIMENSIONS.values():
        fact[surrogate_key] = fact[surrogate_key].astype('int64')
    fact.insert(0, 'order_id', range(1, len(fact) + 1))

    excluded = records.loc[~included].copy()
    excluded['exclusion_reason'] = reasons[~included]

    return fact, excluded.reset_index(drop=True)


def summarize_exclusions(excluded: pd.DataFrame) -> Dict[str, int]:
    """Number of excluded records per exclusion reason"""
    return {reason: int(count) for reason, count in excluded['exclusion_reason'].value_counts().items()}


class WarehouseLayer:
    """
    Layer 2: Data Warehouse Layer
    - Creates the star schema (dim_date, dim_location, dim_restaurant,
      dim_category, dim_dish and fact_swiggy_orders)
    - Populates dimensions as distinct projections of the cleaned records
    - Resolves fact foreign keys by natural-key lookup and accounts for
      every cleaned record that does not make it into the fact table
    """

    def __init__(self, orchestrator: DataPipelineOrchestrator):
        self.orchestrator = orchestrator
        self.warehouse_conn = orchestrator.databases['warehouse']
        self.dq_checker = DataQualityChecker(orchestrator)
        self.logger = orchestrator.logger
        self.exclusions = {}

        # Attach staging database to warehouse connection for cross-database queries
        attached = [row[1] for row in self.warehouse_conn.execute("PRAGMA database_list")]
        if 'staging' not in attached:
            staging_db_path = f'{orchestrator.base_path}/staging.db'
            self.warehouse_conn.execute("ATTACH DATABASE ? AS staging", (staging_db_path,))

    def create_warehouse_schema(self):
        """Create dimension and fact tables, dropping the ones from a previous run"""

        # Fact first: it references every dimension
        for table in [FACT_TABLE] + list(DIMENSIONS):
            self.warehouse_conn.execute(f"DROP TABLE IF EXISTS main.{table}")

        # Date Dimension
        self.warehouse_conn.execute("""
            CREATE TABLE dim_date (
                date_id INTEGER PRIMARY KEY,
                full_date DATE UNIQUE,
                year INTEGER,
                month INTEGER,
                month_name TEXT,
                quarter INTEGER,
                day INTEGER,
                week INTEGER,
                day_of_week INTEGER,
                day_name TEXT
            )
        """)

        # Location Dimension
        self.warehouse_conn.execute("""
            CREATE TABLE dim_location (
                location_id INTEGER PRIMARY KEY,
                state TEXT,
                city TEXT,
                location TEXT,
                UNIQUE (state, city, location)
            )
        """)

        # Restaurant, Category and Dish Dimensions
        self.warehouse_conn.execute("""
            CREATE TABLE dim_restaurant (
                restaurant_id INTEGER PRIMARY KEY,
                restaurant_name TEXT UNIQUE
            )
        """)

        self.warehouse_conn.execute("""
            CREATE TABLE dim_category (
                category_id INTEGER PRIMARY KEY,
                category TEXT UNIQUE
            )
        """)

        self.warehouse_conn.execute("""
            CREATE TABLE dim_dish (
                dish_id INTEGER PRIMARY KEY,
                dish_name TEXT UNIQUE
            )
        """)

        # Order Fact Table
        self.warehouse_conn.execute(f"""
            CREATE TABLE {FACT_TABLE} (
                order_id INTEGER PRIMARY KEY,
                date_id INTEGER NOT NULL REFERENCES dim_date (date_id),
                price_inr REAL,
                rating REAL,
                rating_count INTEGER,
                location_id INTEGER NOT NULL REFERENCES dim_location (location_id),
                restaurant_id INTEGER NOT NULL REFERENCES dim_restaurant (restaurant_id),
                category_id INTEGER NOT NULL REFERENCES dim_category (category_id),
                dish_id INTEGER NOT NULL REFERENCES dim_dish (dish_id)
            )
        """)

        self.warehouse_conn.commit()
        self.logger.info("Data warehouse schema created successfully")

    def load_cleaned_records(self) -> pd.DataFrame:
        """Read cleaned records from the attached staging database"""
        return read_cleaned_records(self.warehouse_conn, 'staging.swiggy_clean')

    def load_dimension_tables(self, cleaned: pd.DataFrame) -> Dict[str, pd.DataFrame]:
        """Build and persist every dimension table"""

        dimensions = {}

        for dim_name, builder in DIMENSION_BUILDERS.items():
            run_id = self.orchestrator.log_pipeline_run('WAREHOUSE', dim_name, 'STARTED')

            try:
                dimension = builder(cleaned)
                frame_for_sqlite(dimension).to_sql(
                    dim_name, self.warehouse_conn, if_exists='append', index=False
                )
                self.warehouse_conn.commit()

                self.orchestrator.log_pipeline_run(
                    'WAREHOUSE', dim_name, 'SUCCESS', len(dimension), run_id=run_id
                )
                self.orchestrator.log_lineage(['swiggy_clean'], dim_name, 'DISTINCT_PROJECTION')
                self.logger.info(f"{dim_name} built successfully with {len(dimension)} rows")

                _, natural_key = DIMENSIONS[dim_name]
                self.dq_checker.check_unique_key(self.warehouse_conn, dim_name, natural_key, run_id)

                dimensions[dim_name] = dimension

            except Exception as e:
                self.orchestrator.log_pipeline_run('WAREHOUSE', dim_name, 'FAILED', 0, str(e), run_id=run_id)
                self.logger.error(f"Failed to build {dim_name}: {str(e)}")
                raise

        return dimensions

    def load_fact_table(self, cleaned: pd.DataFrame, dimensions: Dict[str, pd.DataFrame]):
        """Build and persist the order fact table"""

        run_id = self.orchestrator.log_pipeline_run('WAREHOUSE', FACT_TABLE, 'STARTED')

        try:
            fact, excluded = build_fact_table(cleaned, dimensions)

            fact.to_sql(FACT_TABLE, self.warehouse_conn, if_exists='append', index=False)
            self.warehouse_conn.commit()

            self.orchestrator.log_pipeline_run('WAREHOUSE', FACT_TABLE, 'SUCCESS', len(fact), run_id=run_id)
            self.orchestrator.log_lineage(['swiggy_clean'] + list(DIMENSIONS), FACT_TABLE, 'NATURAL_KEY_JOIN')
            self.logger.info(f"{FACT_TABLE} built successfully with {len(fact)} rows")

            self.exclusions = summarize_exclusions(excluded)
            for reason, count in self.exclusions.items():
                self.logger.warning(f"Excluded {count} cleaned records from {FACT_TABLE} ({reason})")

            self._run_fact_quality_checks(run_id, len(cleaned), len(fact))

            return fact, excluded

        except Exception as e:
            self.orchestrator.log_pipeline_run('WAREHOUSE', FACT_TABLE, 'FAILED', 0, str(e), run_id=run_id)
            self.logger.error(f"Failed to build {FACT_TABLE}: {str(e)}")
            raise

    def _run_fact_quality_checks(self, run_id: str, cleaned_count: int, fact_count: int):
        """Run data quality checks on the fact table"""

        # Every cleaned record is either a fact row or an accounted exclusion
        self.dq_checker.check_expectation(
            FACT_TABLE, 'COMPLETENESS', 'fact_accounting_check',
            cleaned_count, fact_count + sum(self.exclusions.values()), run_id
        )

        self.dq_checker.check_expectation(
            FACT_TABLE, 'COMPLETENESS', 'fact_coverage_check',
            cleaned_count, fact_count, run_id, on_mismatch='WARNING'
        )

        for reason, count in self.exclusions.items():
            self.dq_checker.check_expectation(
                FACT_TABLE, 'EXCLUSION', f'{reason}_check', 0, count, run_id, on_mismatch='WARNING'
            )

        for dim_name, (surrogate_key, _) in DIMENSIONS.items():
            self.dq_checker.check_orphan_keys(
                self.warehouse_conn, FACT_TABLE, surrogate_key, dim_name, surrogate_key, run_id
            )

    def get_warehouse_summary(self) -> dict:
        """Get summary of warehouse layer data"""

        summary = {}

        for table in list(DIMENSIONS) + [FACT_TABLE]:
            cursor = self.warehouse_conn.execute(f"SELECT COUNT(*) FROM main.{table}")
            summary[f'{table}_rows'] = cursor.fetchone()[0]

        cursor = self.warehouse_conn.execute(f"""
            SELECT
                COUNT(*) as total_orders,
                SUM(price_inr) as total_revenue
            FROM main.{FACT_TABLE}
        """)
        total_orders, total_revenue = cursor.fetchone()
        summary['total_orders'] = total_orders
        summary['total_revenue'] = round(total_revenue or 0.0, 2)

        summary['exclusion_breakdown'] = dict(self.exclusions)
        summary['excluded_records'] = sum(self.exclusions.values())

        return summary


def run_warehouse_pipeline(orchestrator: DataPipelineOrchestrator = None, cleaned: pd.DataFrame = None):
    """
    Main function to run the warehouse pipeline

    When cleaned is None the cleaned records are read from staging.db.

    Returns:
        (orchestrator, summary, star) where star holds 'dimensions',
        'fact' and 'excluded'
    """

    if orchestrator is None:
        orchestrator = DataPipelineOrchestrator()

    try:
        warehouse = WarehouseLayer(orchestrator)
        warehouse.create_warehouse_schema()

        if cleaned is None:
            warehouse.logger.info("Reading cleaned records from staging...")
            cleaned = warehouse.load_cleaned_records()

        warehouse.logger.info("Building dimension tables...")
        dimensions = warehouse.load_dimension_tables(cleaned)

        warehouse.logger.info("Building order fact table...")
        fact, excluded = warehouse.load_fact_table(cleaned, dimensions)

        summary = warehouse.get_warehouse_summary()
        warehouse.logger.info(f"Warehouse pipeline completed successfully: {summary}")

        print("WAREHOUSE LAYER SUMMARY:")
        print("=" * 50)
        for dim_name in DIMENSIONS:
            print(f"{dim_name}: {summary[f'{dim_name}_rows']:,} rows")
        print(f"{FACT_TABLE}: {summary[f'{FACT_TABLE}_rows']:,} rows")
        print(f"Excluded records: {summary['excluded_records']:,}")
        for reason, count in summary['exclusion_breakdown'].items():
            print(f"  {reason}: {count:,}")
        print(f"Total revenue: INR {summary['total_revenue']:,.2f}")

        star = {'dimensions': dimensions, 'fact': fact, 'excluded': excluded}
        return orchestrator, summary, star

    except Exception as e:
        orchestrator.logger.error(f"Warehouse pipeline failed: {str(e)}")
        raise
