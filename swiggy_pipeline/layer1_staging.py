# Layer 1: Staging Pipeline
# Raw data ingestion, validation, deduplication and text normalization

import pandas as pd
import numpy as np
import sqlite3
import warnings
from datetime import datetime
import os

from .pipeline_orchestrator import DataPipelineOrchestrator, DataQualityChecker, frame_for_sqlite
from .config import (
    RAW_COLUMNS, TEXT_COLUMNS, DATE_COLUMN, DATE_FORMAT, DECIMAL_COLUMNS, INTEGER_COLUMNS,
    NULL_MARKER, REJECT_COLUMN_COUNT, REJECT_INVALID_TYPE, MIN_RAW_ROWS, MAX_NULL_ORDER_DATE_PCT
)

# Catches fields beyond the expected ten so over-long rows can be rejected
_OVERFLOW_COLUMN = '_overflow'

# 2**63 as a float; anything at or above it cannot be cast to int64
_INT64_LIMIT = float(np.iinfo('int64').max)


def load_raw_records(csv_file_path: str):
    """
    Read the raw delimited file as untyped text

    The header line is skipped and fields are taken in the fixed RAW_COLUMNS
    order. Rows with a field count other than ten are returned separately.

    Returns:
        (staged, rejected) DataFrames, both carrying a 1-based row_number
    """
    columns = RAW_COLUMNS + [_OVERFLOW_COLUMN]

    with warnings.catch_warnings():
        # Over-long rows are truncated into the overflow column on purpose
        warnings.simplefilter('ignore', pd.errors.ParserWarning)
        df = pd.read_csv(
            csv_file_path,
            header=None,
            skiprows=1,
            names=columns,
            dtype=object,
            keep_default_na=False,
            index_col=False,
            skip_blank_lines=True,
            engine='python',
            on_bad_lines=lambda fields: fields[:len(columns)]
        )

    df = df.reset_index(drop=True)
    df.insert(0, 'row_number', range(1, len(df) + 1))

    # Short rows are padded with NaN, long rows spill into the overflow column
    bad_width = df[RAW_COLUMNS].isna().any(axis=1) | df[_OVERFLOW_COLUMN].notna()

    rejected = df.loc[bad_width, ['row_number'] + RAW_COLUMNS].copy()
    rejected.insert(1, 'reason', REJECT_COLUMN_COUNT)

    staged = df.loc[~bad_width, ['row_number'] + RAW_COLUMNS].reset_index(drop=True)
    return staged, rejected.reset_index(drop=True)


def apply_raw_types(staged: pd.DataFrame):
    """
    Convert staged text fields to their typed representation

    Text fields keep their original (untrimmed) value; the null marker
    becomes null. Date and numeric fields treat blanks and the null marker
    as null. A non-blank value that does not parse rejects the whole row.

    Returns:
        (typed, rejected) DataFrames
    """
    typed = staged.copy()
    invalid = pd.Series(False, index=staged.index)

    for column in TEXT_COLUMNS:
        typed[column] = staged[column].where(staged[column] != NULL_MARKER)

    def _present_values(column):
        text = staged[column].astype(str).str.strip()
        missing = staged[column].isna() | (text == '') | (text == NULL_MARKER)
        return text.where(~missing), missing

    # Dates must be ISO formatted (YYYY-MM-DD)
    text, missing = _present_values(DATE_COLUMN)
    parsed_dates = pd.to_datetime(text, format=DATE_FORMAT, errors='coerce')
    invalid |= ~missing & parsed_dates.isna()
    typed[DATE_COLUMN] = parsed_dates

    for column, places in DECIMAL_COLUMNS.items():
        text, missing = _present_values(column)
        values = pd.to_numeric(text, errors='coerce').astype(float)
        invalid |= ~missing & ~np.isfinite(values)
        typed[column] = values.round(places)

    for column in INTEGER_COLUMNS:
        text, missing = _present_values(column)
        values = pd.to_numeric(text, errors='coerce').astype(float)
        # Whole numbers that fit in a 64-bit integer
        unrepresentable = values.notna() & (
            ~np.isfinite(values) | (values % 1 != 0) | (values.abs() >= _INT64_LIMIT)
        )
        invalid |= (~missing & values.isna()) | unrepresentable
        typed[column] = values.where(~unrepresentable)

    rejected = staged.loc[invalid].copy()
    rejected.insert(1, 'reason', REJECT_INVALID_TYPE)

    typed = typed.loc[~invalid].reset_index(drop=True)
    for column in INTEGER_COLUMNS:
        typed[column] = typed[column].astype('Int64')

    return typed, rejected.reset_index(drop=True)


def profile_missing_values(records: pd.DataFrame) -> pd.DataFrame:
    """Null and blank counts per raw column"""

    rows = []
    for column in RAW_COLUMNS:
        values = records[column]
        null_count = int(values.isna().sum())

        # Blank numeric/date fields were already turned into nulls on typing
        blank_count = 0
        if column in TEXT_COLUMNS:
            blank_count = int((values.notna() & (values.astype(str).str.strip() == '')).sum())

        rows.append({'column_name': column, 'null_count': null_count, 'blank_count': blank_count})

    return pd.DataFrame(rows, columns=['column_name', 'null_count', 'blank_count'])


def canonical_key(records: pd.DataFrame) -> pd.DataFrame:
    """
    Canonical form of every record used for duplicate detection

    Text fields are trimmed with '' standing in for null, the order date
    becomes its YYYY-MM-DD text ('' when null) and numeric nulls become 0.
    """
    key = pd.DataFrame(index=records.index)

    for column in TEXT_COLUMNS:
        key[column] = records[column].fillna('').astype(str).str.strip()

    key[DATE_COLUMN] = pd.to_datetime(records[DATE_COLUMN]).dt.strftime(DATE_FORMAT).fillna('')

    for column in list(DECIMAL_COLUMNS) + INTEGER_COLUMNS:
        key[column] = records[column].fillna(0)

    return key[RAW_COLUMNS]


def find_duplicate_groups(records: pd.DataFrame) -> pd.DataFrame:
    """Canonical keys shared by more than one record, largest groups first"""

    key = canonical_key(records)
    if key.empty:
        return pd.DataFrame(columns=RAW_COLUMNS + ['duplicate_count'])

    counts = key.groupby(RAW_COLUMNS, sort=False).size().reset_index(name='duplicate_count')
    duplicates = counts[counts['duplicate_count'] > 1]
    return duplicates.sort_values('duplicate_count', ascending=False, kind='mergesort').reset_index(drop=True)


def deduplicate_records(records: pd.DataFrame):
    """
    Keep exactly one record per canonical key

    Within a group the record with the earliest order date wins; equal dates
    fall back to original row order. Survivors keep their original order and
    the input frame is left untouched.

    Returns:
        (cleaned, report) where report has rows_in, rows_out, rows_removed
        and duplicate_groups
    """
    records = records.reset_index(drop=True)
    key = canonical_key(records)

    # Stable sort keeps original row order among equal dates
    by_date = pd.to_datetime(records[DATE_COLUMN]).sort_values(kind='mergesort', na_position='first').index
    first_in_group = ~key.loc[by_date].duplicated(keep='first')
    keep = first_in_group.reindex(records.index)

    cleaned = records.loc[keep].reset_index(drop=True)

    report = {
        'rows_in': len(records),
        'rows_out': len(cleaned),
        'rows_removed': len(records) - len(cleaned),
        'duplicate_groups': int(key[key.duplicated(keep=False)].drop_duplicates().shape[0])
    }
    return cleaned, report


def normalize_text_fields(records: pd.DataFrame) -> pd.DataFrame:
    """Strip surrounding whitespace from the text fields, nulls stay null"""

    normalized = records.copy()
    for column in TEXT_COLUMNS:
        normalized[column] = normalized[column].map(
            lambda value: value.strip() if isinstance(value, str) else value
        )
    return normalized


def read_cleaned_records(conn: sqlite3.Connection, table_name: str = 'swiggy_clean') -> pd.DataFrame:
    """Load persisted cleaned records back with their pipeline types"""

    cleaned = pd.read_sql_query(f"SELECT {', '.join(RAW_COLUMNS)} FROM {table_name}", conn)
    cleaned[DATE_COLUMN] = pd.to_datetime(cleaned[DATE_COLUMN], format=DATE_FORMAT)
    for column in DECIMAL_COLUMNS:
        cleaned[column] = cleaned[column].astype(float)
    for column in INTEGER_COLUMNS:
        cleaned[column] = cleaned[column].astype('Int64')
    return cleaned


class StagingLayer:
    """
    Layer 1: Staging Layer
    - Ingests the raw delimited file into an untyped staging table
    - Rejects and counts malformed rows without aborting the load
    - Profiles missing values and duplicates (diagnostics only)
    - Deduplicates on the canonical key and trims text fields
    """

    def __init__(self, orchestrator: DataPipelineOrchestrator):
        self.orchestrator = orchestrator
        self.staging_conn = orchestrator.databases['staging']
        self.dq_checker = DataQualityChecker(orchestrator)
        self.logger = orchestrator.logger
        self.dedup_report = {}
        self.validation_report = {}

    def create_staging_schema(self):
        """Create staging tables, dropping the ones from a previous run"""

        text_columns = ',\n                '.join(f"{column} TEXT" for column in RAW_COLUMNS)

        for table in ['stg_swiggy_raw', 'stg_rejected_rows', 'swiggy_clean']:
            self.staging_conn.execute(f"DROP TABLE IF EXISTS {table}")

        # Untyped copy of every well-formed raw row
        self.staging_conn.execute(f"""
            CREATE TABLE stg_swiggy_raw (
                row_number INTEGER,
                {text_columns},
                source_file TEXT,
                load_timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Malformed rows with the reason they were rejected
        self.staging_conn.execute(f"""
            CREATE TABLE stg_rejected_rows (
                row_number INTEGER,
                reason TEXT,
                {text_columns},
                source_file TEXT
            )
        """)

        # Deduplicated, trimmed and typed records
        self.staging_conn.execute("""
            CREATE TABLE swiggy_clean (
                state TEXT,
                city TEXT,
                order_date DATE,
                restaurant_name TEXT,
                location TEXT,
                category TEXT,
                dish_name TEXT,
                price_inr REAL,
                rating REAL,
                rating_count INTEGER
            )
        """)

        self.staging_conn.commit()
        self.logger.info("Staging schema created successfully")

    def ingest_raw_data(self, csv_file_path: str) -> pd.DataFrame:
        """Ingest the raw file into staging and return the typed records"""

        run_id = self.orchestrator.log_pipeline_run('STAGING', 'stg_swiggy_raw', 'STARTED')

        try:
            source_file = os.path.basename(csv_file_path)
            staged, width_rejects = load_raw_records(csv_file_path)

            # Add metadata columns to track when the file was loaded and where it came from
            staged_out = staged.assign(
                source_file=source_file,
                load_timestamp=datetime.now().isoformat(sep=' ', timespec='seconds')
            )
            staged_out.to_sql('stg_swiggy_raw', self.staging_conn, if_exists='append', index=False)

            typed, type_rejects = apply_raw_types(staged)

            rejected = pd.concat([width_rejects, type_rejects], ignore_index=True)
            rejected = rejected.sort_values('row_number', kind='mergesort')
            rejected.assign(source_file=source_file).to_sql(
                'stg_rejected_rows', self.staging_conn, if_exists='append', index=False
            )
            self.staging_conn.commit()

            self.orchestrator.log_pipeline_run(
                'STAGING', 'stg_swiggy_raw', 'SUCCESS', len(staged), run_id=run_id
            )
            self.orchestrator.log_lineage([source_file], 'stg_swiggy_raw', 'RAW_LOAD')

            self.logger.info(f"Successfully loaded {len(staged)} rows to stg_swiggy_raw")
            for reason, count in rejected['reason'].value_counts().items():
                self.logger.warning(f"Rejected {count} malformed rows ({reason})")

            self._run_raw_data_quality_checks(run_id, len(rejected))

            return typed

        except Exception as e:
            self.orchestrator.log_pipeline_run('STAGING', 'stg_swiggy_raw', 'FAILED', 0, str(e), run_id=run_id)
            self.logger.error(f"Failed to ingest raw data: {str(e)}")
            raise

    def _run_raw_data_quality_checks(self, run_id: str, rejected_count: int):
        """Run data quality checks on the raw staging table"""

        self.dq_checker.check_row_count(
            self.staging_conn, 'stg_swiggy_raw', min_rows=MIN_RAW_ROWS, run_id=run_id
        )

        self.dq_checker.check_expectation(
            'stg_swiggy_raw', 'VALIDITY', 'malformed_rows_check',
            0, rejected_count, run_id, on_mismatch='WARNING'
        )

    def validate_raw_data(self, raw: pd.DataFrame) -> dict:
        """Profile nulls, blanks and duplicates of the typed raw records"""

        run_id = self.orchestrator.log_pipeline_run('STAGING', 'raw_validation', 'STARTED')

        try:
            profile = profile_missing_values(raw)
            duplicate_groups = find_duplicate_groups(raw)

            for row in profile.itertuples(index=False):
                if row.null_count or row.blank_count:
                    self.logger.info(
                        f"Column '{row.column_name}': {row.null_count} null, {row.blank_count} blank"
                    )

            duplicate_rows = int((duplicate_groups['duplicate_count'] - 1).sum())
            self.logger.info(
                f"Found {len(duplicate_groups)} duplicate groups covering {duplicate_rows} redundant rows"
            )

            self.dq_checker.check_expectation(
                'stg_swiggy_raw', 'UNIQUENESS', 'canonical_duplicates_check',
                0, duplicate_rows, run_id, on_mismatch='WARNING'
            )

            self.orchestrator.log_pipeline_run(
                'STAGING', 'raw_validation', 'SUCCESS', len(raw), run_id=run_id
            )

        except Exception as e:
            self.orchestrator.log_pipeline_run('STAGING', 'raw_validation', 'FAILED', 0, str(e), run_id=run_id)
            self.logger.error(f"Failed to validate raw data: {str(e)}")
            raise

        self.validation_report = {
            'missing_values': profile,
            'duplicate_groups': duplicate_groups
        }
        return self.validation_report

    def clean_and_deduplicate(self, raw: pd.DataFrame) -> pd.DataFrame:
        """Deduplicate on the canonical key, trim text fields and persist"""

        run_id = self.orchestrator.log_pipeline_run('STAGING', 'swiggy_clean', 'STARTED')

        try:
            deduplicated, self.dedup_report = deduplicate_records(raw)
            cleaned = normalize_text_fields(deduplicated)

            self.staging_conn.execute("DELETE FROM swiggy_clean")
            frame_for_sqlite(cleaned[RAW_COLUMNS]).to_sql(
                'swiggy_clean', self.staging_conn, if_exists='append', index=False
            )
            self.staging_conn.commit()

            self.orchestrator.log_pipeline_run(
                'STAGING', 'swiggy_clean', 'SUCCESS', len(cleaned), run_id=run_id
            )
            self.orchestrator.log_lineage(['stg_swiggy_raw'], 'swiggy_clean', 'DEDUPLICATE_NORMALIZE')

            self.logger.info(
                f"Deduplication kept {self.dedup_report['rows_out']} of {self.dedup_report['rows_in']} "
                f"rows ({self.dedup_report['rows_removed']} removed)"
            )

            self.dq_checker.check_unique_key(self.staging_conn, 'swiggy_clean', RAW_COLUMNS, run_id)
            self.dq_checker.check_null_percentage(
                self.staging_conn, 'swiggy_clean', DATE_COLUMN, MAX_NULL_ORDER_DATE_PCT, run_id
            )

            return cleaned

        except Exception as e:
            self.orchestrator.log_pipeline_run('STAGING', 'swiggy_clean', 'FAILED', 0, str(e), run_id=run_id)
            self.logger.error(f"Failed to clean data: {str(e)}")
            raise

    def get_staging_summary(self) -> dict:
        """Get summary of staging layer data"""

        summary = {}

        cursor = self.staging_conn.execute("SELECT COUNT(*) FROM stg_swiggy_raw")
        summary['raw_records'] = cursor.fetchone()[0]

        cursor = self.staging_conn.execute("""
            SELECT reason, COUNT(*)
            FROM stg_rejected_rows
            GROUP BY reason
        """)
        summary['rejection_breakdown'] = dict(cursor.fetchall())
        summary['rejected_records'] = sum(summary['rejection_breakdown'].values())

        summary['typed_records'] = self.dedup_report.get('rows_in', 0)
        summary['rows_removed'] = self.dedup_report.get('rows_removed', 0)
        summary['duplicate_groups'] = self.dedup_report.get('duplicate_groups', 0)

        cursor = self.staging_conn.execute("SELECT COUNT(*) FROM swiggy_clean")
        summary['cleaned_records'] = cursor.fetchone()[0]

        cursor = self.staging_conn.execute("""
            SELECT MIN(order_date), MAX(order_date)
            FROM swiggy_clean
            WHERE order_date IS NOT NULL
        """)
        date_range = cursor.fetchone()
        summary['date_range'] = {'min': date_range[0], 'max': date_range[1]}

        return summary


def run_staging_pipeline(csv_file_path: str, orchestrator: DataPipelineOrchestrator = None):
    """
    Main function to run the staging pipeline

    Returns:
        (orchestrator, summary, cleaned records)
    """

    if orchestrator is None:
        orchestrator = DataPipelineOrchestrator()

    try:
        staging = StagingLayer(orchestrator)
        staging.create_staging_schema()

        staging.logger.info("Starting raw data ingestion...")
        raw = staging.ingest_raw_data(csv_file_path)

        staging.logger.info("Profiling raw data...")
        staging.validate_raw_data(raw)

        staging.logger.info("Starting deduplication and cleaning...")
        cleaned = staging.clean_and_deduplicate(raw)

        summary = staging.get_staging_summary()
        staging.logger.info(f"Staging pipeline completed successfully: {summary}")

        print("STAGING LAYER SUMMARY:")
        print("=" * 50)
        print(f"Raw records loaded: {summary['raw_records']:,}")
        print(f"Rejected records: {summary['rejected_records']:,}")
        for reason, count in summary['rejection_breakdown'].items():
            print(f"  {reason}: {count:,}")
        print(f"Duplicate rows removed: {summary['rows_removed']:,}")
        print(f"Cleaned records: {summary['cleaned_records']:,}")
        print(f"Date range: {summary['date_range']['min']} to {summary['date_range']['max']}")

        return orchestrator, summary, cleaned

    except Exception as e:
        orchestrator.logger.error(f"Staging pipeline failed: {str(e)}")
        raise
