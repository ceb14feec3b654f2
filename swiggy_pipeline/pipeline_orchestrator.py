import sqlite3
import pandas as pd
import logging
from datetime import datetime
from typing import List
import os

from .config import get_data_path, DATE_FORMAT, LOG_LEVEL, LOG_FORMAT


def _timestamp() -> str:
    return datetime.now().isoformat(sep=' ')


def frame_for_sqlite(frame: pd.DataFrame) -> pd.DataFrame:
    """Copy of frame with datetime columns stored as YYYY-MM-DD text"""
    out = frame.copy()
    for column in out.columns:
        if pd.api.types.is_datetime64_any_dtype(out[column]):
            out[column] = out[column].dt.strftime(DATE_FORMAT)
    return out


class DataPipelineOrchestrator:
    """
    Main orchestrator for the 3-layer Swiggy sales pipeline
    Layer 1: Staging (raw ingestion, validation, deduplication, normalization)
    Layer 2: Warehouse (star schema: dimensions and order facts)
    Layer 3: Reporting (KPIs and trend breakdowns)
    """

    def __init__(self, base_path: str = None):
        self.base_path = base_path or get_data_path()
        os.makedirs(self.base_path, exist_ok=True)

        # Database connections
        self.databases = {
            'staging': sqlite3.connect(os.path.join(self.base_path, 'staging.db')),
            'warehouse': sqlite3.connect(os.path.join(self.base_path, 'warehouse.db')),
            'reporting': sqlite3.connect(os.path.join(self.base_path, 'reporting.db')),
            'metadata': sqlite3.connect(os.path.join(self.base_path, 'metadata.db'))
        }

        # Fact rows must reference existing dimension rows
        self.databases['warehouse'].execute("PRAGMA foreign_keys = ON")

        # Setup logging
        logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT, handlers=[logging.StreamHandler()])
        self.logger = logging.getLogger(__name__)
        self.logger.setLevel(LOG_LEVEL)

        # Each run writes its own pipeline.log, even when logging was configured elsewhere
        self.log_handler = logging.FileHandler(os.path.join(self.base_path, 'pipeline.log'))
        self.log_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        self.logger.addHandler(self.log_handler)

        # Initialize metadata tables
        self._setup_metadata_tables()

    def _setup_metadata_tables(self):
        """Create metadata tracking tables"""
        metadata_conn = self.databases['metadata']

        # Pipeline run tracking
        metadata_conn.execute("""
            CREATE TABLE IF NOT EXISTS pipeline_runs (
                run_id TEXT PRIMARY KEY,
                layer TEXT,
                table_name TEXT,
                status TEXT,
                start_time TIMESTAMP,
                end_time TIMESTAMP,
                row_count INTEGER,
                error_message TEXT
            )
        """)

        # Data quality check results
        metadata_conn.execute("""
            CREATE TABLE IF NOT EXISTS data_quality_checks (
                check_id TEXT PRIMARY KEY,
                run_id TEXT,
                table_name TEXT,
                check_type TEXT,
                check_name TEXT,
                expected_value TEXT,
                actual_value TEXT,
                status TEXT,
                error_details TEXT,
                check_time TIMESTAMP,
                FOREIGN KEY (run_id) REFERENCES pipeline_runs (run_id)
            )
        """)

        # Table lineage tracking
        metadata_conn.execute("""
            CREATE TABLE IF NOT EXISTS table_lineage (
                lineage_id TEXT PRIMARY KEY,
                source_table TEXT,
                target_table TEXT,
                transformation_type TEXT,
                created_at TIMESTAMP
            )
        """)

        metadata_conn.commit()

    def log_pipeline_run(self, layer: str, table_name: str, status: str,
                        row_count: int = None, error_message: str = None,
                        run_id: str = None) -> str:
        """
        Log pipeline run information

        A 'STARTED' call creates the run and returns its id; later calls
        pass that run_id to record the final status.
        """
        metadata_conn = self.databases['metadata']

        if status == 'STARTED' or run_id is None:
            run_id = f"{layer}_{table_name}_{datetime.now().strftime('%Y%m%d_%H%M%S_%f')}"
            metadata_conn.execute("""
                INSERT INTO pipeline_runs
                (run_id, layer, table_name, status, start_time, row_count, error_message)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (run_id, layer, table_name, status, _timestamp(), row_count, error_message))
        else:
            metadata_conn.execute("""
                UPDATE pipeline_runs
                SET status = ?, end_time = ?, row_count = ?, error_message = ?
                WHERE run_id = ?
            """, (status, _timestamp(), row_count, error_message, run_id))

        metadata_conn.commit()
        return run_id

    def log_data_quality_check(self, run_id: str, table_name: str, check_type: str,
                              check_name: str, expected: str, actual: str,
                              status: str, error_details: str = None):
        """Log data quality check results"""
        check_id = f"{run_id}_{check_name}_{datetime.now().strftime('%H%M%S_%f')}"

        metadata_conn = self.databases['metadata']
        metadata_conn.execute("""
            INSERT INTO data_quality_checks
            (check_id, run_id, table_name, check_type, check_name,
             expected_value, actual_value, status, error_details, check_time)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (check_id, run_id, table_name, check_type, check_name,
              expected, actual, status, error_details, _timestamp()))

        metadata_conn.commit()

    def log_lineage(self, source_tables: List[str], target_table: str, transformation_type: str):
        """Record which tables a target table was derived from"""
        metadata_conn = self.databases['metadata']
        created_at = _timestamp()

        for source_table in source_tables:
            lineage_id = f"{source_table}->{target_table}_{created_at}"
            metadata_conn.execute("""
                INSERT INTO table_lineage
                (lineage_id, source_table, target_table, transformation_type, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (lineage_id, source_table, target_table, transformation_type, created_at))

        metadata_conn.commit()

    def get_pipeline_status(self) -> pd.DataFrame:
        """Get current pipeline status"""
        metadata_conn = self.databases['metadata']
        return pd.read_sql_query("""
            SELECT layer, table_name, status, start_time, end_time, row_count, error_message
            FROM pipeline_runs
            ORDER BY start_time DESC
            LIMIT 20
        """, metadata_conn)

    def get_data_quality_summary(self) -> pd.DataFrame:
        """Get data quality check summary"""
        metadata_conn = self.databases['metadata']
        return pd.read_sql_query("""
            SELECT table_name, check_type,
                   COUNT(*) as total_checks,
                   SUM(CASE WHEN status = 'PASSED' THEN 1 ELSE 0 END) as passed,
                   SUM(CASE WHEN status = 'WARNING' THEN 1 ELSE 0 END) as warnings,
                   SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END) as failed
            FROM data_quality_checks
            GROUP BY table_name, check_type
            ORDER BY table_name
        """, metadata_conn)

    def get_lineage(self) -> pd.DataFrame:
        """Get recorded table lineage"""
        metadata_conn = self.databases['metadata']
        return pd.read_sql_query("""
            SELECT source_table, target_table, transformation_type, created_at
            FROM table_lineage
            ORDER BY created_at, source_table
        """, metadata_conn)

    def close_connections(self):
        """Close all database connections"""
        for db_name, conn in self.databases.items():
            conn.close()
            self.logger.info(f"Closed {db_name} database connection")

        self.logger.removeHandler(self.log_handler)
        self.log_handler.close()


class DataQualityChecker:
    """Data quality validation framework"""

    def __init__(self, orchestrator: DataPipelineOrchestrator):
        self.orchestrator = orchestrator
        self.logger = orchestrator.logger

    def check_row_count(self, conn: sqlite3.Connection, table_name: str,
                       min_rows: int, run_id: str) -> bool:
        """Check minimum row count"""
        try:
            cursor = conn.execute(f"SELECT COUNT(*) FROM {table_name}")
            actual_count = cursor.fetchone()[0]

            status = "PASSED" if actual_count >= min_rows else "FAILED"

            self.orchestrator.log_data_quality_check(
                run_id, table_name, "ROW_COUNT", "min_rows_check",
                str(min_rows), str(actual_count), status
            )

            if status == "FAILED":
                self.logger.warning(f"Row count check failed for {table_name}: {actual_count} < {min_rows}")

            return status == "PASSED"

        except Exception as e:
            self.orchestrator.log_data_quality_check(
                run_id, table_name, "ROW_COUNT", "min_rows_check",
                str(min_rows), "ERROR", "FAILED", str(e)
            )
            return False

    def check_null_percentage(self, conn: sqlite3.Connection, table_name: str,
                             column_name: str, max_null_pct: float, run_id: str) -> bool:
        """Check null percentage in a column"""
        try:
            cursor = conn.execute(f"""
                SELECT
                    COUNT(*) as total_rows,
                    SUM(CASE WHEN {column_name} IS NULL THEN 1 ELSE 0 END) as null_rows
                FROM {table_name}
            """)
            total_rows, null_rows = cursor.fetchone()

            actual_null_pct = (null_rows / total_rows * 100) if total_rows > 0 else 0
            status = "PASSED" if actual_null_pct <= max_null_pct else "FAILED"

            self.orchestrator.log_data_quality_check(
                run_id, table_name, "NULL_CHECK", f"{column_name}_null_check",
                f"<={max_null_pct}%", f"{actual_null_pct:.2f}%", status
            )

            return status == "PASSED"

        except Exception as e:
            self.orchestrator.log_data_quality_check(
                run_id, table_name, "NULL_CHECK", f"{column_name}_null_check",
                f"<={max_null_pct}%", "ERROR", "FAILED", str(e)
            )
            return False

    def check_unique_key(self, conn: sqlite3.Connection, table_name: str,
                        key_columns: List[str], run_id: str) -> bool:
        """Check that no two rows share the same values in key_columns"""
        key_list = ', '.join(key_columns)
        check_name = f"{'_'.join(key_columns)}_unique_check"

        try:
            cursor = conn.execute(f"""
                SELECT COUNT(*) FROM (
                    SELECT {key_list}
                    FROM {table_name}
                    GROUP BY {key_list}
                    HAVING COUNT(*) > 1
                )
            """)
            duplicate_keys = cursor.fetchone()[0]

            status = "PASSED" if duplicate_keys == 0 else "FAILED"

            self.orchestrator.log_data_quality_check(
                run_id, table_name, "UNIQUENESS", check_name,
                "0", str(duplicate_keys), status
            )

            if status == "FAILED":
                self.logger.warning(f"{duplicate_keys} duplicate keys on ({key_list}) in {table_name}")

            return status == "PASSED"

        except Exception as e:
            self.orchestrator.log_data_quality_check(
                run_id, table_name, "UNIQUENESS", check_name,
                "0", "ERROR", "FAILED", str(e)
            )
            return False

    def check_orphan_keys(self, conn: sqlite3.Connection, table_name: str, column_name: str,
                         ref_table: str, ref_column: str, run_id: str) -> bool:
        """Check that every foreign key value exists in the referenced table"""
        check_name = f"{column_name}_fk_check"

        try:
            cursor = conn.execute(f"""
                SELECT COUNT(*)
                FROM {table_name} t
                LEFT JOIN {ref_table} r ON t.{column_name} = r.{ref_column}
                WHERE r.{ref_column} IS NULL
            """)
            orphaned = cursor.fetchone()[0]

            status = "PASSED" if orphaned == 0 else "FAILED"

            self.orchestrator.log_data_quality_check(
                run_id, table_name, "REFERENTIAL_INTEGRITY", check_name,
                "0", str(orphaned), status
            )

            return status == "PASSED"

        except Exception as e:
            self.orchestrator.log_data_quality_check(
                run_id, table_name, "REFERENTIAL_INTEGRITY", check_name,
                "0", "ERROR", "FAILED", str(e)
            )
            return False

    def check_expectation(self, table_name: str, check_type: str, check_name: str,
                         expected, actual, run_id: str, on_mismatch: str = "FAILED") -> bool:
        """
        Record an already computed value against its expectation

        Diagnostic findings (duplicates found, fact exclusions) use
        on_mismatch='WARNING' so they are surfaced without failing the check.
        """
        status = "PASSED" if actual == expected else on_mismatch

        self.orchestrator.log_data_quality_check(
            run_id, table_name, check_type, check_name,
            str(expected), str(actual), status
        )

        if status != "PASSED":
            self.logger.warning(f"{check_name} on {table_name}: expected {expected}, got {actual}")

        return status == "PASSED"
