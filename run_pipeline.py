#!/usr/bin/env python3
"""
Swiggy Sales Pipeline Runner

Simple script to run the complete Swiggy sales pipeline.
Usage: python run_pipeline.py [csv_file_path]

If no CSV file is provided, it will use the default Swiggy data file.
"""

import sys
import os
from swiggy_pipeline.master_pipeline import main
from swiggy_pipeline.config import DEFAULT_CSV_FILE, get_data_path


def run_pipeline(argv=None):
    """Run the Swiggy sales pipeline"""

    argv = sys.argv[1:] if argv is None else argv

    # Get CSV file from command line argument or use default
    csv_file = argv[0] if argv else DEFAULT_CSV_FILE

    # Check if file exists
    if not os.path.exists(csv_file):
        print(f"Error: CSV file not found: {csv_file}")
        print(f"Make sure the file exists or provide a valid path")
        print(f"Usage: python run_pipeline.py [csv_file_path]")
        return 1

    print(f"Starting Swiggy Sales Pipeline...")
    print(f"Data source: {csv_file}")
    print(f"Database output: {get_data_path()} directory")
    print("=" * 60)

    result = main([csv_file])

    if result == 0:
        print("\n" + "=" * 60)
        print("Generated databases:")
        print("   - staging.db   - Raw, rejected and cleaned records")
        print("   - warehouse.db - Star schema (5 dimensions + fact_swiggy_orders)")
        print("   - reporting.db - Exported KPI and trend reports")
        print("   - metadata.db  - Pipeline runs, data quality checks, lineage")

    return result


if __name__ == "__main__":
    sys.exit(run_pipeline())
