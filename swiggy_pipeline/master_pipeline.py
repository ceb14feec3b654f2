# Master Pipeline Runner
# Orchestrates the complete 3-layer Swiggy sales pipeline

import pandas as pd
import numpy as np
import logging
from datetime import datetime
import os
import argparse

from .pipeline_orchestrator import DataPipelineOrchestrator
from .layer1_staging import run_staging_pipeline
from .layer2_warehouse import run_warehouse_pipeline
from .layer3_reporting import run_reporting_pipeline, ReportingLayer
from .config import get_data_path, NULL_MARKER, DEFAULT_TOP_N, LOG_LEVEL, LOG_FORMAT

LAYERS = ['staging', 'warehouse', 'reporting']


class MasterPipelineRunner:
    """
    Master pipeline runner that orchestrates all three layers:
    1. Staging (Layer 1): Ingestion, validation, deduplication, normalization
    2. Warehouse (Layer 2): Star schema dimensions and order facts
    3. Reporting (Layer 3): KPIs and trend breakdowns
    """

    def __init__(self, base_path: str = None, config: dict = None):
        self.base_path = base_path or get_data_path()
        self.config = config or {}
        self.orchestrator = None
        self.results = {}
        self.reports = {}

        os.makedirs(self.base_path, exist_ok=True)

        # Setup logging
        logging.basicConfig(
            level=LOG_LEVEL,
            format=LOG_FORMAT,
            handlers=[
                logging.FileHandler(os.path.join(self.base_path, 'master_pipeline.log')),
                logging.StreamHandler()
            ]
        )
        self.logger = logging.getLogger(__name__)

    def _run_layer(self, layer_key: str, label: str, step):
        """Run one layer, recording status, duration and summary in self.results"""

        self.logger.info(f"Starting {label}...")
        layer_start = datetime.now()

        try:
            summary, output = step()
            self.results[layer_key] = {
                'status': 'SUCCESS',
                'duration': (datetime.now() - layer_start).total_seconds(),
                'summary': summary
            }
            self.logger.info(f"{label} completed successfully")
            return output

        except Exception as e:
            self.results[layer_key] = {
                'status': 'FAILED',
                'duration': (datetime.now() - layer_start).total_seconds(),
                'error': str(e)
            }
            self.logger.error(f"{label} failed: {str(e)}")
            raise

    def run_full_pipeline(self, csv_file_path: str, skip_layers: list = None) -> bool:
        """
        Run the complete 3-layer pipeline

        Args:
            csv_file_path: Path to the raw Swiggy CSV file
            skip_layers: Layers to skip (e.g., ['staging'] to rebuild the star
                from the cleaned records already in staging.db)
        """

        skip_layers = skip_layers or []
        pipeline_start_time = datetime.now()
        top_n = self.config.get('top_n', DEFAULT_TOP_N)
        export = self.config.get('export_reports', True)

        try:
            self.logger.info("=" * 60)
            self.logger.info("STARTING MASTER DATA PIPELINE")
            self.logger.info("=" * 60)

            self.orchestrator = DataPipelineOrchestrator(base_path=self.base_path)
            cleaned = None

            # Layer 1: Staging
            if 'staging' not in skip_layers:
                def staging_step():
                    _, summary, records = run_staging_pipeline(csv_file_path, self.orchestrator)
                    return summary, records

                cleaned = self._run_layer('layer1', "Layer 1: Staging Pipeline", staging_step)
            else:
                self.logger.info("Skipping Layer 1: Staging Pipeline")

            # Layer 2: Data Warehouse
            if 'warehouse' not in skip_layers:
                def warehouse_step():
                    _, summary, star = run_warehouse_pipeline(self.orchestrator, cleaned)
                    return summary, star

                self._run_layer('layer2', "Layer 2: Data Warehouse Pipeline", warehouse_step)
            else:
                self.logger.info("Skipping Layer 2: Data Warehouse Pipeline")

            # Layer 3: Reporting
            if 'reporting' not in skip_layers:
                def reporting_step():
                    _, summary, reports = run_reporting_pipeline(self.orchestrator, export, top_n)
                    return summary, reports

                self.reports = self._run_layer('layer3', "Layer 3: Reporting Pipeline", reporting_step)
            else:
                self.logger.info("Skipping Layer 3: Reporting Pipeline")

            total_duration = (datetime.now() - pipeline_start_time).total_seconds()

            self.logger.info("=" * 60)
            self.logger.info("MASTER PIPELINE COMPLETED SUCCESSFULLY")
            self.logger.info(f"Total duration: {total_duration:.2f} seconds")
            self.logger.info("=" * 60)

            return True

        except Exception as e:
            total_duration = (datetime.now() - pipeline_start_time).total_seconds()
            self.logger.error("=" * 60)
            self.logger.error("MASTER PIPELINE FAILED")
            self.logger.error(f"Error: {str(e)}")
            self.logger.error(f"Duration until failure: {total_duration:.2f} seconds")
            self.logger.error("=" * 60)
            return False

        finally:
            if self.orchestrator:
                # Keep run metadata around for the summary once connections are closed
                self.results['data_quality'] = self.orchestrator.get_data_quality_summary().to_dict('records')
                self.results['pipeline_status'] = self.orchestrator.get_pipeline_status().to_dict('records')
                self.orchestrator.close_connections()

    def get_pipeline_report(self) -> dict:
        """Generate a report from the databases of a previous run"""

        orchestrator = DataPipelineOrchestrator(base_path=self.base_path)

        report = {
            'pipeline_status': None,
            'data_quality_summary': None,
            'kpis': None
        }

        try:
            report['pipeline_status'] = orchestrator.get_pipeline_status().to_dict('records')
            report['data_quality_summary'] = orchestrator.get_data_quality_summary().to_dict('records')
            report['kpis'] = ReportingLayer(orchestrator).get_kpis()

        except Exception as e:
            report['report_error'] = f"Error generating report: {str(e)}"

        finally:
            orchestrator.close_connections()

        return report

    def print_execution_summary(self):
        """Print a formatted execution summary"""

        print("\n" + "=" * 70)
        print("DATA PIPELINE EXECUTION SUMMARY")
        print("=" * 70)

        for layer_name in ['layer1', 'layer2', 'layer3']:
            if layer_name not in self.results:
                continue

            layer_result = self.results[layer_name]
            status = layer_result['status']

            print(f"\n{layer_name.upper()}:")
            print(f"  Status: {status}")
            print(f"  Duration: {layer_result['duration']:.2f} seconds")

            if status == 'SUCCESS':
                summary = layer_result['summary']

                if layer_name == 'layer1':
                    print(f"  Raw records: {summary.get('raw_records', 0):,}")
                    print(f"  Rejected records: {summary.get('rejected_records', 0):,}")
                    print(f"  Duplicates removed: {summary.get('rows_removed', 0):,}")
                    print(f"  Cleaned records: {summary.get('cleaned_records', 0):,}")

                elif layer_name == 'layer2':
                    print(f"  Fact rows: {summary.get('total_orders', 0):,}")
                    print(f"  Excluded records: {summary.get('excluded_records', 0):,}")
                    print(f"  Total revenue: INR {summary.get('total_revenue', 0):,.2f}")

                elif layer_name == 'layer3':
                    kpis = summary.get('kpis', {})
                    print(f"  Total orders: {kpis.get('total_orders', 0):,}")
                    print(f"  Revenue: {kpis.get('total_revenue_inr_million', 0):,.2f} INR Million")
                    print(f"  Average price: {kpis.get('average_price')} INR")
                    print(f"  Average rating: {kpis.get('average_rating')}")

            else:
                print(f"  Error: {layer_result.get('error', 'Unknown error')}")

        dq_summary = pd.DataFrame(self.results.get('data_quality', []))
        print(f"\nDATA QUALITY SUMMARY:")

        if len(dq_summary) > 0:
            total_checks = dq_summary['total_checks'].sum()
            total_passed = dq_summary['passed'].sum()
            total_warnings = dq_summary['warnings'].sum()
            total_failed = dq_summary['failed'].sum()
            success_rate = (total_passed / total_checks * 100) if total_checks > 0 else 0

            print(f"  Total checks: {total_checks}")
            print(f"  Passed: {total_passed}")
            print(f"  Warnings: {total_warnings}")
            print(f"  Failed: {total_failed}")
            print(f"  Success rate: {success_rate:.1f}%")

            if total_failed > 0:
                print(f"\n  Failed checks by table:")
                failed_by_table = dq_summary[dq_summary['failed'] > 0]
                for _, row in failed_by_table.iterrows():
                    print(f"    {row['table_name']}: {row['failed']} failed")
        else:
            print("  No data quality checks recorded")

        print("\n" + "=" * 70)


def create_sample_data(csv_file_path: str, n_records: int = 1000, seed: int = 42) -> str:
    """
    Write a synthetic raw Swiggy file for demos

    Besides regular rows the file contains exact duplicates, duplicates
    differing only in surrounding whitespace, a blank category, a null order
    date and one malformed row with a missing field.
    """

    rng = np.random.default_rng(seed)

    locations = [
        ('Karnataka', 'Bengaluru', 'Koramangala'),
        ('Karnataka', 'Bengaluru', 'Indiranagar'),
        ('Karnataka', 'Mysuru', 'Vijayanagar'),
        ('Maharashtra', 'Mumbai', 'Andheri'),
        ('Maharashtra', 'Pune', 'Kothrud'),
        ('Delhi', 'New Delhi', 'Connaught Place'),
        ('Tamil Nadu', 'Chennai', 'T Nagar'),
    ]
    menu = [
        ('Biryani', 'Chicken Biryani'),
        ('Biryani', 'Veg Biryani'),
        ('North Indian', 'Butter Naan'),
        ('North Indian', 'Paneer Tikka'),
        ('South Indian', 'Masala Dosa'),
        ('Desserts', 'Gulab Jamun'),
        ('Chinese', 'Hakka Noodles'),
    ]
    restaurants = ['Meghana Foods', 'Empire Restaurant', 'Behrouz Biryani', 'A2B', 'Wow! Momo']

    location_idx = rng.integers(0, len(locations), n_records)
    menu_idx = rng.integers(0, len(menu), n_records)
    dates = pd.Timestamp('2025-01-01') + pd.to_timedelta(rng.integers(0, 365, n_records), unit='D')

    sample = pd.DataFrame({
        'State': [locations[i][0] for i in location_idx],
        'City': [locations[i][1] for i in location_idx],
        'Order Date': dates.strftime('%Y-%m-%d'),
        'Restaurant Name': rng.choice(restaurants, n_records),
        'Location': [locations[i][2] for i in location_idx],
        'Category': [menu[i][0] for i in menu_idx],
        'Dish Name': [menu[i][1] for i in menu_idx],
        'Price (INR)': np.round(rng.uniform(40, 800, n_records), 2),
        'Rating': np.round(rng.uniform(1, 5, n_records), 1),
        'Rating Count': rng.integers(0, 500, n_records),
    })

    # Exact duplicates and whitespace-only variants of existing rows
    duplicates = sample.sample(n=max(1, n_records // 20), random_state=seed)
    padded = sample.sample(n=max(1, n_records // 50), random_state=seed + 1).copy()
    padded['Restaurant Name'] = '  ' + padded['Restaurant Name'] + ' '
    sample = pd.concat([sample, duplicates, padded], ignore_index=True)

    sample.loc[0, 'Category'] = ''
    sample.loc[1, 'Order Date'] = NULL_MARKER

    directory = os.path.dirname(csv_file_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    sample.to_csv(csv_file_path, index=False)

    # Malformed row: one field short
    with open(csv_file_path, 'a') as csv_file:
        csv_file.write('Karnataka,Bengaluru,2025-03-01,Meghana Foods,Koramangala,Biryani,Chicken Biryani,250.00,4.5\n')

    return csv_file_path


def main(argv=None):
    """Command line interface for the master pipeline"""

    parser = argparse.ArgumentParser(description='Run the 3-layer Swiggy sales pipeline')
    parser.add_argument('csv_file', nargs='?', help='Path to the raw Swiggy CSV file')
    parser.add_argument('--data-dir', help='Directory for the pipeline databases (default: PIPELINE_DATA_PATH or ./data)')
    parser.add_argument('--skip-layers', nargs='+', choices=LAYERS,
                       help='Layers to skip (e.g., --skip-layers staging)')
    parser.add_argument('--top-n', type=int, default=DEFAULT_TOP_N,
                       help='Number of rows in top-N rankings')
    parser.add_argument('--no-export', action='store_true',
                       help='Do not write report tables to reporting.db')
    parser.add_argument('--report-only', action='store_true',
                       help='Only generate a report from existing data')
    parser.add_argument('--sample', type=int, metavar='N',
                       help='Generate a synthetic input file with N records and run on it')

    args = parser.parse_args(argv)

    runner = MasterPipelineRunner(
        base_path=args.data_dir,
        config={'top_n': args.top_n, 'export_reports': not args.no_export}
    )

    if args.report_only:
        report = runner.get_pipeline_report()
        print("PIPELINE REPORT:")
        print("=" * 50)

        if report.get('report_error'):
            print(report['report_error'])
            return 1

        print("\nRecent Pipeline Runs:")
        for run in report['pipeline_status'][:10]:
            print(f"  {run['layer']}.{run['table_name']}: {run['status']} ({run.get('row_count') or 0} rows)")

        print("\nKPIs:")
        for name, value in report['kpis'].items():
            print(f"  {name}: {value}")

        return 0

    csv_file = args.csv_file
    if args.sample:
        csv_file = create_sample_data(os.path.join(runner.base_path, 'raw', 'sample_swiggy_data.csv'), args.sample)
        print(f"Created sample data at {csv_file}")

    if not csv_file and 'staging' not in (args.skip_layers or []):
        parser.error('csv_file is required unless --sample, --report-only or --skip-layers staging is given')

    success = runner.run_full_pipeline(csv_file, args.skip_layers)
    runner.print_execution_summary()

    if success:
        print("\nPipeline completed successfully!")
        return 0

    print("\nPipeline failed. Check logs for details.")
    return 1


if __name__ == "__main__":
    exit(main())
