#!/usr/bin/env python3
"""
Swiggy Sales Pipeline Test Suite
Tests the 3-layer pipeline (staging, warehouse, reporting) on small raw files
"""

import sqlite3
import os

import pandas as pd
import pytest

from swiggy_pipeline.pipeline_orchestrator import DataPipelineOrchestrator
from swiggy_pipeline.master_pipeline import MasterPipelineRunner, create_sample_data, main
from swiggy_pipeline.layer1_staging import (
    load_raw_records, apply_raw_types, profile_missing_values, find_duplicate_groups,
    deduplicate_records, normalize_text_fields, run_staging_pipeline
)
from swiggy_pipeline.layer2_warehouse import (
    build_dimensions, build_date_dimension, build_fact_table, run_warehouse_pipeline
)
from swiggy_pipeline.layer3_reporting import ReportingLayer, price_bucket
from swiggy_pipeline.config import REJECT_COLUMN_COUNT, REJECT_INVALID_TYPE, PRICE_BUCKETS

HEADER = 'State,City,Order Date,Restaurant Name,Location,Category,Dish Name,Price (INR),Rating,Rating Count'

ROW_A = 'KA,Bengaluru,2024-01-05,R1,L1,Biryani,Chicken Biryani,250.00,4.5,10'
ROW_B = 'KA,Bengaluru,2024-01-07,R1,L1,Biryani,Veg Biryani,99.99,4.0,3'
ROW_C = 'MH,Mumbai,2024-02-10,R2,L2,Desserts,Gulab Jamun,500,3.5,8'
ROW_D = 'MH,Mumbai,2024-04-01,R3,L3,Chinese,Hakka Noodles,120.5,4.5,1'


def write_csv(path, rows):
    path.write_text('\n'.join([HEADER] + rows) + '\n')
    return str(path)


def typed_records(tmp_path, rows):
    staged, _ = load_raw_records(write_csv(tmp_path / 'raw.csv', rows))
    typed, _ = apply_raw_types(staged)
    return typed


@pytest.fixture
def orchestrator(tmp_path):
    orch = DataPipelineOrchestrator(base_path=str(tmp_path))
    yield orch
    orch.close_connections()


@pytest.fixture
def star_orchestrator(tmp_path, orchestrator):
    """Orchestrator whose warehouse has been built from four distinct orders plus one duplicate"""
    csv_file = write_csv(tmp_path / 'orders.csv', [ROW_A, ROW_B, ROW_C, ROW_D, ROW_A])
    run_staging_pipeline(csv_file, orchestrator)
    run_warehouse_pipeline(orchestrator)
    return orchestrator


# Ingestion

def test_load_raw_records_rejects_wrong_column_count(tmp_path):
    csv_file = write_csv(tmp_path / 'raw.csv', [ROW_A, 'KA,Bengaluru,2024-01-05', ROW_B + ',extra', ROW_C, ''])

    staged, rejected = load_raw_records(csv_file)

    assert len(staged) == 2
    assert list(staged['row_number']) == [1, 4]
    assert list(rejected['row_number']) == [2, 3]
    assert set(rejected['reason']) == {REJECT_COLUMN_COUNT}


def test_load_raw_records_keeps_text_untouched(tmp_path):
    csv_file = write_csv(tmp_path / 'raw.csv', ['KA,Bengaluru,2024-01-05,  R1 ,L1,Biryani,Chicken Biryani,250.00,4.5,10'])

    staged, rejected = load_raw_records(csv_file)

    assert rejected.empty
    assert staged.loc[0, 'restaurant_name'] == '  R1 '
    assert staged.loc[0, 'price_inr'] == '250.00'


def test_apply_raw_types_rejects_unparseable_values(tmp_path):
    rows = [
        ROW_A,
        'KA,Bengaluru,05/01/2024,R1,L1,Biryani,Chicken Biryani,250.00,4.5,10',
        'KA,Bengaluru,2024-01-05,R1,L1,Biryani,Chicken Biryani,abc,4.5,10',
        'KA,Bengaluru,2024-01-05,R1,L1,Biryani,Chicken Biryani,250.00,4.5,2.5',
    ]
    staged, _ = load_raw_records(write_csv(tmp_path / 'raw.csv', rows))

    typed, rejected = apply_raw_types(staged)

    assert len(typed) == 1
    assert list(rejected['row_number']) == [2, 3, 4]
    assert set(rejected['reason']) == {REJECT_INVALID_TYPE}


def test_apply_raw_types_rejects_out_of_range_numbers(tmp_path):
    rows = [
        ROW_A,
        'KA,Bengaluru,2024-01-05,R1,L1,Biryani,Chicken Biryani,250.00,4.5,99999999999999999999999',
        'KA,Bengaluru,2024-01-05,R1,L1,Biryani,Chicken Biryani,inf,4.5,3',
        'KA,Bengaluru,2024-01-05,R1,L1,Biryani,Chicken Biryani,nan,4.5,3',
        'KA,Bengaluru,2024-01-05,R1,L1,Biryani,Chicken Biryani,250.00,-inf,3',
        'KA,Bengaluru,2024-01-05,R1,L1,Biryani,Chicken Biryani,250.00,4.5,inf',
        ROW_B,
    ]
    staged, _ = load_raw_records(write_csv(tmp_path / 'raw.csv', rows))

    typed, rejected = apply_raw_types(staged)

    assert list(typed['row_number']) == [1, 7]
    assert list(rejected['row_number']) == [2, 3, 4, 5, 6]
    assert set(rejected['reason']) == {REJECT_INVALID_TYPE}
    assert list(typed['rating_count']) == [10, 3]


def test_staging_continues_past_out_of_range_rating_count(tmp_path, orchestrator):
    csv_file = write_csv(tmp_path / 'orders.csv', [
        ROW_A, 'KA,Bengaluru,2024-01-05,R1,L1,Biryani,Chicken Biryani,250.00,4.5,99999999999999999999999'
    ])

    _, summary, cleaned = run_staging_pipeline(csv_file, orchestrator)

    assert summary['rejection_breakdown'] == {REJECT_INVALID_TYPE: 1}
    assert summary['cleaned_records'] == 1
    assert len(cleaned) == 1


def test_apply_raw_types_nulls_and_rounding(tmp_path):
    rows = [
        'KA,\\N,\\N,R1,L1,,Chicken Biryani,250.456,4.46,',
        'KA,Bengaluru,,R1,L1,Biryani,Chicken Biryani,\\N,,7',
    ]
    typed = typed_records(tmp_path, rows)

    assert len(typed) == 2
    assert pd.isna(typed.loc[0, 'city'])
    assert typed.loc[0, 'category'] == ''
    assert pd.isna(typed.loc[0, 'order_date'])
    assert pd.isna(typed.loc[1, 'order_date'])
    assert typed.loc[0, 'price_inr'] == pytest.approx(250.46)
    assert typed.loc[0, 'rating'] == pytest.approx(4.5)
    assert pd.isna(typed.loc[0, 'rating_count'])
    assert pd.isna(typed.loc[1, 'price_inr'])
    assert pd.isna(typed.loc[1, 'rating'])
    assert typed.loc[1, 'rating_count'] == 7
    assert str(typed['rating_count'].dtype) == 'Int64'


# Validation

def test_profile_missing_values(tmp_path):
    typed = typed_records(tmp_path, [ROW_A, 'KA,\\N,2024-01-05,R1,L1, ,Chicken Biryani,,4.5,10'])

    profile = profile_missing_values(typed).set_index('column_name')

    assert profile.loc['city', 'null_count'] == 1
    assert profile.loc['category', 'blank_count'] == 1
    assert profile.loc['price_inr', 'null_count'] == 1
    assert profile.loc['state', 'null_count'] == 0


def test_find_duplicate_groups_uses_trimmed_text(tmp_path):
    padded = ROW_A.replace(',R1,', ',  R1 ,')
    typed = typed_records(tmp_path, [ROW_A, ROW_B, padded, ROW_A])

    groups = find_duplicate_groups(typed)

    assert len(groups) == 1
    assert groups.loc[0, 'restaurant_name'] == 'R1'
    assert groups.loc[0, 'duplicate_count'] == 3


def test_find_duplicate_groups_without_duplicates(tmp_path):
    typed = typed_records(tmp_path, [ROW_A, ROW_B])
    assert find_duplicate_groups(typed).empty


# Deduplication

def test_deduplicate_collapses_exact_duplicates(tmp_path):
    typed = typed_records(tmp_path, [ROW_A, ROW_A, ROW_A])

    cleaned, report = deduplicate_records(typed)

    assert len(cleaned) == 1
    assert report == {'rows_in': 3, 'rows_out': 1, 'rows_removed': 2, 'duplicate_groups': 1}


def test_deduplicate_collapses_whitespace_variants_keeping_first_row(tmp_path):
    padded = ROW_A.replace(',R1,', ',  R1 ,')
    typed = typed_records(tmp_path, [ROW_B, padded, ROW_A])

    cleaned, report = deduplicate_records(typed)

    assert list(cleaned['row_number']) == [1, 2]
    assert cleaned.loc[1, 'restaurant_name'] == '  R1 '
    assert report['rows_removed'] == 1


def test_deduplicate_collapses_fully_null_rows(tmp_path):
    null_row = ','.join(['\\N'] * 10)
    typed = typed_records(tmp_path, [null_row, ROW_A, null_row])

    cleaned, report = deduplicate_records(typed)

    assert len(cleaned) == 2
    assert report['rows_removed'] == 1


def test_deduplicate_is_idempotent_and_leaves_input_untouched(tmp_path):
    typed = typed_records(tmp_path, [ROW_C, ROW_A, ROW_A, ROW_B, ROW_C])
    original = typed.copy()

    cleaned, _ = deduplicate_records(typed)
    cleaned_again, report = deduplicate_records(cleaned)

    pd.testing.assert_frame_equal(typed, original)
    pd.testing.assert_frame_equal(cleaned, cleaned_again)
    assert report['rows_removed'] == 0
    assert list(cleaned['row_number']) == [1, 2, 4]


def test_normalize_text_fields(tmp_path):
    typed = typed_records(tmp_path, [' KA ,\\N,2024-01-05,  R1 ,L1,Biryani ,Chicken Biryani,250.00,4.5,10'])

    normalized = normalize_text_fields(typed)

    assert normalized.loc[0, 'state'] == 'KA'
    assert normalized.loc[0, 'restaurant_name'] == 'R1'
    assert normalized.loc[0, 'category'] == 'Biryani'
    assert pd.isna(normalized.loc[0, 'city'])
    pd.testing.assert_frame_equal(normalize_text_fields(normalized), normalized)


# Dimensions

def test_date_dimension_attributes(tmp_path):
    typed = typed_records(tmp_path, [ROW_A, ROW_B, ROW_A, 'KA,Bengaluru,\\N,R1,L1,Biryani,Chicken Biryani,250.00,4.5,10'])

    dim_date = build_date_dimension(typed).set_index('date_id')

    assert list(dim_date.index) == [1, 2]
    friday = dim_date.loc[1]
    assert friday['full_date'] == pd.Timestamp('2024-01-05')
    assert friday['year'] == 2024
    assert friday['month'] == 1
    assert friday['month_name'] == 'January'
    assert friday['quarter'] == 1
    assert friday['day'] == 5
    assert friday['week'] == 0
    assert friday['day_of_week'] == 6
    assert friday['day_name'] == 'Friday'

    sunday = dim_date.loc[2]
    assert sunday['week'] == 1
    assert sunday['day_of_week'] == 1


def test_dimensions_are_distinct_projections(tmp_path):
    typed = normalize_text_fields(typed_records(tmp_path, [
        ROW_A, ROW_B, ROW_C, ROW_D,
        'MH,Mumbai,2024-04-02,R3,L3,\\N,Hakka Noodles,120.5,4.5,1',
        'MH,Mumbai,2024-04-03,R3,L3,,Hakka Noodles,120.5,4.5,1',
    ]))

    dimensions = build_dimensions(typed)

    assert list(dimensions['dim_location']['location_id']) == [1, 2, 3]
    assert list(dimensions['dim_location']['city']) == ['Bengaluru', 'Mumbai', 'Mumbai']
    assert list(dimensions['dim_restaurant']['restaurant_name']) == ['R1', 'R2', 'R3']
    # Null categories are left out, blank ones are a value of their own
    assert list(dimensions['dim_category']['category']) == ['Biryani', 'Desserts', 'Chinese', '']
    assert len(dimensions['dim_dish']) == 4
    for name, dimension in dimensions.items():
        assert not dimension.iloc[:, 1:].duplicated().any(), name


# Fact table

def test_fact_table_accounts_for_every_record(tmp_path):
    cleaned = normalize_text_fields(typed_records(tmp_path, [
        ROW_A,
        'KA,Bengaluru,\\N,R1,L1,Biryani,Chicken Biryani,250.00,4.5,10',
        'KA,\\N,2024-01-06,R2,L2,Desserts,Gulab Jamun,99.99,4.0,5',
        'KA,Bengaluru,2024-01-07,R2,L1,\\N,Veg Biryani,150,3.9,2',
    ]))

    fact, excluded = build_fact_table(cleaned, build_dimensions(cleaned))

    assert len(fact) + len(excluded) == len(cleaned)
    assert list(fact['order_id']) == [1]
    assert fact.loc[0, 'price_inr'] == pytest.approx(250.0)
    assert fact.loc[0, 'rating_count'] == 10
    assert list(excluded['exclusion_reason']) == ['null_order_date', 'null_city', 'null_category']


def test_fact_table_resolves_matching_surrogate_keys(tmp_path):
    cleaned = normalize_text_fields(typed_records(tmp_path, [ROW_A, ROW_B, ROW_C, ROW_D]))
    dimensions = build_dimensions(cleaned)

    fact, excluded = build_fact_table(cleaned, dimensions)

    assert excluded.empty
    restaurants = dimensions['dim_restaurant'].set_index('restaurant_id')['restaurant_name']
    assert list(fact['restaurant_id'].map(restaurants)) == list(cleaned['restaurant_name'])
    dates = dimensions['dim_date'].set_index('date_id')['full_date']
    assert list(fact['date_id'].map(dates)) == list(cleaned['order_date'])


def test_fact_table_reports_unmatched_dimension(tmp_path):
    cleaned = normalize_text_fields(typed_records(tmp_path, [ROW_A, ROW_B]))
    dimensions = build_dimensions(cleaned)
    dish = dimensions['dim_dish']
    dimensions['dim_dish'] = dish[dish['dish_name'] != 'Veg Biryani']

    fact, excluded = build_fact_table(cleaned, dimensions)

    assert len(fact) == 1
    assert list(excluded['exclusion_reason']) == ['unmatched_dim_dish']


# Reporting

@pytest.mark.parametrize('price, label', [
    (0, 'Under 100'),
    (99.99, 'Under 100'),
    (100, '100 - 199'),
    (199.99, '100 - 199'),
    (200, '200 - 299'),
    (299, '200 - 299'),
    (300, '300 - 499'),
    (499.99, '300 - 499'),
    (500, '500+'),
    (2500, '500+'),
    (-5, 'Under 100'),
])
def test_price_bucket(price, label):
    assert price_bucket(price) == label


def test_price_bucket_null():
    assert price_bucket(None) is None
    assert price_bucket(float('nan')) is None


def test_staging_summary_and_quality_checks(tmp_path, orchestrator):
    csv_file = write_csv(tmp_path / 'orders.csv', [ROW_A, ROW_B, ROW_A, 'KA,Bengaluru,2024-01-05'])

    _, summary, cleaned = run_staging_pipeline(csv_file, orchestrator)

    assert summary['raw_records'] == 3
    assert summary['rejected_records'] == 1
    assert summary['rejection_breakdown'] == {REJECT_COLUMN_COUNT: 1}
    assert summary['rows_removed'] == 1
    assert summary['cleaned_records'] == 2
    assert summary['date_range'] == {'min': '2024-01-05', 'max': '2024-01-07'}
    assert len(cleaned) == 2

    dq = orchestrator.get_data_quality_summary()
    assert dq['warnings'].sum() >= 2
    assert dq['failed'].sum() == 0

    null_check = orchestrator.databases['metadata'].execute("""
        SELECT actual_value, status FROM data_quality_checks
        WHERE table_name = 'swiggy_clean' AND check_name = 'order_date_null_check'
    """).fetchall()
    assert null_check == [('0.00%', 'PASSED')]


def test_order_date_null_check_fails_above_threshold(tmp_path, orchestrator):
    csv_file = write_csv(tmp_path / 'orders.csv', [
        ROW_A, 'KA,Bengaluru,\\N,R1,L1,Biryani,Veg Biryani,99.99,4.0,3'
    ])

    run_staging_pipeline(csv_file, orchestrator)

    status = orchestrator.databases['metadata'].execute("""
        SELECT status FROM data_quality_checks
        WHERE table_name = 'swiggy_clean' AND check_name = 'order_date_null_check'
    """).fetchone()[0]
    assert status == 'FAILED'


def test_warehouse_reads_cleaned_records_from_staging(star_orchestrator):
    warehouse_conn = star_orchestrator.databases['warehouse']

    fact_rows = warehouse_conn.execute("SELECT COUNT(*) FROM fact_swiggy_orders").fetchone()[0]
    dim_rows = warehouse_conn.execute("SELECT COUNT(*) FROM dim_date").fetchone()[0]

    assert fact_rows == 4
    assert dim_rows == 4
    assert star_orchestrator.get_data_quality_summary()['failed'].sum() == 0


def test_kpis(star_orchestrator):
    kpis = ReportingLayer(star_orchestrator).get_kpis()

    assert kpis['total_orders'] == 4
    assert kpis['total_revenue'] == pytest.approx(970.49)
    assert kpis['total_revenue_inr_million'] == pytest.approx(0.0)
    assert kpis['average_price'] == pytest.approx(242.62)
    assert kpis['average_rating'] == pytest.approx(4.125, abs=0.01)


def test_time_trends_are_chronological(star_orchestrator):
    reporting = ReportingLayer(star_orchestrator)

    monthly = reporting.monthly_trends()
    assert list(zip(monthly['year'], monthly['month'])) == [(2024, 1), (2024, 2), (2024, 4)]
    assert list(monthly['total_orders']) == [2, 1, 1]

    quarterly = reporting.quarterly_trends()
    assert list(quarterly['quarter']) == [1, 2]
    assert list(quarterly['total_orders']) == [3, 1]

    weekdays = reporting.day_of_week_distribution()
    assert list(weekdays['day_name']) == ['Sunday', 'Monday', 'Friday', 'Saturday']


def test_rankings(star_orchestrator):
    reporting = ReportingLayer(star_orchestrator)

    # Both cities have two orders; ties are broken by name
    assert list(reporting.top_cities(top_n=1)['city']) == ['Bengaluru']
    assert len(reporting.top_cities(top_n=None)) == 2
    assert list(reporting.top_restaurants()['restaurant_name']) == ['R1', 'R2', 'R3']
    assert list(reporting.revenue_by_state()['state']) == ['MH', 'KA']
    assert list(reporting.top_categories()['category']) == ['Biryani', 'Chinese', 'Desserts']


def test_price_range_distribution_lists_every_bucket(star_orchestrator):
    distribution = ReportingLayer(star_orchestrator).price_range_distribution()

    assert list(distribution['price_range']) == [label for label, _, _ in PRICE_BUCKETS]
    assert list(distribution['total_orders']) == [1, 1, 1, 0, 1]


def test_rating_distribution(star_orchestrator):
    ratings = ReportingLayer(star_orchestrator).rating_distribution()

    assert list(ratings['rating']) == [4.5, 4.0, 3.5]
    assert list(ratings['total_orders']) == [2, 1, 1]


def test_export_reports(tmp_path, star_orchestrator):
    reporting = ReportingLayer(star_orchestrator)

    reports = reporting.run_report_battery(top_n=5)
    exported = reporting.export_reports(reports)

    assert exported == len(reports) == 13
    conn = sqlite3.connect(os.path.join(str(tmp_path), 'reporting.db'))
    try:
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
        kpi_orders = conn.execute("SELECT total_orders FROM rpt_kpis").fetchone()[0]
    finally:
        conn.close()

    assert {f'rpt_{name}' for name in reports} <= tables
    assert kpi_orders == 4


# Orchestration

def test_log_pipeline_run_updates_started_run(orchestrator):
    run_id = orchestrator.log_pipeline_run('STAGING', 'stg_swiggy_raw', 'STARTED')
    orchestrator.log_pipeline_run('STAGING', 'stg_swiggy_raw', 'SUCCESS', 5, run_id=run_id)

    status, row_count, end_time = orchestrator.databases['metadata'].execute(
        "SELECT status, row_count, end_time FROM pipeline_runs WHERE run_id = ?", (run_id,)
    ).fetchone()

    assert status == 'SUCCESS'
    assert row_count == 5
    assert end_time is not None


def test_full_pipeline_on_sample_data(tmp_path):
    csv_file = create_sample_data(str(tmp_path / 'raw' / 'sample.csv'), n_records=200)
    runner = MasterPipelineRunner(base_path=str(tmp_path))

    assert runner.run_full_pipeline(csv_file) is True

    staging = runner.results['layer1']['summary']
    warehouse = runner.results['layer2']['summary']
    kpis = runner.results['layer3']['summary']['kpis']

    assert staging['rejected_records'] == 1
    assert staging['rows_removed'] > 0
    assert warehouse['total_orders'] + warehouse['excluded_records'] == staging['cleaned_records']
    assert 'null_order_date' in warehouse['exclusion_breakdown']
    assert kpis['total_orders'] == warehouse['total_orders']
    assert set(runner.reports) >= {'kpis', 'monthly_trends', 'price_range_distribution'}
    assert all(run['status'] == 'SUCCESS' for run in runner.results['pipeline_status'])

    orchestrator = DataPipelineOrchestrator(base_path=str(tmp_path))
    try:
        lineage = orchestrator.get_lineage()
    finally:
        orchestrator.close_connections()

    fact_sources = set(lineage.loc[lineage['target_table'] == 'fact_swiggy_orders', 'source_table'])
    assert fact_sources == {'swiggy_clean', 'dim_date', 'dim_location', 'dim_restaurant', 'dim_category', 'dim_dish'}
    assert set(lineage.loc[lineage['target_table'] == 'swiggy_clean', 'source_table']) == {'stg_swiggy_raw'}

    with open(os.path.join(str(tmp_path), 'pipeline.log')) as log_file:
        log_text = log_file.read()
    assert 'fact_swiggy_orders built successfully' in log_text
    assert 'Exported 13 report tables' in log_text


def test_cli_runs_and_reruns_without_staging(tmp_path):
    data_dir = str(tmp_path)
    csv_file = create_sample_data(str(tmp_path / 'raw' / 'sample.csv'), n_records=100)

    assert main([csv_file, '--data-dir', data_dir, '--top-n', '3']) == 0
    assert main(['--data-dir', data_dir, '--skip-layers', 'staging', '--no-export']) == 0
    assert main(['--data-dir', data_dir, '--report-only']) == 0


def test_cli_reports_failure_for_missing_file(tmp_path):
    assert main([str(tmp_path / 'missing.csv'), '--data-dir', str(tmp_path)]) == 1


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, '-v']))
