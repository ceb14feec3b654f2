# Layer 3: Reporting Pipeline
# Read-only KPI and trend queries over the order star schema

import pandas as pd
from typing import Dict, Optional

from .pipeline_orchestrator import DataPipelineOrchestrator
from .config import FACT_TABLE, PRICE_BUCKETS, DEFAULT_TOP_N


def price_bucket(price) -> Optional[str]:
    """Price range label for a single price; None for a null price"""
    if price is None or pd.isna(price):
        return None

    for label, lower, upper in PRICE_BUCKETS:
        if (lower is None or price >= lower) and (upper is None or price < upper):
            return label


def _price_bucket_case(column: str) -> str:
    """SQL CASE expression mapping a price column to its PRICE_BUCKETS label"""
    clauses = []
    for label, lower, upper in PRICE_BUCKETS:
        conditions = []
        if lower is not None:
            conditions.append(f"{column} >= {lower}")
        if upper is not None:
            conditions.append(f"{column} < {upper}")
        clauses.append(f"WHEN {' AND '.join(conditions)} THEN '{label}'")
    return "CASE " + " ".join(clauses) + " END"


def _limit(top_n: Optional[int]) -> int:
    # SQLite treats a negative LIMIT as no limit
    return -1 if top_n is None else top_n


class ReportingLayer:
    """
    Layer 3: Reporting Layer
    - Runs a fixed battery of aggregate queries over the star schema
    - Every query is read-only and independent of the others
    - Optionally exports the result tables to reporting.db
    """

    def __init__(self, orchestrator: DataPipelineOrchestrator):
        self.orchestrator = orchestrator
        self.warehouse_conn = orchestrator.databases['warehouse']
        self.reporting_conn = orchestrator.databases['reporting']
        self.logger = orchestrator.logger

    def _query(self, sql: str, params: tuple = ()) -> pd.DataFrame:
        return pd.read_sql_query(sql, self.warehouse_conn, params=params)

    def get_kpis(self) -> dict:
        """Headline KPIs: orders, revenue, average price and rating"""

        cursor = self.warehouse_conn.execute(f"""
            SELECT
                COUNT(*) as total_orders,
                SUM(price_inr) as total_revenue,
                AVG(price_inr) as average_price,
                AVG(rating) as average_rating
            FROM {FACT_TABLE}
        """)
        total_orders, total_revenue, average_price, average_rating = cursor.fetchone()
        total_revenue = total_revenue or 0.0

        return {
            'total_orders': total_orders,
            'total_revenue': round(total_revenue, 2),
            'total_revenue_inr_million': round(total_revenue / 1_000_000, 2),
            'average_price': round(average_price, 2) if average_price is not None else None,
            'average_rating': round(average_rating, 2) if average_rating is not None else None
        }

    def monthly_trends(self) -> pd.DataFrame:
        """Monthly order and revenue trends"""
        return self._query(f"""
            SELECT
                d.year,
                d.month,
                d.month_name,
                COUNT(*) AS total_orders,
                SUM(f.price_inr) AS total_revenue
            FROM {FACT_TABLE} f
            JOIN dim_date d ON f.date_id = d.date_id
            GROUP BY d.year, d.month, d.month_name
            ORDER BY d.year, d.month
        """)

    def quarterly_trends(self) -> pd.DataFrame:
        """Quarterly order trends"""
        return self._query(f"""
            SELECT
                d.year,
                d.quarter,
                COUNT(*) AS total_orders,
                SUM(f.price_inr) AS total_revenue
            FROM {FACT_TABLE} f
            JOIN dim_date d ON f.date_id = d.date_id
            GROUP BY d.year, d.quarter
            ORDER BY d.year, d.quarter
        """)

    def yearly_trends(self) -> pd.DataFrame:
        """Year-wise growth"""
        return self._query(f"""
            SELECT
                d.year,
                COUNT(*) AS total_orders,
                SUM(f.price_inr) AS total_revenue
            FROM {FACT_TABLE} f
            JOIN dim_date d ON f.date_id = d.date_id
            GROUP BY d.year
            ORDER BY d.year
        """)

    def day_of_week_distribution(self) -> pd.DataFrame:
        """Orders per weekday, Sunday first"""
        return self._query(f"""
            SELECT
                d.day_of_week,
                d.day_name,
                COUNT(*) AS total_orders
            FROM {FACT_TABLE} f
            JOIN dim_date d ON f.date_id = d.date_id
            GROUP BY d.day_of_week, d.day_name
            ORDER BY d.day_of_week
        """)

    def top_cities(self, top_n: Optional[int] = DEFAULT_TOP_N) -> pd.DataFrame:
        """Cities by order volume"""
        return self._query(f"""
            SELECT
                l.city,
                COUNT(*) AS total_orders
            FROM {FACT_TABLE} f
            JOIN dim_location l ON f.location_id = l.location_id
            GROUP BY l.city
            ORDER BY total_orders DESC, l.city
            LIMIT ?
        """, (_limit(top_n),))

    def revenue_by_state(self) -> pd.DataFrame:
        """Revenue contribution by state"""
        return self._query(f"""
            SELECT
                l.state,
                SUM(f.price_inr) AS total_revenue
            FROM {FACT_TABLE} f
            JOIN dim_location l ON f.location_id = l.location_id
            GROUP BY l.state
            ORDER BY total_revenue DESC, l.state
        """)

    def top_restaurants(self, top_n: Optional[int] = DEFAULT_TOP_N) -> pd.DataFrame:
        """Restaurants by order volume"""
        return self._query(f"""
            SELECT
                r.restaurant_name,
                COUNT(*) AS total_orders
            FROM {FACT_TABLE} f
            JOIN dim_restaurant r ON f.restaurant_id = r.restaurant_id
            GROUP BY r.restaurant_name
            ORDER BY total_orders DESC, r.restaurant_name
            LIMIT ?
        """, (_limit(top_n),))

    def top_categories(self, top_n: Optional[int] = None) -> pd.DataFrame:
        """Food categories by order volume"""
        return self._query(f"""
            SELECT
                c.category,
                COUNT(*) AS total_orders
            FROM {FACT_TABLE} f
            JOIN dim_category c ON f.category_id = c.category_id
            GROUP BY c.category
            ORDER BY total_orders DESC, c.category
            LIMIT ?
        """, (_limit(top_n),))

    def top_dishes(self, top_n: Optional[int] = None) -> pd.DataFrame:
        """Most ordered dishes"""
        return self._query(f"""
            SELECT
                d.dish_name,
                COUNT(*) AS total_orders
            FROM {FACT_TABLE} f
            JOIN dim_dish d ON f.dish_id = d.dish_id
            GROUP BY d.dish_name
            ORDER BY total_orders DESC, d.dish_name
            LIMIT ?
        """, (_limit(top_n),))

    def category_performance(self) -> pd.DataFrame:
        """Cuisine performance: orders and average rating per category"""
        return self._query(f"""
            SELECT
                c.category,
                COUNT(*) AS total_orders,
                ROUND(AVG(f.rating), 2) AS avg_rating
            FROM {FACT_TABLE} f
            JOIN dim_category c ON f.category_id = c.category_id
            GROUP BY c.category
            ORDER BY total_orders DESC, c.category
        """)

    def price_range_distribution(self) -> pd.DataFrame:
        """
        Orders per price bucket, in bucket order

        Every bucket is listed, empty ones with zero orders. Null prices
        are not counted.
        """
        counts = self._query(f"""
            SELECT
                {_price_bucket_case('price_inr')} AS price_range,
                COUNT(*) AS total_orders
            FROM {FACT_TABLE}
            WHERE price_inr IS NOT NULL
            GROUP BY price_range
        """)

        buckets = pd.DataFrame({'price_range': [label for label, _, _ in PRICE_BUCKETS]})
        distribution = buckets.merge(counts, on='price_range', how='left')
        distribution['total_orders'] = distribution['total_orders'].fillna(0).astype(int)
        return distribution

    def rating_distribution(self) -> pd.DataFrame:
        """Orders per rating value, highest rating first"""
        return self._query(f"""
            SELECT
                rating,
                COUNT(*) AS total_orders
            FROM {FACT_TABLE}
            GROUP BY rating
            ORDER BY rating DESC
        """)

    def run_report_battery(self, top_n: Optional[int] = DEFAULT_TOP_N) -> Dict[str, object]:
        """Run every report; KPIs as a dict, everything else as DataFrames"""

        reports = {
            'kpis': self.get_kpis(),
            'monthly_trends': self.monthly_trends(),
            'quarterly_trends': self.quarterly_trends(),
            'yearly_trends': self.yearly_trends(),
            'day_of_week_distribution': self.day_of_week_distribution(),
            'top_cities': self.top_cities(top_n),
            'revenue_by_state': self.revenue_by_state(),
            'top_restaurants': self.top_restaurants(top_n),
            'top_categories': self.top_categories(),
            'top_dishes': self.top_dishes(),
            'category_performance': self.category_performance(),
            'price_range_distribution': self.price_range_distribution(),
            'rating_distribution': self.rating_distribution()
        }

        self.logger.info(f"Report battery completed: {len(reports)} reports")
        return reports

    def export_reports(self, reports: Dict[str, object]) -> int:
        """Write report tables to reporting.db as rpt_<name>; returns table count"""

        run_id = self.orchestrator.log_pipeline_run('REPORTING', 'report_tables', 'STARTED')

        try:
            exported = 0
            for name, report in reports.items():
                frame = pd.DataFrame([report]) if isinstance(report, dict) else report
                frame.to_sql(f'rpt_{name}', self.reporting_conn, if_exists='replace', index=False)
                self.orchestrator.log_lineage([FACT_TABLE], f'rpt_{name}', 'AGGREGATE_REPORT')
                exported += 1

            self.reporting_conn.commit()
            self.orchestrator.log_pipeline_run('REPORTING', 'report_tables', 'SUCCESS', exported, run_id=run_id)
            self.logger.info(f"Exported {exported} report tables to reporting.db")
            return exported

        except Exception as e:
            self.orchestrator.log_pipeline_run('REPORTING', 'report_tables', 'FAILED', 0, str(e), run_id=run_id)
            self.logger.error(f"Failed to export reports: {str(e)}")
            raise


def run_reporting_pipeline(orchestrator: DataPipelineOrchestrator = None, export: bool = True,
                           top_n: Optional[int] = DEFAULT_TOP_N):
    """
    Main function to run the reporting pipeline

    Returns:
        (orchestrator, summary, reports)
    """

    if orchestrator is None:
        orchestrator = DataPipelineOrchestrator()

    try:
        reporting = ReportingLayer(orchestrator)

        reporting.logger.info("Running report battery...")
        reports = reporting.run_report_battery(top_n)

        exported = reporting.export_reports(reports) if export else 0

        summary = {
            'kpis': reports['kpis'],
            'report_count': len(reports),
            'exported_tables': exported
        }

        kpis = reports['kpis']
        print("REPORTING LAYER SUMMARY:")
        print("=" * 50)
        print(f"Total orders: {kpis['total_orders']:,}")
        print(f"Total revenue: {kpis['total_revenue_inr_million']:,.2f} INR Million")
        print(f"Average price: {kpis['average_price']} INR")
        print(f"Average rating: {kpis['average_rating']}")
        print(f"Report tables exported: {exported}")

        return orchestrator, summary, reports

    except Exception as e:
        orchestrator.logger.error(f"Reporting pipeline failed: {str(e)}")
        raise
