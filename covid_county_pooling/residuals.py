"""
Map records: posterior estimates joined back onto county geometry,
with expected counts and residuals
"""

import geopandas as gpd
import numpy as np
import pandas as pd
from loguru import logger

from .models import ResidualStatistics

OUTLIER_Z = 2.0


def rate_per_100k(p):
    """Rescale a probability to cases per 100,000 residents"""
    return p * 100_000


def build_map_records(
    joined: gpd.GeoDataFrame,
    posterior_summary: pd.DataFrame,
    count_col: str = 'cases',
    trials_col: str = 'population',
    id_col: str = 'fips'
) -> gpd.GeoDataFrame:
    """
    Attach posterior medians to county polygons and derive residual fields.

    Args:
        joined: County records joined to geometry
        posterior_summary: Output of HierarchicalBinomialModel.get_posterior_summary
        count_col: Observed count column
        trials_col: Trials (population) column
        id_col: County identifier column

    Returns:
        GeoDataFrame with expected_count, residual, standardized_residual
        and percentage_error columns
    """
    records = joined.merge(posterior_summary, on=id_col, how='inner')
    records = gpd.GeoDataFrame(records, geometry='geometry', crs=joined.crs)

    n_dropped = len(joined) - len(records)
    if n_dropped:
        logger.warning(f"{n_dropped} counties have no posterior estimate and were dropped")

    observed = records[count_col].astype(float)
    trials = records[trials_col].astype(float)
    p = records['p_median'].astype(float)

    records['rate_per_100k'] = rate_per_100k(p)
    records['expected_count'] = trials * p
    records['residual'] = records['expected_count'] - observed

    binomial_sd = np.sqrt(trials * p * (1.0 - p))
    records['standardized_residual'] = records['residual'] / binomial_sd.where(binomial_sd > 0)

    records['percentage_error'] = records['residual'] / observed.where(observed > 0) * 100.0

    logger.info(f"Built map records for {len(records)} counties")

    return records.sort_values(id_col).reset_index(drop=True)


def compute_residual_statistics(map_records: pd.DataFrame) -> ResidualStatistics:
    """
    Summarize residuals across counties.

    NaN standardized residuals and percentage errors (zero variance or zero
    observed cases) are excluded from their respective statistics.
    """
    residual = map_records['residual'].astype(float)
    z = map_records['standardized_residual'].astype(float).dropna()
    pct = map_records['percentage_error'].astype(float).dropna()

    n_outliers = int((z.abs() > OUTLIER_Z).sum())
    n_counties = len(map_records)

    stats = ResidualStatistics(
        n_counties=n_counties,
        mean_residual=float(residual.mean()),
        mean_absolute_error=float(residual.abs().mean()),
        rmse=float(np.sqrt((residual ** 2).mean())),
        mean_percentage_error=float(pct.mean()) if len(pct) else float('nan'),
        n_outliers=n_outliers,
        outlier_fraction=n_outliers / n_counties if n_counties else 0.0,
    )

    logger.info(
        f"Residuals: MAE={stats.mean_absolute_error:.1f}, RMSE={stats.rmse:.1f}, "
        f"outliers={stats.n_outliers} (|z| > {OUTLIER_Z:g})"
    )

    return stats
