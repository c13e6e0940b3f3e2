"""
Tests for Data Models
Validates county records, posterior summaries and map layers
"""

import pytest
from pydantic import ValidationError

from covid_county_pooling.models import (
    COUNTY_COLUMNS,
    CountyRecord,
    FitDiagnostics,
    MapLayer,
    PosteriorSummary,
    ResidualStatistics,
)


class TestCountyRecord:
    """Test CountyRecord model"""

    def test_minimal_record(self):
        record = CountyRecord(fips=1001, county=" Autauga ", state="Alabama", cases=10, population=1000)

        assert record.county == "Autauga"
        assert record.deaths is None
        assert record.fips_code == "01001"

    def test_cases_above_population(self):
        with pytest.raises(ValidationError):
            CountyRecord(fips=1001, county="A", state="B", cases=11, population=10)

    def test_non_positive_population(self):
        with pytest.raises(ValidationError):
            CountyRecord(fips=1001, county="A", state="B", cases=0, population=0)

    def test_negative_cases(self):
        with pytest.raises(ValidationError):
            CountyRecord(fips=1001, county="A", state="B", cases=-1, population=10)


def test_column_order():
    """The county table has twelve columns starting with fips"""
    assert len(COUNTY_COLUMNS) == 12
    assert COUNTY_COLUMNS[0] == "fips"
    assert COUNTY_COLUMNS[-1] == "event_size"


def test_posterior_summary_frame():
    summaries = [
        PosteriorSummary(1001, 0.01, 0.011, 0.002, 0.008, 0.014),
        PosteriorSummary(1003, 0.02, 0.021, 0.003, 0.016, 0.026),
    ]
    df = PosteriorSummary.to_frame(summaries)

    assert list(df['fips']) == [1001, 1003]
    assert list(df.columns) == ['fips', 'p_median', 'p_mean', 'p_sd', 'p_ci_lower', 'p_ci_upper']


class TestFitDiagnostics:
    """Test FitDiagnostics"""

    def test_converged_without_warnings(self):
        diagnostics = FitDiagnostics(rhat_max=1.0, ess_bulk_min=1000, n_divergences=0)
        assert diagnostics.converged
        assert diagnostics.to_dict()["converged"] is True

    def test_not_converged_with_warnings(self):
        diagnostics = FitDiagnostics(
            rhat_max=1.2, ess_bulk_min=50, n_divergences=3, warnings=["High R-hat detected: 1.200"]
        )
        assert not diagnostics.converged


def test_residual_statistics_to_dict():
    stats = ResidualStatistics(3, 1.0, 2.0, 2.5, 10.0, 1, 1 / 3)
    assert stats.to_dict()["n_outliers"] == 1


class TestMapLayer:
    """Test MapLayer enum"""

    def test_rate_layer(self):
        assert MapLayer.RATE.column() == "p_median"
        assert not MapLayer.RATE.diverging

    def test_residual_layer(self):
        assert MapLayer.RESIDUALS.diverging
        assert MapLayer.RESIDUALS.column() == "standardized_residual"
        assert MapLayer.RESIDUALS.column("residual") == "residual"

    def test_titles(self):
        assert "expected - observed" in MapLayer.RESIDUALS.title
        assert "median" in MapLayer.RATE.title
