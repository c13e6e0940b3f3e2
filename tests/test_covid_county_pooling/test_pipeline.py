"""
Integration tests for the county partial-pooling pipeline
"""

import json

import pytest

from covid_county_pooling.cli import main
from covid_county_pooling.config import CountyModelConfig
from covid_county_pooling.data_ingestion import CountyDataLoader
from covid_county_pooling.models import FitDiagnostics, ResidualStatistics
from covid_county_pooling.pipeline import CountyPoolingPipeline
from covid_county_pooling.synthetic import (
    boundaries_to_geojson,
    make_grid_boundaries,
    simulate_county_data,
)


@pytest.fixture(scope="module")
def pipeline_run(tmp_path_factory):
    """Run the pipeline once from local files with a short chain"""
    root = tmp_path_factory.mktemp("pipeline")

    counties = simulate_county_data(n_counties=12, seed=3)
    csv_path = root / "counties.csv"
    counties.to_csv(csv_path, index=False)

    geojson_path = root / "counties.geojson"
    geojson_path.write_text(boundaries_to_geojson(make_grid_boundaries(counties['fips'])))

    pipeline = CountyPoolingPipeline(
        output_dir=root / "output",
        map_config={'export_html': True, 'export_png': False},
        loader=CountyDataLoader(use_cache=False),
    )
    results = pipeline.run(
        data_source=csv_path,
        geojson_source=geojson_path,
        draws=100,
        tune=100,
        chains=1,
        cores=1,
        progressbar=False,
    )
    return pipeline, results, root / "output"


class TestPipeline:
    """Test the end-to-end workflow"""

    def test_results_keys(self, pipeline_run):
        _, results, _ = pipeline_run

        assert set(results) == {
            'counties', 'diagnostics', 'population_summary', 'posterior_summary',
            'map_records', 'residual_statistics', 'figure',
        }
        assert isinstance(results['diagnostics'], FitDiagnostics)
        assert isinstance(results['residual_statistics'], ResidualStatistics)

    def test_one_estimate_per_county(self, pipeline_run):
        _, results, _ = pipeline_run

        summary = results['posterior_summary']
        assert len(summary) == 12
        assert summary['fips'].is_unique
        assert summary['p_median'].between(0, 1).all()

    def test_map_records(self, pipeline_run):
        _, results, _ = pipeline_run
        records = results['map_records']

        assert len(records) == 12
        assert {'expected_count', 'residual', 'standardized_residual', 'percentage_error'} <= set(records.columns)
        assert len(results['figure'].data) == 2

    def test_outputs_written(self, pipeline_run):
        _, _, output_dir = pipeline_run

        for name in ("posterior_summary.csv", "map_records.csv", "diagnostics.json", "county_risk_map.html"):
            assert (output_dir / name).exists(), name

        with open(output_dir / "diagnostics.json") as f:
            saved = json.load(f)
        assert "rhat_max" in saved["diagnostics"]
        assert "phi_median" in saved["population_summary"]

    def test_report(self, pipeline_run, tmp_path):
        pipeline, _, _ = pipeline_run

        report_path = tmp_path / "report.md"
        report = pipeline.generate_report(output_path=report_path)

        assert report.startswith("# County Partial-Pooling Risk Report")
        assert "## MCMC Diagnostics" in report
        assert "Largest Standardized Residuals" in report
        assert report_path.read_text() == report


def test_report_before_run(temp_dir):
    pipeline = CountyPoolingPipeline(output_dir=temp_dir, save_outputs=False)

    with pytest.raises(ValueError, match="not been run"):
        pipeline.generate_report()


class TestCli:
    """Test the command line entry point"""

    def test_demo(self, temp_dir):
        main([
            "--demo", "--draws", "50", "--tune", "50", "--chains", "1", "--cores", "1",
            "--output", str(temp_dir),
        ])

        assert (temp_dir / "report.md").exists()
        assert (temp_dir / "posterior_summary.csv").exists()

    def test_missing_data_source(self, monkeypatch, temp_dir):
        monkeypatch.setattr(CountyModelConfig, "COUNTY_DATA_URL", None)

        with pytest.raises(SystemExit) as exc_info:
            main(["--output", str(temp_dir)])
        assert exc_info.value.code == 1

    def test_bad_config_file(self, temp_dir):
        with pytest.raises(SystemExit) as exc_info:
            main(["--demo", "--config", str(temp_dir / "missing.yaml"), "--output", str(temp_dir)])
        assert exc_info.value.code == 1
