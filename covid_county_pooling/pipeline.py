"""
County Partial-Pooling Pipeline
Orchestrates fetch/join, model fitting, posterior summaries, residuals and maps
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Union

import geopandas as gpd
import pandas as pd
from loguru import logger

from .config import CountyModelConfig
from .data_ingestion import CountyDataLoader
from .hierarchical_model import HierarchicalBinomialModel
from .models import MapLayer
from .residuals import build_map_records, compute_residual_statistics
from .visualization import ChoroplethMapper


class CountyPoolingPipeline:
    """
    End-to-end pipeline for county infection-rate maps.

    Workflow:
    1. Fetch the county table and boundary polygons and join them on fips
    2. Fit the hierarchical binomial model
    3. Summarize each county's posterior median probability
    4. Join estimates back onto geometry and compute residuals
    5. Render rate and residual choropleths
    """

    def __init__(
        self,
        output_dir: Optional[Path] = None,
        save_outputs: bool = True,
        config: Optional[Dict] = None,
        map_config: Optional[Dict] = None,
        loader: Optional[CountyDataLoader] = None
    ):
        """
        Initialize pipeline.

        Args:
            output_dir: Directory for output files
            save_outputs: Whether to write artifacts to output_dir
            config: Model configuration overrides
            map_config: Map configuration overrides
            loader: Data loader (default CountyDataLoader)
        """
        self.output_dir = Path(output_dir or CountyModelConfig.OUTPUT_DIR)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        self.save_outputs = save_outputs
        self.config = {**CountyModelConfig.MODEL_CONFIG, **(config or {})}
        self.map_config = {**CountyModelConfig.MAP_CONFIG, **(map_config or {})}
        self.loader = loader or CountyDataLoader()

        # Pipeline components
        self.model = None
        self.mapper = None

        # Results
        self.results = {}

        logger.info(f"Initialized pipeline (output: {self.output_dir})")

    def run(
        self,
        counties: Optional[gpd.GeoDataFrame] = None,
        data_source: Optional[Union[str, Path]] = None,
        geojson_source: Optional[Union[str, Path]] = None,
        **sample_kwargs
    ) -> Dict:
        """
        Run the full pipeline.

        Args:
            counties: Pre-joined county GeoDataFrame; fetched when omitted
            data_source: County CSV URL or path
            geojson_source: Boundary GeoJSON URL or path
            **sample_kwargs: Passed to HierarchicalBinomialModel.fit

        Returns:
            Dictionary with all results
        """
        logger.info("=" * 80)
        logger.info("COUNTY PARTIAL-POOLING PIPELINE")
        logger.info("=" * 80)

        start_time = datetime.now()

        # ====================================================================
        # 1. FETCH AND JOIN
        # ====================================================================

        logger.info("[1/4] LOAD COUNTY DATA")
        if counties is None:
            counties = self.loader.load(data_source, geojson_source)
        self.results['counties'] = counties
        logger.success(f"✓ Loaded {len(counties)} counties with boundaries")

        # ====================================================================
        # 2. FIT HIERARCHICAL MODEL
        # ====================================================================

        logger.info("[2/4] FIT HIERARCHICAL BINOMIAL MODEL")
        model_input = pd.DataFrame(counties.drop(columns='geometry'))
        self.model = HierarchicalBinomialModel(model_input, config=self.config)
        self.model.build_model()
        self.model.fit(**sample_kwargs)

        self.results['diagnostics'] = self.model.diagnose()
        self.results['population_summary'] = self.model.get_population_summary()
        logger.success("✓ Sampling complete")

        # ====================================================================
        # 3. POSTERIOR SUMMARIES AND RESIDUALS
        # ====================================================================

        logger.info("[3/4] SUMMARIZE POSTERIOR")
        posterior_summary = self.model.get_posterior_summary()
        map_records = build_map_records(
            counties,
            posterior_summary,
            count_col=self.model.count_col,
            trials_col=self.model.trials_col,
            id_col=self.model.id_col
        )
        self.results['posterior_summary'] = posterior_summary
        self.results['map_records'] = map_records
        self.results['residual_statistics'] = compute_residual_statistics(map_records)
        logger.success(f"✓ Summarized {len(posterior_summary)} counties")

        # ====================================================================
        # 4. MAPS
        # ====================================================================

        logger.info("[4/4] RENDER MAPS")
        self.mapper = ChoroplethMapper(
            map_records,
            config=self.map_config,
            count_col=self.model.count_col,
            trials_col=self.model.trials_col
        )
        self.results['figure'] = self.mapper.build_figure()
        logger.success("✓ Maps rendered")

        if self.save_outputs:
            self._save_outputs()

        elapsed = (datetime.now() - start_time).total_seconds()
        logger.info(f"Execution time: {elapsed:.1f} seconds")
        logger.success("✓ Pipeline complete!")

        return self.results

    def _save_outputs(self):
        """Write tables, diagnostics and maps to output_dir"""
        out = self.output_dir

        self.results['posterior_summary'].to_csv(out / "posterior_summary.csv", index=False)

        map_table = pd.DataFrame(self.results['map_records'].drop(columns='geometry'))
        map_table.to_csv(out / "map_records.csv", index=False)

        diagnostics = {
            'diagnostics': self.results['diagnostics'].to_dict(),
            'population_summary': self.results['population_summary'],
            'residual_statistics': self.results['residual_statistics'].to_dict(),
        }
        with open(out / "diagnostics.json", 'w') as f:
            json.dump(diagnostics, f, indent=2, default=str)

        if self.map_config["export_html"]:
            self.mapper.save_html(out / "county_risk_map.html")

        if self.map_config["export_png"]:
            for layer in MapLayer:
                self.mapper.save_static(layer, out / f"{layer.value}_map.png")
            self.model.plot_trace(save_path=out / "trace_plot.png")

        logger.info(f"Saved outputs to {out}")

    def generate_report(self, output_path: Optional[Path] = None) -> str:
        """
        Generate a markdown summary of the run.

        Args:
            output_path: Path to save report (optional)

        Returns:
            Report as markdown string
        """
        if 'map_records' not in self.results:
            raise ValueError("Pipeline has not been run yet")

        diagnostics = self.results['diagnostics']
        population = self.results['population_summary']
        stats = self.results['residual_statistics']
        records = self.results['map_records']
        top_n = self.map_config["top_n_report"]
        count_col = self.model.count_col
        trials_col = self.model.trials_col

        report_lines = [
            "# County Partial-Pooling Risk Report",
            "",
            f"**Generated:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            f"**Counties modeled:** {len(records)}",
            "",
            "---",
            "",
            "## MCMC Diagnostics",
            "",
            f"- Max R-hat: {diagnostics.rhat_max:.3f}",
            f"- Min bulk ESS: {diagnostics.ess_bulk_min:.0f}",
            f"- Divergences: {diagnostics.n_divergences}",
            f"- Status: {'✓ converged' if diagnostics.converged else '⚠ see warnings'}",
        ]
        report_lines.extend(f"  - {w}" for w in diagnostics.warnings)

        report_lines.extend([
            "",
            "## Population Parameters",
            "",
            f"- phi (mean infection probability): {population['phi_median']:.5f}",
            f"- kappa (concentration): {population['kappa_median']:.1f}",
            "",
            "## Residuals (expected - observed)",
            "",
            f"- Mean residual: {stats.mean_residual:+.1f}",
            f"- MAE: {stats.mean_absolute_error:.1f}",
            f"- RMSE: {stats.rmse:.1f}",
            f"- Mean percentage error: {stats.mean_percentage_error:+.2f}%",
            f"- Outliers (|z| > 2): {stats.n_outliers} ({stats.outlier_fraction:.1%})",
            "",
            f"## Highest Estimated Rates (top {top_n})",
            "",
            f"| FIPS | County | State | {count_col} | {trials_col} | Rate per 100k |",
            "|------|--------|-------|-------|------------|---------------|",
        ])

        for _, row in records.nlargest(top_n, 'p_median').iterrows():
            report_lines.append(
                f"| {int(row['fips']):05d} | {row.get('county', '')} | {row.get('state', '')} | "
                f"{int(row[count_col]):,} | {int(row[trials_col]):,} | {row['rate_per_100k']:.1f} |"
            )

        report_lines.extend([
            "",
            f"## Largest Standardized Residuals (top {top_n})",
            "",
            "| FIPS | County | State | Observed | Expected | z |",
            "|------|--------|-------|----------|----------|---|",
        ])

        largest = records.loc[
            records['standardized_residual'].abs().sort_values(ascending=False).index[:top_n]
        ]
        for _, row in largest.iterrows():
            report_lines.append(
                f"| {int(row['fips']):05d} | {row.get('county', '')} | {row.get('state', '')} | "
                f"{int(row[count_col]):,} | {row['expected_count']:,.0f} | "
                f"{row['standardized_residual']:+.2f} |"
            )

        report_md = "\n".join(report_lines)

        if output_path:
            with open(output_path, 'w') as f:
                f.write(report_md)
            logger.info(f"Saved report to {output_path}")

        return report_md
