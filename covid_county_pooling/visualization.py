"""
Choropleth rendering of county rate estimates and residuals

Interactive maps use plotly; static PNG exports use geopandas + matplotlib.
"""

import json
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple, Union

import geopandas as gpd
import numpy as np
import pandas as pd
import plotly.graph_objects as go
from plotly.colors import sample_colorscale
from loguru import logger

from .config import CountyModelConfig
from .exceptions import DataValidationError
from .models import MapLayer


def color_breaks(values: Union[Sequence[float], np.ndarray, pd.Series], n_bins: int) -> np.ndarray:
    """
    Quantile class breaks for a sequential color scale.

    Returns strictly increasing breakpoints (duplicates from tied quantiles
    are collapsed). A constant input yields the single interval [v, v].
    """
    arr = np.asarray(values, dtype=float)
    arr = arr[~np.isnan(arr)]

    if arr.size == 0:
        raise DataValidationError("Cannot compute color breaks without values")
    if n_bins < 1:
        raise ValueError("n_bins must be positive")

    breaks = np.unique(np.quantile(arr, np.linspace(0.0, 1.0, n_bins + 1)))

    if breaks.size == 1:
        return np.array([breaks[0], breaks[0]])
    return breaks


def classify(values: Union[Sequence[float], np.ndarray, pd.Series], breaks: np.ndarray) -> np.ndarray:
    """Class index of each value under the given breaks; NaN stays NaN"""
    arr = np.asarray(values, dtype=float)
    classes = np.digitize(arr, breaks[1:-1], right=True).astype(float)
    classes[np.isnan(arr)] = np.nan
    return classes


def symmetric_range(values: Union[Sequence[float], np.ndarray, pd.Series]) -> Tuple[float, float]:
    """Range centred on zero covering every finite value"""
    arr = np.asarray(values, dtype=float)
    arr = arr[np.isfinite(arr)]

    bound = float(np.abs(arr).max()) if arr.size else 0.0
    if bound == 0.0:
        bound = 1.0
    return -bound, bound


class ChoroplethMapper:
    """
    Two-layer county choropleth: estimated rate and residuals.

    The interactive figure holds one trace per layer; a dropdown switches
    which layer is visible.
    """

    def __init__(
        self,
        map_records: gpd.GeoDataFrame,
        config: Optional[Dict] = None,
        count_col: str = "cases",
        trials_col: str = "population"
    ):
        self.config = {**CountyModelConfig.MAP_CONFIG, **(config or {})}
        self.count_col = count_col
        self.trials_col = trials_col

        records = map_records.copy()
        if 'fips_code' not in records.columns:
            records['fips_code'] = records['fips'].map(lambda x: f"{int(x):05d}")
        self.records = records

        self.figure = None

    def _layer_column(self, layer: MapLayer) -> str:
        return layer.column(self.config["residual_layer"])

    def _geojson(self) -> Dict:
        return json.loads(self.records[['fips_code', 'geometry']].to_json())

    def _hover_text(self) -> pd.Series:
        r = self.records
        county = r['county'].astype("string").fillna("") if 'county' in r.columns else ""
        state = r['state'].astype("string").fillna("") if 'state' in r.columns else ""

        return (
            county + ", " + state
            + f"<br>{self.count_col.replace('_', ' ').capitalize()}: " + r[self.count_col].map("{:,.0f}".format)
            + "<br>Population: " + r[self.trials_col].map("{:,.0f}".format)
            + "<br>Estimated rate: " + r['rate_per_100k'].map("{:,.1f}".format) + " per 100k"
            + "<br>Expected: " + r['expected_count'].map("{:,.0f}".format)
            + "<br>Residual: " + r['residual'].map("{:+,.1f}".format)
            + " (z = " + r['standardized_residual'].map("{:+.2f}".format) + ")"
        )

    def _trace(self, layer: MapLayer, geojson: Dict, hover_text: pd.Series, visible: bool) -> go.Choropleth:
        column = self._layer_column(layer)
        values = self.records[column].astype(float)

        if layer.diverging:
            z = values
            zmin, zmax = symmetric_range(values)
            colorscale = self.config["residual_colorscale"]
            colorbar = dict(title="Std. residual" if column == "standardized_residual" else "Residual")
        else:
            # One colour step per quantile class
            breaks = color_breaks(values, self.config["n_color_bins"])
            n_classes = len(breaks) - 1
            z = classify(values, breaks)
            zmin, zmax = -0.5, n_classes - 0.5
            colorscale = sample_colorscale(
                self.config["rate_colorscale"],
                [i / max(n_classes - 1, 1) for i in range(n_classes)]
            )
            colorscale = [
                [edge, color]
                for i, color in enumerate(colorscale)
                for edge in (i / n_classes, (i + 1) / n_classes)
            ]
            colorbar = dict(
                title="P(infection)",
                tickvals=list(range(n_classes)),
                ticktext=[f"{lo:.3g} - {hi:.3g}" for lo, hi in zip(breaks[:-1], breaks[1:])],
            )

        return go.Choropleth(
            geojson=geojson,
            locations=self.records['fips_code'],
            featureidkey="properties.fips_code",
            z=z,
            zmin=zmin,
            zmax=zmax,
            colorscale=colorscale,
            text=hover_text,
            hoverinfo="text",
            marker_line_width=0.2,
            marker_line_color="white",
            colorbar=colorbar,
            name=layer.title,
            visible=visible,
        )

    def build_figure(self, layers: Sequence[MapLayer] = (MapLayer.RATE, MapLayer.RESIDUALS)) -> go.Figure:
        """
        Build the interactive choropleth.

        Args:
            layers: Layers to include; the first is shown initially

        Returns:
            plotly Figure
        """
        if not layers:
            raise ValueError("At least one map layer is required")

        geojson = self._geojson()
        hover_text = self._hover_text()

        fig = go.Figure()
        for i, layer in enumerate(layers):
            fig.add_trace(self._trace(layer, geojson, hover_text, visible=(i == 0)))

        buttons = [
            dict(
                label=layer.value.capitalize(),
                method="update",
                args=[
                    {"visible": [j == i for j in range(len(layers))]},
                    {"title": layer.title},
                ],
            )
            for i, layer in enumerate(layers)
        ]

        fig.update_layout(
            title=layers[0].title,
            updatemenus=[dict(buttons=buttons, direction="down", x=0.01, y=0.99, xanchor="left")],
            margin=dict(r=0, t=50, l=0, b=0),
        )
        fig.update_geos(scope=self.config["scope"], fitbounds="locations", visible=False)

        self.figure = fig
        logger.info(f"Built choropleth with {len(layers)} layers for {len(self.records)} counties")

        return fig

    def save_html(self, path: Union[str, Path]) -> Path:
        """Write the interactive map to an HTML file"""
        if self.figure is None:
            self.build_figure()

        path = Path(path)
        self.figure.write_html(str(path))
        logger.info(f"Saved interactive map to {path}")
        return path

    def save_static(self, layer: MapLayer, path: Union[str, Path]) -> Path:
        """
        Render one layer to a PNG.

        Rates use quantile class breaks; residuals use a diverging scale
        centred on zero.
        """
        import matplotlib.pyplot as plt
        from matplotlib import colors

        column = self._layer_column(layer)
        values = self.records[column].astype(float)

        if layer.diverging:
            cmap = plt.get_cmap(self.config["residual_cmap"])
            vmin, vmax = symmetric_range(values)
            norm = colors.Normalize(vmin=vmin, vmax=vmax)
        else:
            cmap = plt.get_cmap(self.config["rate_cmap"])
            breaks = color_breaks(values, self.config["n_color_bins"])
            if breaks[0] == breaks[-1]:
                norm = colors.Normalize(vmin=breaks[0] - 0.5, vmax=breaks[0] + 0.5)
            else:
                norm = colors.BoundaryNorm(breaks, ncolors=cmap.N)

        fig, ax = plt.subplots(figsize=(12, 7))
        self.records.plot(
            column=column,
            cmap=cmap,
            norm=norm,
            linewidth=0.1,
            edgecolor='white',
            legend=True,
            missing_kwds={'color': 'lightgrey'},
            ax=ax,
        )
        ax.set_axis_off()
        ax.set_title(layer.title, fontsize=14, fontweight='bold')

        path = Path(path)
        fig.savefig(path, dpi=self.config["plot_dpi"], bbox_inches='tight')
        plt.close(fig)

        logger.info(f"Saved {layer.value} map to {path}")
        return path
