"""
Data Ingestion for County Partial-Pooling Risk Maps
Fetches the county case/population table and county boundary polygons, then joins them
"""

import hashlib
import io
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Tuple, Union
from urllib.parse import urlparse

import geopandas as gpd
import pandas as pd
import requests
from loguru import logger

from .config import CountyModelConfig
from .exceptions import DataSourceError, DataValidationError
from .models import COUNTY_COLUMNS, COUNTY_DTYPES, REQUIRED_COLUMNS, CountyRecord

Source = Union[str, Path]


def is_url(source: Source) -> bool:
    return isinstance(source, str) and urlparse(source).scheme in ("http", "https")


def _to_python(value):
    if value is None or pd.isna(value):
        return None
    # numpy scalars -> builtins
    return value.item() if hasattr(value, 'item') else value


def fetch_text(url: str, timeout: Optional[int] = None) -> str:
    """
    Download a text resource.

    Args:
        url: HTTP(S) URL
        timeout: Request timeout in seconds (default from config)

    Returns:
        Response body as text
    """
    timeout = timeout or CountyModelConfig.REQUEST_TIMEOUT_SECONDS
    logger.info(f"Downloading {url}")

    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise DataSourceError(f"Failed to download {url}: {e}") from e

    return response.text


class DataSourceIngester(ABC):
    """Base class for county data sources"""

    def __init__(self, data_source_name: str, use_cache: Optional[bool] = None):
        self.data_source_name = data_source_name
        self.use_cache = CountyModelConfig.USE_CACHE if use_cache is None else use_cache

    @abstractmethod
    def ingest(self, source: Source):
        """Ingest data from source"""
        pass

    @abstractmethod
    def validate(self, df: pd.DataFrame) -> Tuple[bool, List[str]]:
        """Validate ingested data"""
        pass

    def read_source(self, source: Source) -> str:
        """Read a URL or local file, caching downloads in DATA_DIR"""
        if not is_url(source):
            path = Path(source)
            if not path.exists():
                raise DataSourceError(f"{self.data_source_name} file not found: {path}")
            return path.read_text()

        cache_path = self._cache_path(source)
        if self.use_cache and cache_path.exists():
            logger.info(f"Using cached {self.data_source_name} data: {cache_path}")
            return cache_path.read_text()

        text = fetch_text(source)
        if self.use_cache:
            cache_path.parent.mkdir(parents=True, exist_ok=True)
            cache_path.write_text(text)
            logger.debug(f"Cached {self.data_source_name} data at {cache_path}")

        return text

    @staticmethod
    def _cache_path(url: str) -> Path:
        name = Path(urlparse(url).path).name or "download"
        # Keyed on the full URL, not just the file name
        digest = hashlib.sha256(url.encode()).hexdigest()[:12]
        return CountyModelConfig.DATA_DIR / f"{digest}_{name}"


class CountyDataIngester(DataSourceIngester):
    """
    Ingester for the county case/death/population table

    Expected columns (aliases are normalised):
    - fips, county, state
    - cases, deaths, cases_prev
    - covariate, population, n_eff
    - risk, ascertainment_bias, event_size
    """

    COLUMN_ALIASES = {
        'countyfips': 'fips',
        'county_fips': 'fips',
        'geoid': 'fips',
        'county_name': 'county',
        'name': 'county',
        'state_name': 'state',
        'stname': 'state',
        'confirmed': 'cases',
        'cases_past': 'cases_prev',
        'prev_cases': 'cases_prev',
        'pop': 'population',
        'neff': 'n_eff',
        'asc_bias': 'ascertainment_bias',
        'ascertainment': 'ascertainment_bias',
    }

    def __init__(self, use_cache: Optional[bool] = None):
        super().__init__("county", use_cache=use_cache)

    def ingest(self, source: Source) -> pd.DataFrame:
        """
        Read the county table from a URL or CSV path

        Returns:
            DataFrame with standardized column names and nullable dtypes
        """
        df = pd.read_csv(io.StringIO(self.read_source(source)))
        df = self._standardize_columns(df)
        df = self._coerce_types(df)

        logger.info(f"Read {len(df)} county rows from {source}")
        return df

    def _standardize_columns(self, df: pd.DataFrame) -> pd.DataFrame:
        """Standardize column names to the expected schema"""
        df.columns = df.columns.str.lower().str.strip()

        for old_col, new_col in self.COLUMN_ALIASES.items():
            if old_col in df.columns and new_col not in df.columns:
                df = df.rename(columns={old_col: new_col})

        return df

    @staticmethod
    def _coerce_types(df: pd.DataFrame) -> pd.DataFrame:
        for col in COUNTY_COLUMNS:
            if col not in df.columns:
                continue
            dtype = COUNTY_DTYPES[col]
            if dtype == "string":
                df[col] = df[col].astype("string")
            elif dtype == "Int64":
                # Non-numeric and fractional counts become NA
                values = pd.to_numeric(df[col], errors='coerce')
                fractional = values.notna() & (values % 1 != 0)
                if fractional.any():
                    logger.warning(
                        f"{int(fractional.sum())} non-integral values in {col} treated as missing"
                    )
                df[col] = values.where(~fractional).astype("Int64")
            else:
                df[col] = pd.to_numeric(df[col], errors='coerce').astype(dtype)
        return df

    def validate(self, df: pd.DataFrame) -> Tuple[bool, List[str]]:
        """Validate the county table"""
        errors = []

        for col in REQUIRED_COLUMNS:
            if col not in df.columns:
                errors.append(f"Missing required column: {col}")

        for col in ('cases', 'population'):
            if col in df.columns and not pd.api.types.is_numeric_dtype(df[col]):
                errors.append(f"{col} must be numeric")

        missing_optional = [c for c in COUNTY_COLUMNS if c not in df.columns and c not in REQUIRED_COLUMNS]
        if missing_optional:
            logger.debug(f"Optional county columns absent: {missing_optional}")

        return len(errors) == 0, errors

    def preprocess(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Drop unusable rows and enforce one row per county.

        Rows missing fips, cases or population are removed, exact duplicate
        rows are removed, and any remaining repeated fips keeps its last row.
        """
        n_start = len(df)

        df = df.dropna(subset=REQUIRED_COLUMNS)
        n_missing = n_start - len(df)
        if n_missing:
            logger.warning(f"Removing {n_missing} rows with missing fips, cases or population")

        df = df.drop_duplicates()

        repeated = df.duplicated(subset=['fips'], keep='last')
        if repeated.any():
            logger.warning(f"Removing {repeated.sum()} rows with a repeated fips (keeping last)")
            df = df[~repeated]

        invalid = (df['population'] <= 0) | (df['cases'] < 0) | (df['cases'] > df['population'])
        if invalid.any():
            logger.warning(
                f"Removing {invalid.sum()} rows with non-positive population, "
                f"negative cases, or cases above population"
            )
            df = df[~invalid]

        df = df.astype({'fips': 'int64', 'cases': 'int64', 'population': 'int64'})
        df = df.sort_values('fips').reset_index(drop=True)

        logger.info(f"Kept {len(df)} of {n_start} county rows")
        return df

    def convert_to_records(self, df: pd.DataFrame) -> List[CountyRecord]:
        """Convert DataFrame rows to CountyRecord objects"""
        records = []

        for row in df.to_dict(orient='records'):
            values = {col: _to_python(row.get(col)) for col in COUNTY_COLUMNS}
            values['county'] = values['county'] or ""
            values['state'] = values['state'] or ""
            records.append(CountyRecord(**values))

        return records


class BoundaryIngester(DataSourceIngester):
    """
    Ingester for county boundary polygons in GeoJSON

    Each feature is keyed by its ``id`` (5-digit FIPS) or, failing that,
    by the ``STATE`` and ``COUNTY`` properties.
    """

    def __init__(self, use_cache: Optional[bool] = None):
        super().__init__("boundary", use_cache=use_cache)

    def ingest(self, source: Source) -> gpd.GeoDataFrame:
        """Read county polygons from a URL or GeoJSON path"""
        try:
            geojson = json.loads(self.read_source(source))
        except json.JSONDecodeError as e:
            raise DataSourceError(f"Invalid GeoJSON from {source}: {e}") from e

        features = geojson.get('features', [])
        if not features:
            raise DataValidationError(f"No features found in {source}")

        gdf = gpd.GeoDataFrame.from_features(features, crs="EPSG:4326")
        gdf['fips'] = pd.to_numeric(
            pd.Series([self._feature_fips(f) for f in features], index=gdf.index),
            errors='coerce'
        ).astype("Int64")

        valid, errors = self.validate(gdf)
        if not valid:
            raise DataValidationError(f"Boundary validation failed: {errors}")

        return self.preprocess(gdf)

    @staticmethod
    def _feature_fips(feature: dict) -> Optional[str]:
        if feature.get('id') is not None:
            return str(feature['id'])
        props = feature.get('properties') or {}
        if props.get('STATE') is not None and props.get('COUNTY') is not None:
            return f"{props['STATE']}{props['COUNTY']}"
        return None

    def validate(self, df: pd.DataFrame) -> Tuple[bool, List[str]]:
        """Validate boundary polygons"""
        errors = []

        if df.empty:
            errors.append("Boundary set is empty")

        if 'fips' not in df.columns:
            errors.append("Missing required column: fips")
        elif df['fips'].isna().any():
            errors.append(f"{int(df['fips'].isna().sum())} features have no county identifier")

        return len(errors) == 0, errors

    def preprocess(self, gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
        gdf = gdf.drop_duplicates(subset=['fips'], keep='first')
        gdf = gdf.astype({'fips': 'int64'})
        gdf['fips_code'] = gdf['fips'].map(lambda x: f"{x:05d}")

        logger.info(f"Loaded {len(gdf)} county boundaries")
        return gdf[['fips', 'fips_code', 'geometry']].reset_index(drop=True)


def join_boundaries(counties: pd.DataFrame, boundaries: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """
    Inner-join county records to their polygons on fips.

    Counties without a polygon are dropped; the number dropped is logged.
    """
    joined = boundaries.merge(counties, on='fips', how='inner')
    joined = gpd.GeoDataFrame(joined, geometry='geometry', crs=boundaries.crs)

    n_dropped = len(counties) - len(joined)
    if n_dropped:
        logger.warning(f"{n_dropped} counties have no boundary polygon and were dropped")

    if joined.empty:
        raise DataValidationError("No counties matched a boundary polygon")

    return joined.sort_values('fips').reset_index(drop=True)


class CountyDataLoader:
    """
    Coordinator that fetches both sources and returns the joined GeoDataFrame
    """

    def __init__(self, use_cache: Optional[bool] = None):
        self.county_ingester = CountyDataIngester(use_cache=use_cache)
        self.boundary_ingester = BoundaryIngester(use_cache=use_cache)

    def load_counties(self, data_source: Source) -> pd.DataFrame:
        df = self.county_ingester.ingest(data_source)
        valid, errors = self.county_ingester.validate(df)
        if not valid:
            raise DataValidationError(f"County data validation failed: {errors}")
        return self.county_ingester.preprocess(df)

    def load(
        self,
        data_source: Optional[Source] = None,
        geojson_source: Optional[Source] = None
    ) -> gpd.GeoDataFrame:
        """
        Fetch the county table and boundaries and join them

        Args:
            data_source: County CSV URL or path (default from config)
            geojson_source: GeoJSON URL or path (default from config)
        """
        data_source = data_source or CountyModelConfig.COUNTY_DATA_URL
        geojson_source = geojson_source or CountyModelConfig.COUNTY_GEOJSON_URL

        if not data_source:
            raise DataSourceError(
                "No county data source configured; set COUNTY_DATA_URL or pass a path"
            )

        counties = self.load_counties(data_source)
        boundaries = self.boundary_ingester.ingest(geojson_source)
        return join_boundaries(counties, boundaries)
