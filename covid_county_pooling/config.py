"""
Configuration for COVID-19 County Partial-Pooling Risk Maps.

Settings are read from environment variables (optionally loaded from a
.env file) and can be overridden from a YAML file with sections
``sources``, ``model`` and ``map``.
"""

import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from dotenv import load_dotenv
import yaml

from .exceptions import ConfigurationError

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class CountyModelConfig:
    """Central configuration for the county partial-pooling pipeline."""

    # ═════════════════════════════════════════════════════════════
    # Directory Paths
    # ═════════════════════════════════════════════════════════════
    BASE_DIR: Path = Path(__file__).parent.parent
    DATA_DIR: Path = Path(os.getenv("COUNTY_POOLING_DATA_DIR", BASE_DIR / "data" / "covid_county_pooling"))
    OUTPUT_DIR: Path = Path(os.getenv("COUNTY_POOLING_OUTPUT_DIR", BASE_DIR / "output" / "covid_county_pooling"))

    # ═════════════════════════════════════════════════════════════
    # Data Sources
    # ═════════════════════════════════════════════════════════════
    COUNTY_DATA_URL: Optional[str] = os.getenv("COUNTY_DATA_URL")
    COUNTY_GEOJSON_URL: str = os.getenv(
        "COUNTY_GEOJSON_URL",
        "https://raw.githubusercontent.com/plotly/datasets/master/geojson-counties-fips.json"
    )
    REQUEST_TIMEOUT_SECONDS: int = int(os.getenv("REQUEST_TIMEOUT_SECONDS", "60"))
    USE_CACHE: bool = _env_flag("USE_CACHE", "true")

    # ═════════════════════════════════════════════════════════════
    # Hierarchical Binomial Model
    # ═════════════════════════════════════════════════════════════
    MODEL_CONFIG: Dict = {
        # Observed successes and trials per county
        "count_column": "cases",
        "trials_column": "population",
        "id_column": "fips",

        # Hyperpriors
        "phi_lower": 0.0,
        "phi_upper": 1.0,
        "kappa_pareto_alpha": 1.5,
        "kappa_pareto_m": 1.0,

        # MCMC sampling parameters
        "mcmc_draws": int(os.getenv("MCMC_DRAWS", "1000")),
        "mcmc_tune": int(os.getenv("MCMC_TUNE", "1000")),
        "mcmc_chains": int(os.getenv("MCMC_CHAINS", "4")),
        "mcmc_cores": int(os.getenv("MCMC_CORES", "4")),
        "target_accept": float(os.getenv("TARGET_ACCEPT", "0.9")),
        "random_seed": int(os.getenv("RANDOM_SEED", "42")),

        # Posterior summaries
        "credible_interval": 0.94,
    }

    # ═════════════════════════════════════════════════════════════
    # Convergence Diagnostics
    # ═════════════════════════════════════════════════════════════
    RHAT_THRESHOLD: float = float(os.getenv("RHAT_THRESHOLD", "1.01"))
    MIN_ESS: float = float(os.getenv("MIN_ESS", "400"))

    # ═════════════════════════════════════════════════════════════
    # Choropleth Maps
    # ═════════════════════════════════════════════════════════════
    MAP_CONFIG: Dict = {
        "rate_colorscale": "Viridis",
        "residual_colorscale": "RdBu_r",
        "rate_cmap": "viridis",
        "residual_cmap": "RdBu_r",
        "n_color_bins": 7,
        "residual_layer": os.getenv("RESIDUAL_LAYER", "standardized_residual"),
        "scope": "usa",
        "export_html": _env_flag("EXPORT_HTML", "true"),
        "export_png": _env_flag("EXPORT_PNG", "false"),
        "plot_dpi": 200,
        "top_n_report": 10,
    }

    # ═════════════════════════════════════════════════════════════
    # Logging
    # ═════════════════════════════════════════════════════════════
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"
    LOG_FILE: Path = OUTPUT_DIR / "covid_county_pooling.log"

    @classmethod
    def ensure_directories(cls):
        """Create necessary directories"""
        for dir_path in [cls.DATA_DIR, cls.OUTPUT_DIR, cls.LOG_FILE.parent]:
            dir_path.mkdir(parents=True, exist_ok=True)

    @classmethod
    def load_from_yaml(cls, config_path: str) -> Dict:
        """
        Load configuration overrides from a YAML file.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            Dictionary with configuration values
        """
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")

        with open(path, 'r') as f:
            return yaml.safe_load(f) or {}

    @classmethod
    def apply_overrides(cls, overrides: Dict) -> None:
        """
        Merge a parsed YAML document into the class settings.

        Unknown keys inside ``model`` and ``map`` raise ConfigurationError.
        """
        for section, target in (("model", cls.MODEL_CONFIG), ("map", cls.MAP_CONFIG)):
            values = overrides.get(section) or {}
            unknown = set(values) - set(target)
            if unknown:
                raise ConfigurationError(
                    f"Unknown {section} settings: {', '.join(sorted(unknown))}"
                )
            target.update(values)

        sources = overrides.get("sources") or {}
        if "county_data_url" in sources:
            cls.COUNTY_DATA_URL = sources["county_data_url"]
        if "county_geojson_url" in sources:
            cls.COUNTY_GEOJSON_URL = sources["county_geojson_url"]
        if "request_timeout_seconds" in sources:
            cls.REQUEST_TIMEOUT_SECONDS = int(sources["request_timeout_seconds"])
        if "use_cache" in sources:
            cls.USE_CACHE = bool(sources["use_cache"])

    @classmethod
    def validate(cls) -> Tuple[bool, List[str]]:
        """Validate configuration"""
        errors = []
        model = cls.MODEL_CONFIG

        for key in ("mcmc_draws", "mcmc_chains", "mcmc_cores"):
            if model[key] < 1:
                errors.append(f"{key} must be at least 1")

        if model["mcmc_tune"] < 0:
            errors.append("mcmc_tune cannot be negative")

        if not 0 < model["target_accept"] < 1:
            errors.append("target_accept must be between 0 and 1")

        if model["kappa_pareto_alpha"] <= 0 or model["kappa_pareto_m"] <= 0:
            errors.append("Pareto hyperprior parameters must be positive")

        if not 0 <= model["phi_lower"] < model["phi_upper"] <= 1:
            errors.append("phi bounds must satisfy 0 <= phi_lower < phi_upper <= 1")

        if not 0 < model["credible_interval"] < 1:
            errors.append("credible_interval must be between 0 and 1")

        if cls.MAP_CONFIG["n_color_bins"] < 2:
            errors.append("n_color_bins must be at least 2")

        if cls.MAP_CONFIG["residual_layer"] not in ("residual", "standardized_residual"):
            errors.append("residual_layer must be 'residual' or 'standardized_residual'")

        return len(errors) == 0, errors

    @classmethod
    def get_model_params(cls) -> Dict:
        """Return a copy of the model parameters"""
        return dict(cls.MODEL_CONFIG)

    @classmethod
    def summary(cls) -> Dict:
        """Return configuration summary"""
        return {
            "sources": {
                "county_data_url": cls.COUNTY_DATA_URL,
                "county_geojson_url": cls.COUNTY_GEOJSON_URL,
                "use_cache": cls.USE_CACHE,
            },
            "model": cls.get_model_params(),
            "diagnostics": {
                "rhat_threshold": cls.RHAT_THRESHOLD,
                "min_ess": cls.MIN_ESS,
            },
            "map": dict(cls.MAP_CONFIG),
            "data_dir": str(cls.DATA_DIR),
            "output_dir": str(cls.OUTPUT_DIR),
        }


# Initialize directories on import
CountyModelConfig.ensure_directories()
