"""
Hierarchical Binomial Model for County Infection Probabilities.

Each county's probability of infection is drawn from a shared Beta
population distribution, so counties with small populations are shrunk
toward the common rate (partial pooling):

    phi            ~ Uniform(phi_lower, phi_upper)     population mean
    kappa          ~ Pareto(alpha, m)                  concentration
    theta[county]  ~ Beta(phi * kappa, (1 - phi) * kappa)
    cases[county]  ~ Binomial(population[county], theta[county])

Sampling is done with PyMC's NUTS; diagnostics come from ArviZ.

Reference:
- Gelman et al. (2013). "Bayesian Data Analysis", 3rd ed., Section 5.3
"""

import numpy as np
import pandas as pd
import pymc as pm
import arviz as az
from typing import Dict, Optional
from loguru import logger

from .config import CountyModelConfig
from .exceptions import DataValidationError, ModelNotFittedError
from .models import FitDiagnostics, PosteriorSummary


class HierarchicalBinomialModel:
    """
    Partial-pooling binomial model of county case counts.

    The model takes one row per county with an observed count (cases) and
    a number of trials (population) and estimates a per-county
    probability of infection ``theta``.
    """

    def __init__(
        self,
        data: pd.DataFrame,
        config: Optional[Dict] = None,
        count_col: Optional[str] = None,
        trials_col: Optional[str] = None,
        id_col: Optional[str] = None
    ):
        """
        Initialize the model.

        Args:
            data: DataFrame with one row per county
            config: Model configuration dict (defaults to CountyModelConfig.MODEL_CONFIG)
            count_col: Column of observed counts (default from config)
            trials_col: Column of trials (default from config)
            id_col: County identifier column (default from config)
        """
        self.config = {**CountyModelConfig.MODEL_CONFIG, **(config or {})}
        self.count_col = count_col or self.config["count_column"]
        self.trials_col = trials_col or self.config["trials_column"]
        self.id_col = id_col or self.config["id_column"]

        self.data = data.copy()

        # Model artifacts
        self.model = None
        self.trace = None

        self._validate_data()
        self._prepare_data()

        logger.info(f"Initialized hierarchical binomial model with {self.n_counties} counties")

    def _validate_data(self):
        """Validate input data structure."""
        for col in (self.id_col, self.count_col, self.trials_col):
            if col not in self.data.columns:
                raise DataValidationError(f"Missing required column: {col}")

        if self.data.empty:
            raise DataValidationError("No counties to model")

        subset = self.data[[self.id_col, self.count_col, self.trials_col]]
        if subset.isna().any().any():
            raise DataValidationError("Model inputs contain missing values")

        counts = self.data[self.count_col].to_numpy(dtype=float)
        trials = self.data[self.trials_col].to_numpy(dtype=float)

        if not np.all(np.mod(counts, 1) == 0) or not np.all(np.mod(trials, 1) == 0):
            raise DataValidationError("Counts and trials must be whole numbers")

        if (counts < 0).any():
            raise DataValidationError(f"{self.count_col} must be non-negative")

        if (trials <= 0).any():
            raise DataValidationError(f"{self.trials_col} must be positive")

        if (counts > trials).any():
            raise DataValidationError(f"{self.count_col} cannot exceed {self.trials_col}")

        if self.data[self.id_col].duplicated().any():
            raise DataValidationError(f"{self.id_col} must be unique per county")

    def _prepare_data(self):
        """Prepare arrays for modeling."""
        self.data = self.data.sort_values(self.id_col).reset_index(drop=True)

        self.county_ids = self.data[self.id_col].to_numpy()
        self.counts = self.data[self.count_col].to_numpy(dtype=np.int64)
        self.trials = self.data[self.trials_col].to_numpy(dtype=np.int64)
        self.n_counties = len(self.county_ids)

        observed_rate = self.counts.sum() / self.trials.sum()
        logger.info(f"Pooled observed rate: {observed_rate:.4%}")

    def build_model(self) -> pm.Model:
        """
        Build the hierarchical binomial model.

        Returns:
            PyMC model object
        """
        logger.info("Building hierarchical binomial model...")

        coords = {"county": self.county_ids}

        with pm.Model(coords=coords) as model:
            # ================================================================
            # Hyperpriors: population distribution of infection probability
            # ================================================================

            phi = pm.Uniform(
                "phi",
                lower=self.config["phi_lower"],
                upper=self.config["phi_upper"]
            )

            kappa = pm.Pareto(
                "kappa",
                alpha=self.config["kappa_pareto_alpha"],
                m=self.config["kappa_pareto_m"]
            )

            # ================================================================
            # Per-county probability of infection
            # ================================================================

            theta = pm.Beta(
                "theta",
                alpha=phi * kappa,
                beta=(1.0 - phi) * kappa,
                dims="county"
            )

            # ================================================================
            # Likelihood: independent binomial draws per county
            # ================================================================

            pm.Binomial(
                "y",
                n=self.trials,
                p=theta,
                observed=self.counts,
                dims="county"
            )

        self.model = model
        logger.info("Model built successfully")

        return model

    def fit(
        self,
        draws: Optional[int] = None,
        tune: Optional[int] = None,
        chains: Optional[int] = None,
        cores: Optional[int] = None,
        **kwargs
    ) -> az.InferenceData:
        """
        Sample the posterior with NUTS.

        Args:
            draws: Number of MCMC samples per chain (default from config)
            tune: Number of tuning steps (default from config)
            chains: Number of MCMC chains (default from config)
            cores: Number of chains run in parallel (default from config)
            **kwargs: Additional arguments passed to pm.sample()

        Returns:
            ArviZ InferenceData object with the posterior
        """
        if self.model is None:
            self.build_model()

        draws = draws or self.config["mcmc_draws"]
        tune = self.config["mcmc_tune"] if tune is None else tune
        chains = chains or self.config["mcmc_chains"]
        cores = cores or self.config["mcmc_cores"]

        kwargs.setdefault("random_seed", self.config["random_seed"])
        kwargs.setdefault("target_accept", self.config["target_accept"])

        logger.info(
            f"Sampling posterior: {draws} draws, {tune} tune, "
            f"{chains} chains on {cores} cores"
        )

        with self.model:
            self.trace = pm.sample(
                draws=draws,
                tune=tune,
                chains=chains,
                cores=cores,
                return_inferencedata=True,
                **kwargs
            )

        logger.info("Sampling complete")

        return self.trace

    def _require_trace(self):
        if self.trace is None:
            raise ModelNotFittedError("Model has not been fit yet")

    def _pooled_draws(self, var_name: str) -> np.ndarray:
        """Posterior draws with chains combined: (chains * draws, ...)"""
        samples = self.trace.posterior[var_name].values
        return samples.reshape(-1, *samples.shape[2:])

    def get_posterior_summary(self, credible_interval: Optional[float] = None) -> pd.DataFrame:
        """
        Summarize the per-county probability of infection.

        The point estimate is the median of ``theta`` across every posterior
        draw from every chain.

        Args:
            credible_interval: Mass of the equal-tailed interval (default from config)

        Returns:
            DataFrame with one row per county
        """
        self._require_trace()

        credible_interval = credible_interval or self.config["credible_interval"]
        tail = (1.0 - credible_interval) / 2.0 * 100.0

        theta = self._pooled_draws("theta")

        summaries = [
            PosteriorSummary(
                fips=int(county_id),
                p_median=float(p_median),
                p_mean=float(p_mean),
                p_sd=float(p_sd),
                p_ci_lower=float(lower),
                p_ci_upper=float(upper),
            )
            for county_id, p_median, p_mean, p_sd, lower, upper in zip(
                self.county_ids,
                np.median(theta, axis=0),
                theta.mean(axis=0),
                theta.std(axis=0),
                np.percentile(theta, tail, axis=0),
                np.percentile(theta, 100.0 - tail, axis=0),
            )
        ]

        summary = PosteriorSummary.to_frame(summaries)
        summary = summary.rename(columns={'fips': self.id_col})

        logger.info(f"Extracted posterior summaries for {len(summary)} counties")

        return summary

    def get_population_summary(self) -> Dict[str, float]:
        """
        Summarize the population-level parameters.

        Returns:
            Dictionary with posterior median and mean of phi and kappa
        """
        self._require_trace()

        phi = self._pooled_draws("phi")
        kappa = self._pooled_draws("kappa")

        return {
            'phi_median': float(np.median(phi)),
            'phi_mean': float(phi.mean()),
            'kappa_median': float(np.median(kappa)),
            'kappa_mean': float(kappa.mean()),
        }

    def diagnose(self) -> FitDiagnostics:
        """
        Run MCMC diagnostics.

        Warnings are logged; nothing downstream changes on a failed check.

        Returns:
            FitDiagnostics
        """
        self._require_trace()

        logger.info("Running MCMC diagnostics...")

        var_names = ["phi", "kappa", "theta"]

        # R-hat (convergence diagnostic)
        rhat = az.rhat(self.trace, var_names=var_names)
        rhat_max = max(float(rhat[var].max()) for var in rhat.data_vars)

        # Effective sample size
        ess = az.ess(self.trace, var_names=var_names, method="bulk")
        ess_min = min(float(ess[var].min()) for var in ess.data_vars)

        # Divergences
        n_divergences = int(self.trace.sample_stats["diverging"].values.sum())

        # Energy diagnostic
        try:
            bfmi_min = float(np.min(az.bfmi(self.trace)))
        except Exception as e:
            logger.warning(f"Could not compute BFMI: {e}")
            bfmi_min = None

        warnings_list = []
        if rhat_max > CountyModelConfig.RHAT_THRESHOLD:
            warnings_list.append(f"High R-hat detected: {rhat_max:.3f}")
        if ess_min < CountyModelConfig.MIN_ESS:
            warnings_list.append(f"Low ESS detected: {ess_min:.0f}")
        if n_divergences > 0:
            warnings_list.append(f"{n_divergences} divergences detected")
        if bfmi_min is not None and bfmi_min < 0.3:
            warnings_list.append(f"Low BFMI detected: {bfmi_min:.2f}")

        diagnostics = FitDiagnostics(
            rhat_max=rhat_max,
            ess_bulk_min=ess_min,
            n_divergences=n_divergences,
            bfmi_min=bfmi_min,
            warnings=warnings_list,
        )

        if warnings_list:
            logger.warning("MCMC diagnostics found issues:")
            for warning in warnings_list:
                logger.warning(f"  - {warning}")
        else:
            logger.info("MCMC diagnostics passed all checks")

        return diagnostics

    def plot_trace(self, save_path: Optional[str] = None):
        """
        Plot traces of the population-level parameters.

        Args:
            save_path: Path to save plot (optional)
        """
        import matplotlib.pyplot as plt

        self._require_trace()

        axes = az.plot_trace(self.trace, var_names=["phi", "kappa"])
        fig = axes.ravel()[0].figure
        fig.tight_layout()

        if save_path:
            fig.savefig(save_path, dpi=150, bbox_inches='tight')
            logger.info(f"Saved trace plot to {save_path}")
            plt.close(fig)

        return fig
