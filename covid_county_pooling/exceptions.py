"""
Exception hierarchy for the county partial-pooling pipeline
"""


class CountyPoolingError(Exception):
    """Base class for pipeline errors"""


class ConfigurationError(CountyPoolingError):
    """Invalid or incomplete configuration"""


class DataSourceError(CountyPoolingError):
    """A remote or local data source could not be read"""


class DataValidationError(CountyPoolingError):
    """Input data does not satisfy the expected schema or invariants"""


class ModelNotFittedError(CountyPoolingError):
    """Posterior results requested before the model was sampled"""
