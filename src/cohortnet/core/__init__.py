"""
cohortnet Core Module

Error taxonomy, cohort schemas, tissue labels and run configuration.
"""

from .errors import (
    CohortNetError,
    DataIntegrityError,
    DegenerateSplitError,
    ConvergenceWarning,
)

from .labels import (
    TissueType,
    tissue_from_barcode,
    tissue_from_value,
)

from .cohort_schema import (
    CohortSchema,
    CohortRegistry,
    get_registry,
    get_schema,
    schema_from_dict,
)

from .config import (
    CorrelationConfig,
    DivergenceConfig,
    ClassifierConfig,
    ResamplingConfig,
    SelectionConfig,
    PipelineConfig,
    load_config,
)

__all__ = [
    # Errors
    "CohortNetError",
    "DataIntegrityError",
    "DegenerateSplitError",
    "ConvergenceWarning",
    # Labels
    "TissueType",
    "tissue_from_barcode",
    "tissue_from_value",
    # Cohort Schemas
    "CohortSchema",
    "CohortRegistry",
    "get_registry",
    "get_schema",
    "schema_from_dict",
    # Configuration
    "CorrelationConfig",
    "DivergenceConfig",
    "ClassifierConfig",
    "ResamplingConfig",
    "SelectionConfig",
    "PipelineConfig",
    "load_config",
]
