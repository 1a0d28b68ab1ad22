"""
Cohort Schema Registry for cohortnet

Central configuration for the supported expression cohorts.
Each cohort declares its clinical fields by name:
- Participant identifier column
- Tissue type column and the values meaning tumor / normal
- Inclusion filters (e.g. receptor status)
- Survival fields (vital status, days to event)

Clinical tables are validated against the schema at load time so that a
change in the source table's shape fails loudly instead of misaligning.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

import pandas as pd

from .errors import DataIntegrityError

logger = logging.getLogger(__name__)


# TCGA-XX-XXXX
TCGA_PARTICIPANT_LENGTH = 12


@dataclass
class CohortSchema:
    """Named-field description of one cohort's clinical table."""

    # Basic info
    name: str
    description: str

    # Identifiers
    participant_column: str = "participant_id"
    participant_id_length: int = TCGA_PARTICIPANT_LENGTH

    # Label configuration
    tissue_column: str = "tissue_type"
    tumor_values: List[str] = field(default_factory=lambda: ["Primary Tumor", "tumor"])
    normal_values: List[str] = field(default_factory=lambda: ["Solid Tissue Normal", "normal"])

    # Sub-population restriction: column -> allowed values
    inclusion_filters: Dict[str, List[str]] = field(default_factory=dict)

    # Survival fields, passed through for downstream analysis
    vital_status_column: Optional[str] = "vital_status"
    days_to_death_column: Optional[str] = "days_to_death"
    days_to_last_followup_column: Optional[str] = "days_to_last_followup"

    def __post_init__(self):
        """Validate configuration."""
        if self.participant_id_length <= 0:
            raise ValueError(
                f"participant_id_length must be positive, got {self.participant_id_length}"
            )
        overlap = {v.lower() for v in self.tumor_values} & {v.lower() for v in self.normal_values}
        if overlap:
            raise ValueError(f"Values marked both tumor and normal: {sorted(overlap)}")

    @property
    def required_columns(self) -> List[str]:
        """Clinical columns that must be present."""
        columns = [self.participant_column, self.tissue_column]
        columns.extend(self.inclusion_filters.keys())
        return columns

    @property
    def survival_columns(self) -> List[str]:
        """Optional survival columns declared by this schema."""
        return [
            c for c in (
                self.vital_status_column,
                self.days_to_death_column,
                self.days_to_last_followup_column,
            )
            if c is not None
        ]

    def participant_id(self, barcode: str) -> str:
        """Truncate a sample barcode to the participant-level identifier."""
        return str(barcode).strip()[: self.participant_id_length]

    def validate_clinical(self, clinical: pd.DataFrame) -> None:
        """
        Check that every named column exists in the clinical table.

        Raises:
            DataIntegrityError: If a required column is missing
        """
        missing = [c for c in self.required_columns if c not in clinical.columns]
        if missing:
            raise DataIntegrityError(
                f"Clinical table for cohort '{self.name}' is missing columns: {missing}"
            )
        absent_survival = [c for c in self.survival_columns if c not in clinical.columns]
        if absent_survival:
            logger.warning(
                f"Cohort '{self.name}': survival columns not found {absent_survival}"
            )


# =============================================================================
# Cohort Schemas
# =============================================================================

COHORT_SCHEMAS: Dict[str, CohortSchema] = {

    # -------------------------------------------------------------------------
    # Breast invasive carcinoma, estrogen-receptor positive
    # -------------------------------------------------------------------------
    "brca-er-positive": CohortSchema(
        name="brca-er-positive",
        description="TCGA-BRCA RNA-seq restricted to ER-positive participants",
        participant_column="bcr_patient_barcode",
        tissue_column="sample_type",
        inclusion_filters={"breast_carcinoma_estrogen_receptor_status": ["Positive"]},
        vital_status_column="vital_status",
        days_to_death_column="days_to_death",
        days_to_last_followup_column="days_to_last_followup",
    ),

    # -------------------------------------------------------------------------
    # Prostate adenocarcinoma
    # -------------------------------------------------------------------------
    "prad": CohortSchema(
        name="prad",
        description="TCGA-PRAD RNA-seq, all participants",
        participant_column="bcr_patient_barcode",
        tissue_column="sample_type",
        vital_status_column="vital_status",
        days_to_death_column="days_to_death",
        days_to_last_followup_column="days_to_last_followup",
    ),
}


# =============================================================================
# Registry Class
# =============================================================================

class CohortRegistry:
    """
    Central registry for cohort schemas.

    Usage:
        registry = CohortRegistry()
        schema = registry.get_schema("prad")
        schema.validate_clinical(clinical_df)
    """

    def __init__(self):
        self._schemas = dict(COHORT_SCHEMAS)

    @property
    def available_cohorts(self) -> List[str]:
        """List all registered cohort names."""
        return list(self._schemas.keys())

    def get_schema(self, cohort_name: str) -> CohortSchema:
        """
        Get the schema for a cohort.

        Raises:
            ValueError: If the cohort is not registered
        """
        name_lower = cohort_name.lower().strip()
        if name_lower not in self._schemas:
            available = ", ".join(self.available_cohorts)
            raise ValueError(
                f"Unknown cohort: '{cohort_name}'. Available cohorts: {available}"
            )
        return self._schemas[name_lower]

    def register_schema(self, schema: CohortSchema) -> None:
        """Register (or overwrite) a cohort schema."""
        name_lower = schema.name.lower().strip()
        if name_lower in self._schemas:
            logger.warning(f"Overwriting existing cohort schema: {name_lower}")
        self._schemas[name_lower] = schema
        logger.info(f"Registered cohort: {name_lower}")

    def is_supported(self, cohort_name: str) -> bool:
        return cohort_name.lower().strip() in self._schemas


_registry: Optional[CohortRegistry] = None


def get_registry() -> CohortRegistry:
    """Get the global cohort registry instance."""
    global _registry
    if _registry is None:
        _registry = CohortRegistry()
    return _registry


def get_schema(cohort_name: str) -> CohortSchema:
    """Shortcut for get_registry().get_schema(name)."""
    return get_registry().get_schema(cohort_name)


def schema_from_dict(values: Dict) -> CohortSchema:
    """Build a CohortSchema from a plain mapping (e.g. parsed JSON)."""
    allowed = set(CohortSchema.__dataclass_fields__)
    unknown = set(values) - allowed
    if unknown:
        raise ValueError(f"Unknown schema fields: {sorted(unknown)}")
    return CohortSchema(**values)

