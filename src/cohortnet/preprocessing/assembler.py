"""
cohortnet: Cohort Data Assembler

Builds analysis-ready cohorts from raw expression tables and clinical
annotations:
- Participant-level de-duplication (first occurrence wins)
- Schema validation of the clinical table (named fields, no positions)
- Cohort-specific inclusion filters (e.g. ER-positive only)
- Tumor (1) / normal (0) labelling
- Restriction to a reference gene set (protein-coding genes)
- Alignment of two cohorts on a shared, non-degenerate gene set

Version: 1.0.0
Issued on: October 2026
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..core.cohort_schema import CohortSchema
from ..core.errors import DataIntegrityError
from ..core.labels import TissueType, tissue_from_barcode, tissue_from_value
from .normalization import variance_filter


logger = logging.getLogger(__name__)


@dataclass
class Cohort:
    """
    One cohort ready for modelling.

    Attributes
    ----------
    name : str
        Cohort identifier.
    expression : pd.DataFrame
        Samples x genes abundance matrix, indexed by sample identifier.
    labels : pd.Series
        Binary labels (tumor=1, normal=0) aligned to expression.index.
    clinical : Optional[pd.DataFrame]
        Clinical rows aligned to expression.index, kept for survival analysis.
    """
    name: str
    expression: pd.DataFrame
    labels: pd.Series
    clinical: Optional[pd.DataFrame] = None

    def __post_init__(self):
        self.validate()

    @classmethod
    def from_arrays(
        cls,
        name: str,
        matrix: np.ndarray,
        labels: Sequence[int],
        genes: Optional[Sequence[str]] = None,
        sample_ids: Optional[Sequence[str]] = None,
    ) -> "Cohort":
        """Wrap plain arrays into a Cohort with generated identifiers."""
        matrix = np.asarray(matrix, dtype=float)
        if matrix.ndim != 2:
            raise DataIntegrityError(f"Expression matrix must be 2-D, got shape {matrix.shape}")
        n_samples, n_genes = matrix.shape
        if genes is None:
            genes = [f"gene_{j}" for j in range(n_genes)]
        if sample_ids is None:
            sample_ids = [f"{name}_s{i}" for i in range(n_samples)]
        expression = pd.DataFrame(matrix, index=list(sample_ids), columns=list(genes))
        if len(labels) != n_samples:
            raise DataIntegrityError(
                f"Label count ({len(labels)}) does not match sample count ({n_samples})"
            )
        y = pd.Series(np.asarray(labels, dtype=int), index=expression.index, name="label")
        return cls(name=name, expression=expression, labels=y)

    def validate(self) -> None:
        """Enforce the cohort invariants."""
        n_rows = self.expression.shape[0]
        if len(self.labels) != n_rows:
            raise DataIntegrityError(
                f"Cohort '{self.name}': label count ({len(self.labels)}) "
                f"does not match sample count ({n_rows})"
            )
        if self.expression.index.has_duplicates:
            dups = self.expression.index[self.expression.index.duplicated()].tolist()
            raise DataIntegrityError(f"Cohort '{self.name}': duplicate sample ids {dups[:5]}")
        if not self.labels.index.equals(self.expression.index):
            raise DataIntegrityError(
                f"Cohort '{self.name}': labels are not aligned with expression rows"
            )
        if self.expression.columns.has_duplicates:
            raise DataIntegrityError(f"Cohort '{self.name}': duplicate gene identifiers")
        invalid = set(np.unique(self.labels.values)) - {0, 1}
        if invalid:
            raise DataIntegrityError(f"Cohort '{self.name}': labels must be 0/1, found {invalid}")

    @property
    def n_samples(self) -> int:
        return self.expression.shape[0]

    @property
    def n_genes(self) -> int:
        return self.expression.shape[1]

    @property
    def genes(self) -> List[str]:
        return list(self.expression.columns)

    @property
    def class_counts(self) -> Dict[int, int]:
        """Number of normal (0) and tumor (1) samples."""
        counts = self.labels.value_counts()
        return {0: int(counts.get(0, 0)), 1: int(counts.get(1, 0))}

    def subset_genes(self, genes: Sequence[str]) -> "Cohort":
        """Return a new cohort restricted to (and ordered by) genes."""
        missing = [g for g in genes if g not in self.expression.columns]
        if missing:
            raise DataIntegrityError(
                f"Cohort '{self.name}': {len(missing)} requested genes not present, e.g. {missing[:5]}"
            )
        return Cohort(
            name=self.name,
            expression=self.expression.loc[:, list(genes)],
            labels=self.labels,
            clinical=self.clinical,
        )


@dataclass
class AssemblyReport:
    """Bookkeeping from one assembly run."""
    cohort: str
    n_input_samples: int = 0
    n_duplicates_removed: int = 0
    n_without_clinical: int = 0
    n_excluded_by_filter: int = 0
    n_unlabelled: int = 0
    n_genes_input: int = 0
    n_genes_kept: int = 0
    class_counts: Dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "cohort": self.cohort,
            "n_input_samples": self.n_input_samples,
            "n_duplicates_removed": self.n_duplicates_removed,
            "n_without_clinical": self.n_without_clinical,
            "n_excluded_by_filter": self.n_excluded_by_filter,
            "n_unlabelled": self.n_unlabelled,
            "n_genes_input": self.n_genes_input,
            "n_genes_kept": self.n_genes_kept,
            "class_counts": {str(k): v for k, v in self.class_counts.items()},
        }


class CohortAssembler:
    """
    Assembles a Cohort from raw tables according to a CohortSchema.

    Parameters
    ----------
    schema : CohortSchema
        Named clinical fields and inclusion filters for this cohort.
    reference_genes : Iterable[str]
        Gene identifiers to keep (e.g. protein-coding genes).

    Example
    -------
    >>> assembler = CohortAssembler(get_schema("prad"), reference_genes)
    >>> cohort = assembler.assemble(expression_df, clinical_df)
    >>> print(assembler.report.class_counts)
    """

    def __init__(self, schema: CohortSchema, reference_genes: Iterable[str]):
        self.schema = schema
        self.reference_genes = sorted(set(str(g) for g in reference_genes))
        self.report = AssemblyReport(cohort=schema.name)

    def assemble(self, expression: pd.DataFrame, clinical: pd.DataFrame) -> Cohort:
        """
        Build the cohort.

        Parameters
        ----------
        expression : pd.DataFrame
            Samples x genes, indexed by sample barcode.
        clinical : pd.DataFrame
            One row per participant with the schema's named columns.

        Raises
        ------
        DataIntegrityError
            On schema violations, zero gene overlap, or label/sample mismatch.
        """
        schema = self.schema
        report = AssemblyReport(cohort=schema.name)
        self.report = report

        schema.validate_clinical(clinical)
        report.n_input_samples = expression.shape[0]
        report.n_genes_input = expression.shape[1]

        expression = self._deduplicate(expression)

        clinical = clinical.copy()
        clinical[schema.participant_column] = (
            clinical[schema.participant_column].astype(str).map(schema.participant_id)
        )
        clinical = clinical.drop_duplicates(subset=[schema.participant_column], keep="first")
        clinical = clinical.set_index(schema.participant_column)

        participants = expression.index.map(schema.participant_id)
        has_clinical = participants.isin(clinical.index)
        report.n_without_clinical = int((~has_clinical).sum())
        if report.n_without_clinical:
            logger.warning(
                f"{schema.name}: {report.n_without_clinical} samples have no clinical record"
            )
        expression = expression.loc[has_clinical]
        aligned_clinical = clinical.loc[participants[has_clinical]]
        aligned_clinical.index = expression.index

        keep = self._inclusion_mask(aligned_clinical)
        report.n_excluded_by_filter = int((~keep).sum())
        expression = expression.loc[keep]
        aligned_clinical = aligned_clinical.loc[keep]

        tissues = self._tissue_types(expression.index, aligned_clinical)
        labelled = np.array([t.label is not None for t in tissues], dtype=bool)
        report.n_unlabelled = int((~labelled).sum())
        expression = expression.loc[labelled]
        aligned_clinical = aligned_clinical.loc[labelled]
        labels = pd.Series(
            [t.label for t, ok in zip(tissues, labelled) if ok],
            index=expression.index,
            name="label",
            dtype=int,
        )

        available = set(expression.columns.astype(str))
        genes = [g for g in self.reference_genes if g in available]
        if not genes:
            raise DataIntegrityError(
                f"{schema.name}: reference gene set has zero overlap with expression columns"
            )
        expression = expression.copy()
        expression.columns = expression.columns.astype(str)
        expression = expression.loc[:, genes]
        report.n_genes_kept = len(genes)

        if len(labels) != expression.shape[0]:
            raise DataIntegrityError(
                f"{schema.name}: label count ({len(labels)}) does not match "
                f"sample count ({expression.shape[0]})"
            )

        cohort = Cohort(
            name=schema.name,
            expression=expression,
            labels=labels,
            clinical=aligned_clinical,
        )
        report.class_counts = cohort.class_counts
        logger.info(
            f"{schema.name}: {cohort.n_samples} samples "
            f"({report.class_counts[1]} tumor, {report.class_counts[0]} normal), "
            f"{cohort.n_genes} genes"
        )
        return cohort

    def _deduplicate(self, expression: pd.DataFrame) -> pd.DataFrame:
        """Keep the first sample per participant, in input order."""
        participants = expression.index.map(self.schema.participant_id)
        duplicated = pd.Index(participants).duplicated(keep="first")
        self.report.n_duplicates_removed = int(duplicated.sum())
        if self.report.n_duplicates_removed:
            logger.info(
                f"{self.schema.name}: removed {self.report.n_duplicates_removed} duplicate samples"
            )
        return expression.loc[~duplicated]

    def _inclusion_mask(self, clinical: pd.DataFrame) -> np.ndarray:
        mask = np.ones(len(clinical), dtype=bool)
        for column, allowed in self.schema.inclusion_filters.items():
            allowed_lower = {str(v).strip().lower() for v in allowed}
            values = clinical[column].astype(str).str.strip().str.lower()
            mask &= values.isin(allowed_lower).to_numpy()
        return mask

    def _tissue_types(self, barcodes: pd.Index, clinical: pd.DataFrame) -> List[TissueType]:
        tissues = []
        column = clinical[self.schema.tissue_column]
        for barcode, value in zip(barcodes, column):
            tissue = tissue_from_value(value, self.schema.tumor_values, self.schema.normal_values)
            if tissue is TissueType.OTHER:
                tissue = tissue_from_barcode(barcode)
            tissues.append(tissue)
        return tissues


def align_cohorts(
    cohort_a: Cohort,
    cohort_b: Cohort,
    min_variance: float = 0.0,
) -> Tuple[Cohort, Cohort]:
    """
    Restrict two cohorts to their shared genes with nonzero variance in both.

    Gene order follows cohort_a.

    Raises
    ------
    DataIntegrityError
        If no gene survives.
    """
    genes_b = set(cohort_b.genes)
    shared = [g for g in cohort_a.genes if g in genes_b]
    if not shared:
        raise DataIntegrityError(
            f"Cohorts '{cohort_a.name}' and '{cohort_b.name}' share no genes"
        )

    ok_a = variance_filter(cohort_a.expression.loc[:, shared], min_variance)
    ok_b = variance_filter(cohort_b.expression.loc[:, shared], min_variance)
    genes = [g for g, a, b in zip(shared, ok_a, ok_b) if a and b]
    if not genes:
        raise DataIntegrityError("No shared gene has nonzero variance in both cohorts")

    n_dropped = len(shared) - len(genes)
    if n_dropped:
        logger.info(f"Dropped {n_dropped} zero-variance genes from the shared gene set")
    logger.info(f"Shared gene set: {len(genes)} genes")
    return cohort_a.subset_genes(genes), cohort_b.subset_genes(genes)


def drop_constant_genes(cohort: Cohort, min_variance: float = 0.0) -> Cohort:
    """Single-cohort counterpart of align_cohorts."""
    ok = variance_filter(cohort.expression, min_variance)
    if not ok.any():
        raise DataIntegrityError(f"Cohort '{cohort.name}': every gene has zero variance")
    return cohort.subset_genes([g for g, keep in zip(cohort.genes, ok) if keep])


def load_reference_genes(path: str, column: str = "gene_id") -> List[str]:
    """
    Read a reference gene list (deduplicated, sorted).

    Accepts a plain text file with one identifier per line, or a CSV/TSV
    file with the given column.
    """
    ref_path = Path(path)
    if not ref_path.exists():
        raise FileNotFoundError(f"Reference gene file not found: {path}")

    if ref_path.suffix.lower() in {".csv", ".tsv"}:
        sep = "\t" if ref_path.suffix.lower() == ".tsv" else ","
        table = pd.read_csv(ref_path, sep=sep)
        if column not in table.columns:
            raise DataIntegrityError(f"Reference gene file has no '{column}' column")
        genes = table[column].dropna().astype(str).str.strip()
    else:
        with open(ref_path) as f:
            genes = pd.Series([line.strip() for line in f if line.strip()])

    return sorted(set(genes))
