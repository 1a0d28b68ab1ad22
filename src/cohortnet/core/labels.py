"""
Tissue labels for tumor vs. normal classification.

Clinical tables record the tissue of each participant as free text
("Primary Tumor", "Solid Tissue Normal", ...). When the text is missing the
TCGA sample-type code embedded in the barcode is used instead:
    01-09: tumor
    10-19: normal
    20-29: control (ignored)
"""

from enum import Enum
from typing import Iterable, Optional
import logging
import re

logger = logging.getLogger(__name__)


class TissueType(Enum):
    """Tissue of origin for a sample."""
    TUMOR = "tumor"
    NORMAL = "normal"
    OTHER = "other"

    @property
    def label(self) -> Optional[int]:
        """Binary class label (tumor=1, normal=0), None when not modelled."""
        if self is TissueType.TUMOR:
            return 1
        if self is TissueType.NORMAL:
            return 0
        return None


# TCGA-XX-XXXX-01A...
_BARCODE_PATTERN = re.compile(r"^[A-Za-z0-9]+-[A-Za-z0-9]+-[A-Za-z0-9]+-(\d{2})")


def tissue_from_barcode(barcode: str) -> TissueType:
    """
    Infer tissue type from the sample-type code of a TCGA barcode.

    Args:
        barcode: Sample barcode, e.g. 'TCGA-A1-A0SB-01A-11R-A144-07'

    Returns:
        TissueType (OTHER when the code is absent or outside 01-19)
    """
    match = _BARCODE_PATTERN.match(str(barcode).strip())
    if match is None:
        return TissueType.OTHER
    code = int(match.group(1))
    if 1 <= code <= 9:
        return TissueType.TUMOR
    if 10 <= code <= 19:
        return TissueType.NORMAL
    return TissueType.OTHER


def tissue_from_value(
    value,
    tumor_values: Iterable[str],
    normal_values: Iterable[str],
) -> TissueType:
    """Map a clinical tissue annotation onto a TissueType (case-insensitive)."""
    if value is None or (isinstance(value, float) and value != value):
        return TissueType.OTHER
    text = str(value).strip().lower()
    if text in {v.lower() for v in tumor_values}:
        return TissueType.TUMOR
    if text in {v.lower() for v in normal_values}:
        return TissueType.NORMAL
    return TissueType.OTHER
