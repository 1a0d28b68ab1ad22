"""Tests for tissue labels and the cohort schema registry."""

import pandas as pd
import pytest

from cohortnet.core.cohort_schema import CohortSchema, get_registry, get_schema, schema_from_dict
from cohortnet.core.errors import DataIntegrityError
from cohortnet.core.labels import TissueType, tissue_from_barcode, tissue_from_value


@pytest.mark.parametrize("barcode,expected", [
    ("TCGA-A1-A0SB-01A-11R-A144-07", TissueType.TUMOR),
    ("TCGA-A1-A0SB-06A", TissueType.TUMOR),
    ("TCGA-A1-A0SB-11A-11R-A144-07", TissueType.NORMAL),
    ("TCGA-A1-A0SB-20A", TissueType.OTHER),
    ("not-a-barcode", TissueType.OTHER),
])
def test_tissue_from_barcode(barcode, expected):
    assert tissue_from_barcode(barcode) is expected


def test_tissue_labels():
    assert TissueType.TUMOR.label == 1
    assert TissueType.NORMAL.label == 0
    assert TissueType.OTHER.label is None


def test_tissue_from_value_is_case_insensitive():
    assert tissue_from_value("primary tumor", ["Primary Tumor"], ["Solid Tissue Normal"]) is TissueType.TUMOR
    assert tissue_from_value(" SOLID TISSUE NORMAL ", ["Primary Tumor"], ["Solid Tissue Normal"]) is TissueType.NORMAL
    assert tissue_from_value(float("nan"), ["Primary Tumor"], ["Solid Tissue Normal"]) is TissueType.OTHER


def test_registry_has_both_cohorts():
    registry = get_registry()
    assert registry.is_supported("brca-er-positive")
    assert registry.is_supported("prad")
    assert "breast_carcinoma_estrogen_receptor_status" in get_schema("brca-er-positive").required_columns


def test_unknown_cohort_raises():
    with pytest.raises(ValueError):
        get_schema("luad")


def test_participant_id_truncation():
    schema = get_schema("prad")
    assert schema.participant_id("TCGA-2A-A8VL-01A-21R-A37L-07") == "TCGA-2A-A8VL"


def test_validate_clinical_reports_missing_columns():
    schema = get_schema("brca-er-positive")
    clinical = pd.DataFrame({"bcr_patient_barcode": ["TCGA-AA-0001"], "sample_type": ["Primary Tumor"]})
    with pytest.raises(DataIntegrityError, match="breast_carcinoma_estrogen_receptor_status"):
        schema.validate_clinical(clinical)


def test_schema_rejects_overlapping_values():
    with pytest.raises(ValueError):
        CohortSchema(name="x", description="", tumor_values=["a"], normal_values=["A"])


def test_schema_from_dict():
    schema = schema_from_dict({
        "name": "custom",
        "description": "test cohort",
        "participant_column": "patient",
        "inclusion_filters": {"subtype": ["LumA"]},
    })
    assert schema.required_columns == ["patient", "tissue_type", "subtype"]
