"""End-to-end tests for the signature pipeline and its command line."""

import json
import sys

import numpy as np
import pandas as pd
import pytest

from cohortnet.analysis.pipeline import SignaturePipeline, _normalized, main, read_expression
from cohortnet.core.config import PipelineConfig
from cohortnet.core.errors import DataIntegrityError
from cohortnet.preprocessing.assembler import Cohort

from conftest import make_correlated_pair, to_abundance


N_SAMPLES = 60


def _abundance_pair(seed=0):
    a, b = make_correlated_pair(n_samples=N_SAMPLES, n_genes=20, flipped=(19,), seed=seed)
    labels = np.repeat([0, 1], N_SAMPLES // 2)
    for frame in (a, b):
        frame["gene_0"] += np.where(labels == 1, 2.0, -2.0)
    return to_abundance(a), to_abundance(b), labels


@pytest.fixture
def cohorts():
    a, b, labels = _abundance_pair()
    return (
        Cohort.from_arrays("brca-er-positive", a.to_numpy(), labels, genes=list(a.columns)),
        Cohort.from_arrays("prad", b.to_numpy(), labels, genes=list(b.columns)),
    )


@pytest.fixture
def config(tmp_path):
    config = PipelineConfig.from_dict({
        "resampling": {"n_trials": 3, "n_folds": 5, "seed": 3, "show_progress": False},
        "classifier": {"n_lambdas": 6},
        "correlation": {"block_size": 7},
    })
    config.output_dir = str(tmp_path / "results")
    return config


def test_run_and_export(cohorts, config, tmp_path):
    pipeline = SignaturePipeline(config)
    results = pipeline.run(*cohorts)

    assert results.n_shared_genes == 20
    assert "gene_19" in results.divergence.excluded_genes
    assert set(results.runs) == {"brca-er-positive", "prad"}
    for name, run in results.runs.items():
        assert run.genes == results.divergence.retained_genes
        assert results.selections[name].comparison is not None
        assert len(results.paired_tests[name]) == 3

    files = pipeline.export(results)
    out = tmp_path / "results"
    for name in ("divergence_weights.csv", "prad_trial_metrics.csv", "prad_selection.csv",
                 "brca-er-positive_median_metrics.csv", "pipeline_results.json"):
        assert (out / name).exists()
    assert str(out / "pipeline_results.json") in files

    with open(out / "pipeline_results.json") as f:
        saved = json.load(f)
    assert saved["config"]["resampling"]["n_trials"] == 3
    assert saved["divergence"]["n_excluded"] >= 1

    weights = pd.read_csv(out / "divergence_weights.csv", index_col=0)
    assert weights["weight"].max() == 1.0
    assert not weights.loc["gene_19", "retained"]


def test_disk_backed_divergence_matches_streaming(cohorts, config, tmp_path):
    norm_a, norm_b = (_normalized(c, 1.0) for c in cohorts)
    streamed = SignaturePipeline(config)._divergence(norm_a, norm_b)

    config.correlation.storage_dir = str(tmp_path / "corr")
    stored = SignaturePipeline(config)._divergence(norm_a, norm_b)
    np.testing.assert_allclose(streamed.raw_scores.to_numpy(), stored.raw_scores.to_numpy(), atol=1e-12)
    assert (tmp_path / "corr" / "prad").is_dir()


def test_same_cohort_names_rejected(cohorts, config):
    a, _ = cohorts
    with pytest.raises(DataIntegrityError):
        SignaturePipeline(config).run(a, a)


def test_single_cohort_run(cohorts, config):
    config.classifier.l1_ratio_grid = (0.5, 0.9)
    results = SignaturePipeline(config).run_single_cohort(cohorts[1])
    run = results.runs["prad"]
    assert run.variants == ["uniform"]
    assert run.l1_ratio in (0.5, 0.9)
    assert results.divergence is None


def _write_tcga_inputs(tmp_path):
    a, b, labels = _abundance_pair(seed=1)
    files = {}
    for name, frame in (("brca", a), ("prad", b)):
        barcodes = [
            f"TCGA-{name[:2].upper()}-{i:04d}-{'01' if label else '11'}A"
            for i, label in enumerate(labels)
        ]
        expression = frame.copy()
        expression.index = barcodes
        expression.T.to_csv(tmp_path / f"{name}_counts.csv")

        clinical = pd.DataFrame({
            "bcr_patient_barcode": [b[:12] for b in barcodes],
            "sample_type": ["Primary Tumor" if label else "Solid Tissue Normal" for label in labels],
            "vital_status": "Alive",
            "days_to_death": np.nan,
            "days_to_last_followup": 500,
        })
        if name == "brca":
            clinical["breast_carcinoma_estrogen_receptor_status"] = "Positive"
        clinical.to_csv(tmp_path / f"{name}_clinical.csv", index=False)
        files[name] = (tmp_path / f"{name}_counts.csv", tmp_path / f"{name}_clinical.csv")

    reference = tmp_path / "genes.txt"
    reference.write_text("\n".join(a.columns) + "\n")
    return files, reference


def test_command_line(tmp_path, monkeypatch):
    files, reference = _write_tcga_inputs(tmp_path)
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"classifier": {"n_lambdas": 6},
                                       "resampling": {"n_folds": 5}}))
    out = tmp_path / "cli_results"
    monkeypatch.setattr(sys, "argv", [
        "cohortnet",
        "--expression-a", str(files["brca"][0]), "--clinical-a", str(files["brca"][1]),
        "--expression-b", str(files["prad"][0]), "--clinical-b", str(files["prad"][1]),
        "--reference-genes", str(reference), "--genes-as-rows",
        "--config", str(config_path), "--output", str(out),
        "--trials", "2", "--seed", "5", "--quiet",
    ])
    main()

    with open(out / "pipeline_results.json") as f:
        saved = json.load(f)
    assert saved["cohorts"]["prad"]["n_samples"] == N_SAMPLES
    assert saved["runs"]["brca-er-positive"]["n_trials_requested"] == 2


def test_read_expression_transposes(tmp_path):
    path = tmp_path / "counts.tsv"
    pd.DataFrame({"s1": [1, 2], "s2": [3, 4]}, index=["g1", "g2"]).to_csv(path, sep="\t")
    frame = read_expression(str(path), genes_as_rows=True)
    assert list(frame.index) == ["s1", "s2"]
    assert list(frame.columns) == ["g1", "g2"]
