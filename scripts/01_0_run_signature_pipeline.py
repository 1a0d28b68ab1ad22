#!/usr/bin/env python3
"""
01_0_run_signature_pipeline.py - Uniform vs. divergence-weighted signatures

Runs the two-cohort pipeline (or the single-cohort variant with --single)
on CSV inputs and writes tables to the output directory.

Usage:
  python 01_0_run_signature_pipeline.py \
      --expression-a data/brca_counts.csv --clinical-a data/brca_clinical.csv --cohort-a brca-er-positive \
      --expression-b data/prad_counts.csv --clinical-b data/prad_clinical.csv --cohort-b prad \
      --reference-genes data/protein_coding.txt --output results/ --n-jobs 8

Output in: results/
"""

from cohortnet.analysis.pipeline import main


if __name__ == "__main__":
    main()
