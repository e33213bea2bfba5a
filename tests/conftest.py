"""Shared fixtures: small synthetic benchmark studies with a known answer."""

import numpy as np
import pandas as pd
import pytest

SAMPLES = ["A1", "A2", "A3", "B1", "B2", "B3"]
CONDITIONS = ["A", "A", "A", "B", "B", "B"]


def make_benchmark_long(rng, n_human=5, n_yeast=5, n_peptides=10, noise_sd=0.1):
    """
    Long peptide table mimicking a two-species spike-in benchmark.

    Every peptide of a protein shares the same per-sample noise, so the data
    is exactly additive (peptide offset + sample effect) and the rollup
    recovers the sample effects without error. Group B reuses group A's noise
    in permuted order: the B - A difference is exactly 0 for human proteins
    and exactly 1 for yeast proteins.
    """
    rows = []
    proteins = [f"P{i:02d}_HUMAN" for i in range(n_human)] + \
        [f"P{i:02d}_YEAST" for i in range(n_human, n_human + n_yeast)]
    for prot in proteins:
        shift = 1.0 if prot.endswith("_YEAST") else 0.0
        base = 20.0 + rng.normal(0, 1)
        noise_a = rng.normal(0, noise_sd, 3)
        noise_b = noise_a[rng.permutation(3)] + shift
        effects = np.concatenate([noise_a, noise_b])
        offsets = rng.normal(0, 1, n_peptides)
        for k, offset in enumerate(offsets):
            for sample, effect in zip(SAMPLES, effects):
                rows.append({
                    "PEPTIDE_ID": f"{prot}_pep{k}",
                    "PROTEIN_ID": prot,
                    "SAMPLE": sample,
                    "SIGNAL": 2 ** (base + offset + effect),
                })
    return pd.DataFrame(rows)


def study_config(input_file, out_dir, **overrides):
    cfg = {
        "dataset": {
            "input_file": str(input_file),
            "tool": "generic",
            "metadata": [{"Sample": s, "Condition": c} for s, c in zip(SAMPLES, CONDITIONS)],
        },
        "preprocessing": {
            "assay_type": "intensity",
            "normalization": {"method": ["log2"]},
            "rollup": {"method": "median_polish"},
        },
        "design": {"predictors": [{"name": "Condition", "kind": "categorical"}]},
        "contrasts": [{"name": "B_vs_A", "factor": "Condition", "numerator": "B", "denominator": "A"}],
        "analysis": {"confidence_level": 0.95, "missingness": True},
        "exports": {"path_table": str(out_dir)},
    }
    for section, values in overrides.items():
        cfg[section] = {**cfg.get(section, {}), **values}
    return cfg


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def benchmark_file(tmp_path, rng):
    """Benchmark long table written as TSV."""
    path = tmp_path / "benchmark.tsv"
    make_benchmark_long(rng).to_csv(path, sep="\t", index=False)
    return path


@pytest.fixture
def sample_metadata():
    return pd.DataFrame({"Sample": SAMPLES, "Condition": CONDITIONS})


@pytest.fixture
def aligned_metadata(sample_metadata):
    """Metadata indexed by sample ID, as the pipeline expects it."""
    return sample_metadata.set_index(pd.Index(SAMPLES))


@pytest.fixture
def log_matrix(rng):
    """200 features x 6 samples on a log2 scale; the first 20 features shifted by +2 in group B."""
    values = rng.normal(20, 0.3, size=(200, 6))
    values[:20, 3:] += 2.0
    index = [f"F{i:03d}" for i in range(200)]
    return pd.DataFrame(values, index=index, columns=SAMPLES)
