import os

import numpy as np
import pandas as pd
import pytest

from fullsib.cache import ArtifactCache
from fullsib.gwas import (
    GENO_MISSING,
    GWAS,
    GWASData,
    RESULT_COLUMNS,
    align_individuals,
    dosage_matrix,
    farmcpu,
    filter_markers,
    glm,
    kinship,
    marker_stats,
    mlm,
    permutation_threshold,
    prepare,
    principal_components,
    read_gwas_inputs,
    write_gwas_inputs,
)
from fullsib.geno import read_vcf


CAUSAL = 7


@pytest.fixture(scope="module")
def population():
    rng = np.random.default_rng(21)
    n, m = 120, 60
    G = rng.binomial(2, rng.uniform(0.15, 0.5, m), size=(n, m)).astype(float)
    y = 1.2 * G[:, CAUSAL] + rng.normal(0, 1.0, n)
    ids = [f"C4_159_{i:03d}" for i in range(n)]
    markers = [f"m{j}" for j in range(m)]
    dosage = pd.DataFrame(G.astype(np.int8), index=pd.Index(ids, name="Taxa"), columns=markers)
    snp_map = pd.DataFrame({
        "chrom": np.repeat(["1", "2", "3"], m // 3),
        "pos": np.tile(np.arange(1, m // 3 + 1) * 2_000_000, 3),
    }, index=pd.Index(markers, name="marker"))
    phenotypes = pd.DataFrame({"DM": y}, index=pd.Index(ids, name="Taxa"))
    return GWASData(dosage, snp_map, phenotypes)


def test_dosage_matrix_from_genotypes(family):
    dosage, snp_map = dosage_matrix(family)
    assert dosage.shape == (family.n_samples, family.n_markers)
    assert list(dosage.index) == family.samples
    assert (dosage.loc[:, "2_9000000"] == GENO_MISSING).sum() == 40
    assert list(snp_map.columns) == ["chrom", "pos"]


def test_align_individuals_keeps_genotype_order(family):
    dosage, _ = dosage_matrix(family)
    pheno = pd.DataFrame({"DM": [1.0, 2.0, 3.0]}, index=["C4_159_003", "C4_159_001", "TME419"])
    d, p = align_individuals(dosage, pheno)
    assert list(d.index) == ["C4_159_001", "C4_159_003"]
    assert list(p["DM"]) == [2.0, 1.0]
    with pytest.raises(ValueError, match="match exactly"):
        align_individuals(dosage, pd.DataFrame({"DM": [1.0]}, index=["159_001"]))


def test_marker_filters():
    dosage = pd.DataFrame({
        "mono": [0, 0, 0, 0, 0],
        "gappy": [GENO_MISSING, GENO_MISSING, 1, 2, 0],
        "good": [0, 1, 2, GENO_MISSING, 1],
    })
    snp_map = pd.DataFrame({"chrom": ["1", "1", "1"], "pos": [1, 2, 3]}, index=["mono", "gappy", "good"])
    stats = marker_stats(dosage)
    assert stats.at["mono", "maf"] == 0.0
    assert stats.at["gappy", "missing"] == pytest.approx(0.4)
    assert stats.at["good", "maf"] == pytest.approx(0.5)

    kept, kept_map = filter_markers(dosage, snp_map, max_missing=0.3, min_maf=0.05)
    assert list(kept.columns) == ["good"]
    assert list(kept_map.index) == ["good"]
    assert (kept["good"] != GENO_MISSING).all()
    raw, _ = filter_markers(dosage, snp_map, max_missing=0.3, min_maf=0.05, impute=False)
    assert (raw["good"] == GENO_MISSING).sum() == 1
    with pytest.raises(ValueError):
        filter_markers(dosage[["mono"]], snp_map.loc[["mono"]])


def test_prepare_from_vcf(vcf_path, blues_result):
    from fullsib.phe import blues_wide

    data = prepare(read_vcf(vcf_path), blues_wide(blues_result[0]))
    assert data.n_ind == 80
    assert "2_9000000" not in data.map.index
    assert list(data.phenotypes.columns) == ["DM", "FYLD"]
    assert (data.dosage.to_numpy() != GENO_MISSING).all()


def test_gwas_inputs_round_trip(tmp_path, population):
    prefix = str(tmp_path / "gw")
    paths = write_gwas_inputs(population, prefix)
    assert all(os.path.exists(p) for p in paths.values())
    back = read_gwas_inputs(prefix)
    assert (back.dosage.to_numpy() == population.dosage.to_numpy()).all()
    assert list(back.map["chrom"]) == list(population.map["chrom"])
    assert np.allclose(back.phenotypes["DM"], population.phenotypes["DM"])

    os.remove(paths["bin"])
    text = read_gwas_inputs(prefix)
    assert (text.dosage.to_numpy() == population.dosage.to_numpy()).all()


def test_kinship_and_pcs(population):
    K = kinship(population.dosage)
    assert K.shape == (population.n_ind, population.n_ind)
    assert np.allclose(K, K.T)
    assert np.linalg.eigvalsh(K).min() > -1e-6 * np.abs(K).max()
    pcs = principal_components(population.dosage, 3)
    assert pcs.shape == (population.n_ind, 3)
    assert np.isfinite(pcs).all()
    assert (pcs.std(axis=0) > 0).all()
    assert principal_components(population.dosage, 0).shape == (population.n_ind, 0)


def test_glm_finds_causal_marker(population):
    y = population.phenotypes["DM"].to_numpy()
    res = glm(y, population.dosage)
    assert list(res.columns) == ["effect", "se", "pvalue"]
    assert list(res.index) == list(population.dosage.columns)
    assert res["pvalue"].idxmin() == f"m{CAUSAL}"
    assert res.at[f"m{CAUSAL}", "effect"] == pytest.approx(1.2, abs=0.4)
    assert res["pvalue"].between(0, 1).all()


def test_glm_table_carries_driver_statistics(population):
    from panicle.association.glm import PANICLE_GLM

    y = population.phenotypes["DM"].to_numpy()
    cov = principal_components(population.dosage, 2)
    res = glm(y, population.dosage, cov)
    direct = PANICLE_GLM(phe=np.column_stack([np.arange(len(y)), y]), geno=population.dosage.to_numpy(),
                         CV=cov, verbose=False)
    assert np.allclose(res["effect"].to_numpy(), np.asarray(direct.effects), equal_nan=True)
    assert np.allclose(res["se"].to_numpy(), np.asarray(direct.se), equal_nan=True)


def test_glm_matches_ols(population):
    import statsmodels.api as sm

    y = population.phenotypes["DM"].to_numpy()
    G = population.dosage.to_numpy().astype(float)
    cov = principal_components(population.dosage, 2)
    res = glm(y, G, cov)
    fit = sm.OLS(y, np.column_stack([np.ones(len(y)), cov, G[:, 3]])).fit()
    assert res.at[3, "effect"] == pytest.approx(fit.params[-1], rel=1e-4)
    assert res.at[3, "se"] == pytest.approx(fit.bse[-1], rel=1e-4)
    assert abs(np.log10(res.at[3, "pvalue"]) - np.log10(fit.pvalues[-1])) < 0.2


def test_mlm_finds_causal_marker(population):
    y = population.phenotypes["DM"].to_numpy()
    res = mlm(y, population.dosage, kinship(population.dosage))
    assert res["pvalue"].idxmin() == f"m{CAUSAL}"
    assert len(res) == population.n_markers


def test_farmcpu(population):
    y = population.phenotypes["DM"].to_numpy()
    res = farmcpu(y, population.dosage, population.map, max_loop=5)
    assert list(res.index) == list(population.dosage.columns)
    assert res["pvalue"].idxmin() == f"m{CAUSAL}"
    assert res["pvalue"].notna().all()
    assert f"m{CAUSAL}" in res.attrs["pseudo_qtns"]


def test_farmcpu_without_signal_selects_no_qtn(population):
    rng = np.random.default_rng(3)
    y = rng.normal(size=population.n_ind)
    res = farmcpu(y, population.dosage, population.map, p_threshold=1e-12)
    assert res.attrs["pseudo_qtns"] == []
    assert res["pvalue"].between(0, 1).all()
    with pytest.raises(ValueError, match="bin method"):
        farmcpu(y, population.dosage, population.map, method_bin="optimum")


def test_permutation_threshold_is_reproducible(population):
    y = population.phenotypes["DM"].to_numpy()
    t1 = permutation_threshold(y, population.dosage, n_perm=20, seed=4)
    t2 = permutation_threshold(y, population.dosage, n_perm=20, seed=4)
    assert t1 == t2
    assert 0 < t1 < 0.05


def test_models_with_same_pcs_share_threshold(population, monkeypatch):
    import fullsib.gwas as gwas_mod

    calls = []
    real = gwas_mod.permutation_threshold

    def counting(y, G, covariates=None, *args, **kwargs):
        calls.append(0 if covariates is None else covariates.shape[1])
        return real(y, G, covariates, *args, **kwargs)

    monkeypatch.setattr(gwas_mod, "permutation_threshold", counting)
    results = GWAS(n_perm=5, n_pcs={"GLM": 2, "MLM": 1, "FarmCPU": 1}).run(population)
    assert sorted(calls) == [1, 2]
    assert results["DM"]["MLM"].attrs["threshold"] == results["DM"]["FarmCPU"].attrs["threshold"]


def test_driver_run_and_save(tmp_path, population):
    driver = GWAS(n_perm=20, n_pcs={"GLM": 2, "MLM": 1, "FarmCPU": 0}, cache=ArtifactCache(str(tmp_path / "cache")))
    results = driver.run(population)
    assert set(results["DM"]) == {"GLM", "MLM", "FarmCPU"}
    for model, table in results["DM"].items():
        assert list(table.columns) == RESULT_COLUMNS
        assert 0 < table.attrs["threshold"] < 1
        assert bool(table.set_index("marker").at[f"m{CAUSAL}", "significant"])

    summary = driver.save(results, str(tmp_path), "run")
    assert list(summary.columns) == ["trait", "model", "threshold", "n_significant", "min_pvalue"]
    assert (summary["n_significant"] >= 1).all()
    full = pd.read_csv(tmp_path / "run.DM.MLM.gwas.csv")
    assert len(full) == population.n_markers
    signals = pd.read_csv(tmp_path / "run.DM.MLM.signals.csv")
    assert f"m{CAUSAL}" in set(signals["marker"])
    assert (tmp_path / "run.gwas_summary.csv").exists()


def test_driver_rejects_unknown_model():
    with pytest.raises(ValueError):
        GWAS(models=["BLINK"])
