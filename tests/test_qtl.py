import os

import numpy as np
import pandas as pd
import pytest

from fullsib.cache import ArtifactCache
from fullsib.qtl import (
    EFFECTS,
    QTL,
    cim,
    class_groups,
    locus_name,
    segregation_pattern,
    select_cofactors,
    support_interval,
)


@pytest.fixture(scope="module")
def phenotypes(qtl_values):
    rng = np.random.default_rng(5)
    return pd.DataFrame({
        "DM": 30.0 + 2.0 * qtl_values + rng.normal(0, 0.8, len(qtl_values)),
        "NOISE": rng.normal(0, 1.0, len(qtl_values)),
    }, index=qtl_values.index)


def test_locus_name():
    assert locus_name("1", 12.0) == "1_loc12"
    assert locus_name("2", 3.456) == "2_loc3.46"


def test_genoprob_probabilities(genoprobs, linkage_map, segregation):
    loci = genoprobs.loci
    assert genoprobs.probs.shape == (len(loci), segregation.n_ind, 4)
    assert np.allclose(genoprobs.probs.sum(axis=2), 1.0)
    assert int(loci["is_marker"].sum()) == len(linkage_map.table)
    assert set(loci.loc[loci["is_marker"], "locus"]) == set(linkage_map.table["marker"])
    pseudo = loci[~loci["is_marker"]]
    assert pseudo["locus"].str.contains("_loc").all()
    for chrom, sub in loci.groupby("chrom"):
        assert sub["cM"].is_monotonic_increasing


def test_covariates_contrasts(genoprobs):
    X = genoprobs.covariates(0)
    assert X.shape == (len(genoprobs.individuals), 3)
    assert (np.abs(X) <= 1.0 + 1e-9).all()


def test_genoprob_frame_and_subset(genoprobs):
    sub = genoprobs.subset_individuals(genoprobs.individuals[:5])
    assert sub.probs.shape[1] == 5
    frame = sub.to_frame()
    assert len(frame) == sub.n_loci * 5
    assert list(frame.columns) == ["locus", "individual", "ac", "ad", "bc", "bd"]


def test_select_cofactors_picks_marker_near_qtl(genoprobs, phenotypes):
    y = phenotypes.loc[genoprobs.individuals, "DM"].to_numpy()
    selected = select_cofactors(genoprobs, y)
    assert selected
    first = genoprobs.loci.loc[selected[0]]
    assert first["chrom"] == "1"
    assert bool(first["is_marker"])
    assert len(select_cofactors(genoprobs, y, max_cofactors=1)) <= 1


def test_cim_peaks_at_simulated_qtl(genoprobs, phenotypes, linkage_map):
    y = phenotypes.loc[genoprobs.individuals, "DM"].to_numpy()
    lod = cim(genoprobs, y, cofactors=[], window=10.0)
    assert lod.shape == (genoprobs.n_loci,)
    assert (lod >= 0).all()
    peak = genoprobs.loci.loc[int(np.argmax(lod))]
    qtl_cm = linkage_map.table.set_index("marker").at["1_4000000", "cM"]
    assert peak["chrom"] == "1"
    assert abs(peak["cM"] - qtl_cm) < 10
    assert lod.max() > 10

    both = cim(genoprobs, np.column_stack([y, y]), cofactors=[], window=10.0)
    assert both.shape == (genoprobs.n_loci, 2)
    assert np.allclose(both[:, 0], lod)


def test_cofactors_inside_window_are_dropped(genoprobs, phenotypes):
    y = phenotypes.loc[genoprobs.individuals, "DM"].to_numpy()
    loci = genoprobs.loci
    cofactor = int(loci.index[loci["locus"] == "1_4000000"][0])
    lod_plain = cim(genoprobs, y, cofactors=[], window=10.0)
    lod_cof = cim(genoprobs, y, cofactors=[cofactor], window=10.0)
    near = ((loci["chrom"] == "1") & ((loci["cM"] - loci.at[cofactor, "cM"]).abs() < 10.0)).to_numpy()
    assert near.any() and not near.all()
    assert np.allclose(lod_cof[near], lod_plain[near])
    assert not np.allclose(lod_cof[~near], lod_plain[~near])


@pytest.mark.parametrize("params, pvalues, expected", [
    ({"ap": 1.0, "aq": 1.0, "dpq": 1.0}, {"ap": 1e-6, "aq": 1e-6, "dpq": 1e-6}, "3:1"),
    ({"ap": 1.0, "aq": -1.0, "dpq": 0.0}, {"ap": 1e-6, "aq": 1e-6, "dpq": 0.5}, "1:2:1"),
    ({"ap": 2.0, "aq": 0.3, "dpq": 0.0}, {"ap": 1e-6, "aq": 1e-3, "dpq": 0.5}, "1:1:1:1"),
    ({"ap": 1.0, "aq": 0.0, "dpq": 0.0}, {"ap": 1e-6, "aq": 0.5, "dpq": 0.5}, "1:1"),
    ({"ap": 1.0, "aq": 0.0, "dpq": 1.0}, {"ap": 1e-6, "aq": 0.5, "dpq": 1e-6}, "1:2:1"),
    ({"ap": 0.0, "aq": 1.0, "dpq": 1.0}, {"ap": 0.5, "aq": 1e-6, "dpq": 1e-6}, "1:2:1"),
    ({"ap": 1.0, "aq": 1.0, "dpq": 0.5}, {"ap": 1e-6, "aq": 1e-6, "dpq": 1e-6}, "1:2:1"),
    ({"ap": 0.05, "aq": 0.05, "dpq": 0.05}, {"ap": 0.5, "aq": 0.5, "dpq": 0.5}, "1:1"),
])
def test_segregation_pattern(params, pvalues, expected):
    bse = pd.Series({e: 0.1 for e in EFFECTS})
    assert segregation_pattern(pd.Series(params), bse, pd.Series(pvalues)) == expected


def test_class_groups_follow_class_means():
    bse = pd.Series({e: 0.1 for e in EFFECTS})
    params = pd.Series({"ap": 1.0, "aq": 0.0, "dpq": 1.0})
    pvalues = pd.Series({"ap": 1e-6, "aq": 0.5, "dpq": 1e-6})
    groups = class_groups(params, bse, pvalues)
    assert groups == [["bc"], ["ad", "bd"], ["ac"]] or groups == [["bc"], ["bd", "ad"], ["ac"]]
    wide = pd.Series({e: 1.0 for e in EFFECTS})
    assert len(class_groups(pd.Series({"ap": 1.0, "aq": 0.0, "dpq": 0.0}), wide, pvalues)) == 1


def test_support_interval():
    profile = pd.DataFrame({"cM": [0, 1, 2, 3, 4, 5], "lod": [0.5, 2.0, 5.0, 4.0, 3.0, 1.0]})
    assert support_interval(profile, 2, lod_drop=1.5) == (2.0, 3.0)
    assert support_interval(profile, 2, lod_drop=2.5) == (2.0, 4.0)


def test_scan_and_save(tmp_path, genoprobs, phenotypes):
    cache = ArtifactCache(str(tmp_path / "cache"))
    scanner = QTL(n_perm=50, seed=1, cache=cache)
    results = scanner.scan(genoprobs, phenotypes)
    assert set(results) == {"DM", "NOISE"}

    dm = results["DM"]
    assert dm.n == len(genoprobs.individuals)
    assert 0 < dm.threshold < 10
    assert len(dm.peaks) >= 1
    top = dm.peaks.sort_values("lod").iloc[-1]
    assert top["chrom"] == "1"
    assert top["ci_left"] <= top["cM"] <= top["ci_right"]
    assert 20 < top["r2"] <= 100
    assert top["ap_pvalue"] < 0.01
    assert top["pattern"] in {"1:1", "1:1:1:1", "1:2:1", "3:1"}

    profile_path, peaks_path = scanner.save(results, str(tmp_path), "fam")
    profile = pd.read_csv(profile_path)
    assert set(profile["trait"]) == {"DM", "NOISE"}
    assert {"threshold", "lod", "locus", "cM"} <= set(profile.columns)
    peaks = pd.read_csv(peaks_path)
    assert (peaks["trait"] == "DM").sum() == len(dm.peaks)

    cached = [f for f in os.listdir(tmp_path / "cache") if f.startswith("qtl_perm.DM")]
    assert len(cached) == 1
    again = QTL(n_perm=50, seed=1, cache=cache).scan_trait(genoprobs, phenotypes, "DM")
    assert again.threshold == dm.threshold


def test_scan_rejects_unknown_trait_and_small_samples(genoprobs, phenotypes):
    scanner = QTL(n_perm=5)
    with pytest.raises(ValueError, match="not found"):
        scanner.scan(genoprobs, phenotypes, ["HI"])
    few = phenotypes.iloc[:5]
    with pytest.raises(ValueError, match="progeny"):
        scanner.scan_trait(genoprobs, few, "DM")
