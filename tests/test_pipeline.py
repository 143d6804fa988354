import json
import os

import pandas as pd
import pytest

from fullsib.config import DEFAULTS, merge_config
from fullsib.pipeline import ArtifactStore, Pipeline


def _config(tmp_path, vcf_path=None, phenotype_path=None, **output):
    return merge_config(DEFAULTS, {
        "input": {"vcf": vcf_path, "phenotypes": phenotype_path},
        "phenotype": {"traits": ["DM", "FYLD"]},
        "qtl": {"n_perm": 30},
        "gwas": {"n_perm": 10, "models": ["GLM", "MLM"]},
        "output": {"out_dir": str(tmp_path / "out"), "out_name": "fam159", **output},
    })


def test_artifact_store_is_write_once():
    store = ArtifactStore()
    store.put("map", 1)
    assert "map" in store
    assert store.get("map") == 1
    with pytest.raises(RuntimeError):
        store.put("map", 2)
    with pytest.raises(KeyError):
        store.get("qtl")
    assert store.names() == ["map"]


def test_stage_order(tmp_path):
    pipeline = Pipeline(_config(tmp_path))
    order = pipeline.order()
    assert order.index("genotypes") < order.index("family") < order.index("linkage") < order.index("qtl")
    assert order.index("phenotypes") < order.index("qtl")
    assert order[-1] == "report"
    assert pipeline.order(["linkage"]) == ["genotypes", "family", "linkage"]
    assert set(pipeline.order(["gwas"])) == {"genotypes", "phenotypes", "gwas"}
    with pytest.raises(ValueError, match="Unknown stage"):
        pipeline.order(["annotation"])


def test_add_stage_rejects_cycles(tmp_path):
    pipeline = Pipeline(_config(tmp_path))
    with pytest.raises(ValueError, match="cycle"):
        pipeline.add_stage("genotypes", lambda: None, after=["qtl"])


def test_missing_input_is_reported(tmp_path):
    pipeline = Pipeline(_config(tmp_path))
    with pytest.raises(ValueError, match="input.vcf"):
        pipeline.run(["genotypes"])


def test_family_stage_requires_two_parents(tmp_path, vcf_path):
    config = _config(tmp_path, vcf_path=vcf_path)
    config["family"]["parents"] = ["759"]
    with pytest.raises(ValueError, match="exactly two parents"):
        Pipeline(config).run(["family"])


def test_full_run(tmp_path, vcf_path, phenotype_path):
    cache_dir = str(tmp_path / "cache")
    pipeline = Pipeline(_config(tmp_path, vcf_path, phenotype_path, cache_dir=cache_dir))
    store = pipeline.run()
    out = tmp_path / "out"

    assert set(store.names()) >= {"phenotypes", "blues", "heritability", "genotypes", "family",
                                  "segregation", "linkage_map", "qtl", "gwas", "report"}
    for suffix in ("blues.csv", "h2.csv", "family.tsv", "raw", "segregation.csv", "linkage_check.csv",
                   "map.csv", "map_summary.csv", "lod.csv", "qtl.csv", "gwas_summary.csv", "report.html",
                   "report_summary.csv", "map.png", "DM.lod.png", "DM.GLM.manhattan.png", "FYLD.MLM.qq.png"):
        assert (out / f"fam159.{suffix}").exists(), suffix

    qtl = pd.read_csv(out / "fam159.qtl.csv", dtype={"chrom": str})
    assert "1" in set(qtl.loc[qtl["trait"] == "DM", "chrom"])
    summary = pd.read_csv(out / "fam159.gwas_summary.csv")
    assert set(zip(summary["trait"], summary["model"])) == {
        ("DM", "GLM"), ("DM", "MLM"), ("FYLD", "GLM"), ("FYLD", "MLM"),
    }
    assert any(f.startswith("linkage_map.") for f in os.listdir(cache_dir))

    report = (out / "fam159.report.html").read_text()
    assert "fam159" in report and "DM" in report

    # a second run reuses the cached map
    again = Pipeline(_config(tmp_path, vcf_path, phenotype_path, cache_dir=cache_dir)).run(["linkage"])
    pd.testing.assert_frame_equal(again.get("linkage_map").table, store.get("linkage_map").table)


def test_config_file_drives_cli_run(tmp_path, vcf_path):
    from fullsib.fullsib import main

    config = {
        "input": {"vcf": vcf_path},
        "output": {"out_dir": str(tmp_path / "cli"), "out_name": "fam"},
    }
    path = tmp_path / "run.json"
    path.write_text(json.dumps(config))
    main(["run", "--config", str(path), "--stages", "linkage"])
    assert (tmp_path / "cli" / "fam.map.csv").exists()
    assert not (tmp_path / "cli" / "fam.blues.csv").exists()
