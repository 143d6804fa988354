import json

import pytest

from fullsib.config import DEFAULTS, load_config, merge_config


def test_load_config_without_path_returns_copy_of_defaults():
    config = load_config()
    assert config == DEFAULTS
    config["qtl"]["step"] = 5.0
    assert DEFAULTS["qtl"]["step"] == 1.0


def test_merge_overrides_values_and_merges_nested_dicts():
    merged = merge_config(DEFAULTS, {"gwas": {"n_pcs": {"MLM": 0}, "n_perm": 10}})
    assert merged["gwas"]["n_perm"] == 10
    assert merged["gwas"]["n_pcs"] == {"GLM": 5, "MLM": 0, "FarmCPU": 3}
    assert DEFAULTS["gwas"]["n_pcs"]["MLM"] == 3


@pytest.mark.parametrize("override", [
    {"mapping": {"step": 2}},
    {"qtl": {"stepsize": 2}},
    {"qtl": 2},
])
def test_merge_rejects_unknown_or_malformed_entries(override):
    with pytest.raises(ValueError):
        merge_config(DEFAULTS, override)


def test_load_config_reads_json(tmp_path):
    path = tmp_path / "run.json"
    path.write_text(json.dumps({"family": {"family": "160", "parents": ["A", "B"]}}))
    config = load_config(str(path))
    assert config["family"] == {"family": "160", "parents": ["A", "B"]}
    assert config["linkage"] == DEFAULTS["linkage"]


def test_load_config_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "absent.json"))
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(ValueError):
        load_config(str(bad))
    listed = tmp_path / "list.json"
    listed.write_text("[1, 2]")
    with pytest.raises(ValueError):
        load_config(str(listed))
