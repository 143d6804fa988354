import copy
import json
import os
from typing import Any, Dict, Optional

from fullsib.log import logger


# Default parameters for every pipeline stage. A JSON config passed to
# `fullsib run` is merged over these values section by section.
DEFAULTS: Dict[str, Dict[str, Any]] = {
    "input": {
        "phenotypes": None,
        "vcf": None,
        "pedigree": None,
    },
    "phenotype": {
        "trial_col": "trial",
        "rep_col": "rep",
        "row_col": "row",
        "col_col": "col",
        "genotype_col": "genotype",
        "traits": [],
        "progeny_prefix": "C4",
    },
    "family": {
        "family": "159",
        "parents": ["759", "VEN25"],
    },
    "linkage": {
        "missing_threshold": 0.25,
        "segregation_alpha": 0.05,
        "lod_threshold": 3.0,
        "max_rf": 0.5,
        "tol": 1e-4,
        "error": 0.05,
        "map_function": "haldane",
        "max_iter": 1000,
    },
    "qtl": {
        "value_col": "blue",
        "step": 1.0,
        "window": 10.0,
        "max_cofactors": None,
        "n_perm": 1000,
        "alpha": 0.05,
        "seed": 42,
        "lod_drop": 1.5,
    },
    "gwas": {
        "value_col": "blue",
        "max_missing": 0.1,
        "min_maf": 0.05,
        "impute": True,
        "fill_value": 1,
        "models": ["GLM", "MLM", "FarmCPU"],
        "n_pcs": {"GLM": 5, "MLM": 3, "FarmCPU": 3},
        "n_perm": 100,
        "alpha": 0.05,
        "seed": 42,
        "max_loop": 10,
        "method_bin": "static",
    },
    "output": {
        "out_dir": ".",
        "out_name": "fullsib",
        "cache_dir": None,
        "recompute": False,
        "format": "png",
    },
}


def merge_config(base: Dict[str, Dict[str, Any]], override: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Merge a user config over a base config, rejecting unknown sections or keys."""
    merged = copy.deepcopy(base)
    for section, values in override.items():
        if section not in merged:
            raise ValueError(
                f"Unknown config section '{section}'. Valid sections: {sorted(merged)}"
            )
        if not isinstance(values, dict):
            raise ValueError(f"Config section '{section}' must be a JSON object.")
        unknown = set(values) - set(merged[section])
        if unknown:
            raise ValueError(
                f"Unknown key(s) in config section '{section}': {sorted(unknown)}"
            )
        for key, value in values.items():
            if isinstance(merged[section][key], dict) and isinstance(value, dict):
                merged[section][key] = {**merged[section][key], **value}
            else:
                merged[section][key] = value
    return merged


def load_config(path: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
    """Load a JSON config file and merge it over DEFAULTS."""
    if path is None:
        return copy.deepcopy(DEFAULTS)
    candidate = os.path.expanduser(path)
    if not os.path.isfile(candidate):
        raise FileNotFoundError(f"Config file not found: {candidate}")
    with open(candidate, "r", encoding="utf-8") as handle:
        try:
            user = json.load(handle)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Config file '{candidate}' is not valid JSON: {exc}") from exc
    if not isinstance(user, dict):
        raise ValueError("Config file must contain a JSON object at the top level.")
    logger.info(f"Loaded config from {candidate}")
    return merge_config(DEFAULTS, user)
