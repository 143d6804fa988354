import numpy as np
import pandas as pd

from fullsib.cache import ArtifactCache, fingerprint


def test_fingerprint_is_stable_and_content_sensitive():
    df = pd.DataFrame({"a": [1, 2, 3]}, index=["x", "y", "z"])
    arr = np.arange(6).reshape(2, 3)
    key = fingerprint(df, arr, {"tol": 1e-4})
    assert key == fingerprint(df.copy(), arr.copy(), {"tol": 1e-4})
    assert key != fingerprint(df.assign(a=[1, 2, 4]), arr, {"tol": 1e-4})
    assert key != fingerprint(df, arr.reshape(3, 2), {"tol": 1e-4})
    assert key != fingerprint(df, arr, {"tol": 1e-3})
    assert key != fingerprint(df.rename(columns={"a": "b"}), arr, {"tol": 1e-4})


def test_fingerprint_accepts_series():
    s = pd.Series([1.0, 2.0], name="DM")
    assert fingerprint(s) != fingerprint(s.rename("FYLD"))


def test_cache_computes_once(tmp_path):
    cache = ArtifactCache(str(tmp_path / "cache"))
    calls = []

    def compute():
        calls.append(1)
        return {"value": 42}

    assert cache.get_or_compute("thing", "k1", compute) == {"value": 42}
    assert cache.get_or_compute("thing", "k1", compute) == {"value": 42}
    assert len(calls) == 1
    cache.get_or_compute("thing", "k2", compute)
    assert len(calls) == 2


def test_recompute_and_disabled_cache(tmp_path):
    calls = []

    def compute():
        calls.append(1)
        return len(calls)

    ArtifactCache(str(tmp_path)).get_or_compute("x", "k", compute)
    assert ArtifactCache(str(tmp_path), recompute=True).get_or_compute("x", "k", compute) == 2
    disabled = ArtifactCache()
    assert disabled.path("x", "k") is None
    disabled.get_or_compute("x", "k", compute)
    disabled.get_or_compute("x", "k", compute)
    assert len(calls) == 4


def test_artifacts_are_joblib_files(tmp_path):
    import joblib

    cache = ArtifactCache(str(tmp_path))
    table = pd.DataFrame({"cM": [0.0, 12.5]}, index=["1_100", "1_900"])
    path = cache.store("linkage_map", "abc", table)
    assert path.endswith("linkage_map.abc.joblib")
    pd.testing.assert_frame_equal(joblib.load(path), table)
    pd.testing.assert_frame_equal(cache.load("linkage_map", "abc"), table)
