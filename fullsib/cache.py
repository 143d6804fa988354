import hashlib
import json
import os
from typing import Any, Callable, Optional

import joblib
import numpy as np
import pandas as pd

from fullsib.log import logger


def _update_digest(digest, part: Any):
    if isinstance(part, (pd.DataFrame, pd.Series)):
        digest.update(np.asarray(pd.util.hash_pandas_object(part, index=True)).tobytes())
        labels = part.columns if isinstance(part, pd.DataFrame) else [part.name]
        digest.update(json.dumps([str(c) for c in labels]).encode("utf-8"))
    elif isinstance(part, np.ndarray):
        digest.update(str(part.shape).encode("utf-8"))
        digest.update(str(part.dtype).encode("utf-8"))
        digest.update(np.ascontiguousarray(part).tobytes())
    else:
        digest.update(json.dumps(part, sort_keys=True, default=str).encode("utf-8"))


def fingerprint(*parts: Any) -> str:
    """Hash input tables, arrays and JSON-serializable parameters into a short key."""
    digest = hashlib.sha256()
    for part in parts:
        _update_digest(digest, part)
    return digest.hexdigest()[:16]


class ArtifactCache:
    """joblib store for expensive artifacts keyed by an input fingerprint.

    A disabled cache (``cache_dir=None``) always computes.
    """

    def __init__(self, cache_dir: Optional[str] = None, recompute: bool = False):
        self.cache_dir = cache_dir
        self.recompute = recompute
        if cache_dir is not None:
            os.makedirs(cache_dir, exist_ok=True)

    def path(self, name: str, key: str) -> Optional[str]:
        if self.cache_dir is None:
            return None
        return os.path.join(self.cache_dir, f"{name}.{key}.joblib")

    def load(self, name: str, key: str):
        path = self.path(name, key)
        if path is None or not os.path.exists(path):
            return None
        return joblib.load(path)

    def store(self, name: str, key: str, obj: Any) -> Optional[str]:
        path = self.path(name, key)
        if path is None:
            return None
        joblib.dump(obj, path)
        logger.info(f"Cached {name} to {path}")
        return path

    def get_or_compute(self, name: str, key: str, compute: Callable[[], Any]):
        """Return the cached artifact for (name, key), computing and storing it on a miss."""
        if not self.recompute:
            cached = self.load(name, key)
            if cached is not None:
                logger.info(f"Loaded cached {name} (key {key})")
                return cached
        logger.info(f"Computing {name} (key {key})...")
        result = compute()
        self.store(name, key, result)
        return result
