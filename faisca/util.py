from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Union

FORMATS = ("csv", "json", "parquet", "delta", "avro", "orc")

_EXTENSIONS = {
    ".csv": "csv",
    ".json": "json",
    ".jsonl": "json",
    ".parquet": "parquet",
    ".avro": "avro",
    ".orc": "orc",
}

# file extension used for part files written by a sink
PART_EXTENSIONS = {
    "csv": ".csv",
    "json": ".json",
    "parquet": ".parquet",
    "avro": ".avro",
    "orc": ".orc",
}


def _is_probably_url(s: str) -> bool:
    return s.startswith("http://") or s.startswith("https://") or s.startswith("s3://")


def _as_str(uri: Union[str, os.PathLike]) -> str:
    return os.fspath(uri) if isinstance(uri, os.PathLike) else uri


def _norm_path(p: str, *, base_dir: Optional[Path]) -> str:
    """Normalize a URI/path relative to a base directory (when provided).

    - Leaves absolute paths and URLs unchanged.
    - If base_dir is provided and p is relative, returns an absolute resolved path.
    """
    if not isinstance(p, str) or not p:
        return p
    if _is_probably_url(p):
        return p
    pp = Path(p)
    if pp.is_absolute():
        return str(pp)
    if base_dir is None:
        return p
    return str((base_dir / pp).resolve())


def _is_delta_dir(uri: str) -> bool:
    return os.path.isdir(os.path.join(uri, "_delta_log"))


def _infer_type_from_uri(uri: str) -> Optional[str]:
    if _is_delta_dir(uri):
        return "delta"
    # "sales.parquet/" style directories are named after their format
    ext = Path(uri.rstrip("/\\")).suffix.lower()
    if ext in _EXTENSIONS:
        return _EXTENSIONS[ext]
    if ext == ".delta":
        return "delta"
    return None


def _is_hidden(name: str) -> bool:
    # _SUCCESS, _delta_log, .crc files and friends
    return name.startswith(".") or name.startswith("_")
