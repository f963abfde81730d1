"""
Output path helpers for registration results.

Keeps the CLI naming of registered meshes and correspondence dumps in one place.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

PathLike = Union[str, Path]

REGISTERED_SUFFIX = ".registered.ply"
ALIGNED_SUFFIX = ".aligned.ply"
CORRESPONDENCE_SUFFIX = ".correspondences.txt"


def _as_path(value: PathLike) -> Path:
    return value if isinstance(value, Path) else Path(value)


def _resolve_output_path(input_path: PathLike, output_path: Optional[PathLike], suffix: str) -> Path:
    if output_path:
        return _as_path(output_path)
    return _as_path(input_path).with_suffix(suffix)


def registered_mesh_path(input_path: PathLike, output_path: Optional[PathLike] = None) -> Path:
    return _resolve_output_path(input_path, output_path, REGISTERED_SUFFIX)


def aligned_mesh_path(input_path: PathLike, output_path: Optional[PathLike] = None) -> Path:
    return _resolve_output_path(input_path, output_path, ALIGNED_SUFFIX)


def correspondence_path(input_path: PathLike, output_path: Optional[PathLike] = None) -> Path:
    return _resolve_output_path(input_path, output_path, CORRESPONDENCE_SUFFIX)


def sibling_path(primary: PathLike, suffix: str) -> Path:
    """Path next to `primary` sharing its stem, e.g. for the aligned mesh of an explicit --output."""
    p = _as_path(primary)
    stem = p.name.split(".")[0] or p.stem
    return p.with_name(stem + suffix)
