"""
JSON documents for ansatz checkpoints.

Complex numbers are stored as ``[re, im]`` pairs; vectors as lists of those;
matrices as lists of rows. Plain real numbers are accepted when decoding.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Sequence, Union

import torch

PathLike = Union[str, Path]


def write_document(state: Dict[str, Any], path: PathLike) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(state, f, indent=2)


def read_document(path: PathLike) -> Dict[str, Any]:
    with open(Path(path), "r", encoding="utf-8") as f:
        doc = json.load(f)
    if not isinstance(doc, dict):
        raise ValueError(f"Expected a JSON object in {path}, got {type(doc).__name__}.")
    return doc


def encode_tensor(t: torch.Tensor) -> list:
    """Nested lists of [re, im] pairs for complex tensors, plain floats otherwise."""
    t = t.detach().cpu()
    if t.is_complex():
        return torch.view_as_real(t.resolve_conj()).tolist()
    return t.tolist()


def decode_tensor(data: Any, dtype: torch.dtype, shape: Sequence[int]) -> torch.Tensor:
    """Inverse of `encode_tensor` for a tensor of known `shape`.

    Raises ValueError when `data` is ragged or does not have `shape` (or
    `shape` plus a trailing pair axis for complex targets).
    """
    shape = tuple(int(n) for n in shape)
    t = torch.as_tensor(data, dtype=torch.float64)
    if dtype.is_complex and tuple(t.shape) == shape + (2,):
        return torch.view_as_complex(t.contiguous()).to(dtype)
    if tuple(t.shape) != shape:
        raise ValueError(f"Expected shape {shape}, got {tuple(t.shape)}.")
    return t.to(dtype)
