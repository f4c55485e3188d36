"""Device and dtype resolution for config values."""

from __future__ import annotations

from typing import Union

import torch


def resolve_device(device: Union[str, torch.device, None] = "auto") -> torch.device:
    """Resolve "auto" to the best available device; pass anything else to torch."""
    if isinstance(device, torch.device):
        return device
    if device is None or device == "auto":
        if torch.cuda.is_available():
            return torch.device("cuda")
        return torch.device("cpu")
    return torch.device(device)


def resolve_dtype(dtype: Union[str, torch.dtype]) -> torch.dtype:
    """Map "complex64" / "complex128" (or a torch dtype) to a complex torch dtype."""
    if isinstance(dtype, torch.dtype):
        resolved = dtype
    else:
        resolved = getattr(torch, str(dtype), None)
        if not isinstance(resolved, torch.dtype):
            raise ValueError(f"Unknown dtype={dtype!r}")
    if not resolved.is_complex:
        raise ValueError(f"Parameter dtype must be complex, got {dtype!r}")
    return resolved
