"""Numerically stable log-cosh reductions for complex pre-activations."""

from __future__ import annotations

import math

import torch

_LOG2 = math.log(2.0)


def log_cosh(z: torch.Tensor) -> torch.Tensor:
    """Elementwise log(cosh(z)) for complex z.

    Uses cosh(z) = cosh(-z) to move z to the right half-plane, then
    log(cosh(z)) = z + log(1 + exp(-2z)) - log(2), where |exp(-2z)| <= 1.
    """
    z = torch.where(z.real < 0, -z, z)
    return z + torch.log(1.0 + torch.exp(-2.0 * z)) - _LOG2


def sum_log_cosh(z: torch.Tensor) -> torch.Tensor:
    """Sum of log(cosh(z)) over the last dimension."""
    return log_cosh(z).sum(dim=-1)
