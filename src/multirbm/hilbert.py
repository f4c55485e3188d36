"""
Local Hilbert spaces: a fixed number of sites sharing one ordered set of
admissible local values.

The ansatz only needs three things from a Hilbert space:
    size          number of sites (nv)
    local_size    number of admissible values per site (ls)
    local_states  the admissible values, in canonical order
"""

from __future__ import annotations

from fractions import Fraction
from typing import Any, Dict, Optional, Protocol, Sequence, Tuple

import torch


class Hilbert(Protocol):
    @property
    def size(self) -> int:
        ...

    @property
    def local_size(self) -> int:
        ...

    @property
    def local_states(self) -> Tuple[float, ...]:
        ...


class LocalHilbert:
    """Hilbert space of `size` sites, each taking one of `local_states`."""

    def __init__(self, local_states: Sequence[float], size: int) -> None:
        states = tuple(float(s) for s in local_states)
        if not states:
            raise ValueError("local_states must contain at least one value.")
        if len(set(states)) != len(states):
            raise ValueError(f"local_states must be unique, got {list(states)}.")
        if int(size) <= 0:
            raise ValueError(f"Hilbert space size must be positive, got {size}.")

        self._local_states = states
        self._size = int(size)

    @property
    def size(self) -> int:
        return self._size

    @property
    def local_size(self) -> int:
        return len(self._local_states)

    @property
    def local_states(self) -> Tuple[float, ...]:
        return self._local_states

    def random_state(
        self,
        generator: Optional[torch.Generator] = None,
        dtype: torch.dtype = torch.float64,
    ) -> torch.Tensor:
        """Draw a configuration with every site uniform over the local states."""
        idx = torch.randint(self.local_size, (self.size,), generator=generator)
        return torch.tensor(self._local_states, dtype=dtype)[idx]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LocalHilbert):
            return NotImplemented
        return self._size == other._size and self._local_states == other._local_states

    def __hash__(self) -> int:
        return hash((self._size, self._local_states))

    def __repr__(self) -> str:
        return f"LocalHilbert(local_states={list(self._local_states)}, size={self._size})"


def spin_hilbert(size: int, s: float = 0.5) -> LocalHilbert:
    """Spin-s sites with values -2s, -2s+2, ..., 2s."""
    two_s = Fraction(s) * 2
    if two_s.denominator != 1 or two_s <= 0:
        raise ValueError(f"Spin must be a positive multiple of 1/2, got {s}.")
    n = int(two_s)
    return LocalHilbert([float(-n + 2 * k) for k in range(n + 1)], size)


def boson_hilbert(size: int, n_max: int) -> LocalHilbert:
    """Bosonic sites with occupations 0, 1, ..., n_max."""
    if int(n_max) < 1:
        raise ValueError(f"n_max must be at least 1, got {n_max}.")
    return LocalHilbert([float(k) for k in range(int(n_max) + 1)], size)


def hilbert_from_config(config: Dict[str, Any]) -> LocalHilbert:
    """Build a Hilbert space from a full app config or its "hilbert" section."""
    cfg = config.get("hilbert", config)

    kind = cfg.get("type", "custom")
    if "size" not in cfg:
        raise KeyError("Hilbert config requires a 'size' entry.")
    size = int(cfg["size"])

    if kind == "custom":
        if "local_states" not in cfg:
            raise KeyError("Custom Hilbert config requires 'local_states'.")
        return LocalHilbert(cfg["local_states"], size)
    if kind == "spin":
        return spin_hilbert(size, cfg.get("s", 0.5))
    if kind == "boson":
        return boson_hilbert(size, cfg.get("n_max", 1))

    raise ValueError(f"Unknown Hilbert space type={kind!r}")
