"""Exceptions raised by the multi-valued RBM ansatz."""

from __future__ import annotations


class StructuralMismatch(ValueError):
    """A saved document does not fit this ansatz or its Hilbert space."""


class LookupTypeMismatch(TypeError):
    """A lookup handle of the wrong kind was passed to the ansatz."""


class InvalidConfigurationValue(KeyError):
    """A configuration holds a value outside the admissible local states."""

    def __str__(self) -> str:
        # KeyError repr()s its message; keep it readable.
        return str(self.args[0]) if self.args else ""
