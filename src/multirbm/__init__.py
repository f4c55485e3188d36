"""Multi-valued Restricted Boltzmann Machine wavefunction ansatz."""

from .errors import InvalidConfigurationValue, LookupTypeMismatch, StructuralMismatch
from .hilbert import LocalHilbert, boson_hilbert, hilbert_from_config, spin_hilbert
from .model import MultivalRBM, ThetaLookup, hidden_units

__all__ = [
    "MultivalRBM",
    "ThetaLookup",
    "hidden_units",
    "LocalHilbert",
    "spin_hilbert",
    "boson_hilbert",
    "hilbert_from_config",
    "StructuralMismatch",
    "LookupTypeMismatch",
    "InvalidConfigurationValue",
]

__version__ = "0.1.0"
