"""
Experiment configuration.

Config files are Python modules defining a module-level ``config`` dict, e.g.

    config = {
        "device": "cpu",
        "dtype": "complex128",
        "hilbert": {"type": "spin", "size": 8, "s": 1.0},
        "model": {"alpha": 2, "use_visible_bias": True, "seed": 0},
    }

JSON files holding the same dict are accepted too. Missing keys are filled
from `DEFAULT_CONFIG`.
"""

from __future__ import annotations

import copy
import json
import runpy
from pathlib import Path
from typing import Any, Dict, Union

DEFAULT_CONFIG: Dict[str, Any] = {
    "device": "cpu",  # "auto" | "cpu" | "cuda:0" | "mps"
    "dtype": "complex128",  # "complex64" | "complex128"

    "hilbert": {
        "type": "custom",  # "custom" | "spin" | "boson"
        "size": 4,
        "local_states": [0.0, 1.0],
    },

    "model": {
        "nhidden": 0,
        "alpha": 1,
        "use_visible_bias": True,
        "use_hidden_bias": True,
        "sigma": 0.01,
        "seed": None,
    },

    "check": {
        "n_samples": 100,
        "max_changes": 2,
        "n_candidates": 4,
        "seed": 0,
        "tolerance": 1e-8,
    },
}

TEMPLATE = '''"""multirbm experiment configuration."""

config = {
    "device": "cpu",  # "auto" | "cpu" | "cuda:0" | "mps"
    "dtype": "complex128",

    "hilbert": {
        "type": "spin",  # "custom" (needs "local_states") | "spin" ("s") | "boson" ("n_max")
        "size": 8,
        "s": 1.0,
    },

    "model": {
        "nhidden": 0,
        "alpha": 2,
        "use_visible_bias": True,
        "use_hidden_bias": True,
        "sigma": 0.01,
        "seed": 0,
    },

    "check": {
        "n_samples": 100,
        "max_changes": 2,
        "n_candidates": 4,
        "seed": 0,
        "tolerance": 1e-8,
    },
}
'''


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def with_defaults(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return `config` with every missing key taken from `DEFAULT_CONFIG`."""
    cfg = _merge(DEFAULT_CONFIG, config)
    # An explicit non-custom Hilbert type must not inherit the default local_states.
    if cfg["hilbert"].get("type") != "custom" and "local_states" not in config.get("hilbert", {}):
        cfg["hilbert"].pop("local_states", None)
    return cfg


def load_config(path: Union[str, Path]) -> Dict[str, Any]:
    """Load a ``.py`` (module-level ``config`` dict) or ``.json`` config file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    if path.suffix == ".json":
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    else:
        namespace = runpy.run_path(str(path))
        if "config" not in namespace:
            raise KeyError(f"Config file {path} does not define a 'config' dict.")
        raw = namespace["config"]

    if not isinstance(raw, dict):
        raise TypeError(f"'config' in {path} must be a dict, got {type(raw).__name__}.")
    return with_defaults(raw)


def write_config_template(path: Union[str, Path]) -> Path:
    """Write a starter config file; refuse to overwrite an existing one."""
    path = Path(path)
    if path.exists():
        raise FileExistsError(f"Config file already exists: {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(TEMPLATE, encoding="utf-8")
    return path
