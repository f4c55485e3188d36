"""
Restricted Boltzmann Machine wavefunction ansatz over many-valued sites.

    log psi(v) = a . vtilde(v) + sum_j log cosh(theta_j(v))
    theta(v)   = W^T vtilde(v) + b

vtilde is the one-hot expansion of a configuration v: site i owns a block of
`ls` entries holding a single 1 at the index of v[i] among the Hilbert
space's local states.

- Complex parameters (the ansatz is holomorphic)
- Incremental theta updates for few-site changes (Monte Carlo moves)
- Batched log-amplitude differences sharing one base evaluation
- Analytic log-derivatives in the flat parameter order

Flat parameter order (also used by `der_log`):

    [a if use_visible_bias] + [b if use_hidden_bias] + [W row-major]

Scratch buffers are owned by the instance and reused between calls, so one
instance must not be driven from several threads at once.
"""

from __future__ import annotations

import math
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import torch
import torch.nn as nn

from .errors import InvalidConfigurationValue, LookupTypeMismatch, StructuralMismatch
from .functions import sum_log_cosh
from .hilbert import Hilbert, hilbert_from_config
from .persistence import (
    PathLike,
    decode_tensor,
    encode_tensor,
    read_document,
    write_document,
)
from .utils import resolve_device, resolve_dtype

NAME = "MultivalRBM"

# Site values match a local state up to float32 rounding.
STATE_RTOL = 1e-6
STATE_ATOL = 1e-7


def hidden_units(nhidden: int, alpha: float, nv: int) -> int:
    """Number of hidden units: the larger of `nhidden` and `alpha * nv`."""
    # guard alpha * nv against float error just below an integer
    return max(int(nhidden), math.floor(alpha * nv + 1e-9))


class ThetaLookup:
    """Pre-activations theta cached for one configuration.

    Valid for the configuration it was built from plus every change applied
    to it through `MultivalRBM.update_lookup`.
    """

    __slots__ = ("theta",)

    def __init__(self, theta: torch.Tensor) -> None:
        self.theta = theta

    def __repr__(self) -> str:
        return f"ThetaLookup(nh={self.theta.numel()})"


def _theta_of(lookup: Any) -> torch.Tensor:
    if not isinstance(lookup, ThetaLookup):
        raise LookupTypeMismatch(
            f"Expected a ThetaLookup handle, got {type(lookup).__name__}."
        )
    return lookup.theta


def _document_nhidden(doc: Dict[str, Any], nv: int) -> int:
    """Hidden size a saved document asks for, or 1 when it gives no usable one.

    Malformed sizes are left for `MultivalRBM.load_document` to report.
    """
    try:
        if "Nhidden" in doc:
            nh = int(doc["Nhidden"])
        else:
            nh = hidden_units(0, float(doc.get("Alpha", 0)), nv)
    except (TypeError, ValueError):
        return 1
    return nh if nh > 0 else 1


class MultivalRBM(nn.Module):
    def __init__(
        self,
        hilbert: Hilbert,
        nhidden: int = 0,
        alpha: float = 0,
        use_visible_bias: bool = True,
        use_hidden_bias: bool = True,
        *,
        sigma: float = 0.01,
        seed: Optional[int] = None,
        dtype: torch.dtype = torch.complex128,
        device: Optional[torch.device] = None,
        log_fn: Optional[Callable[[str], None]] = None,
    ) -> None:
        super().__init__()

        if not dtype.is_complex:
            raise ValueError(f"Parameter dtype must be complex, got {dtype}.")

        self.hilbert = hilbert
        self.param_dtype = dtype
        self._log = log_fn if log_fn is not None else print

        self.nv = int(hilbert.size)
        self.ls = int(hilbert.local_size)
        self.nh = hidden_units(nhidden, alpha, self.nv)
        self.usea = bool(use_visible_bias)
        self.useb = bool(use_hidden_bias)

        self._init_structure(device)
        self.init_random_parameters(sigma=sigma, seed=seed)

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        hilbert: Optional[Hilbert] = None,
        **kwargs: Any,
    ) -> "MultivalRBM":
        """Build from a full app config (with "model"/"hilbert" keys) or a model-only dict.

        A model-only dict needs an explicit `hilbert`.
        """
        model_cfg = config.get("model", config)
        if hilbert is None:
            hilbert = hilbert_from_config(config)

        kwargs.setdefault("dtype", resolve_dtype(config.get("dtype", "complex128")))
        kwargs.setdefault("device", resolve_device(config.get("device", "cpu")))

        return cls(
            hilbert,
            nhidden=int(model_cfg.get("nhidden", 0)),
            alpha=float(model_cfg.get("alpha", 1)),
            use_visible_bias=bool(model_cfg.get("use_visible_bias", True)),
            use_hidden_bias=bool(model_cfg.get("use_hidden_bias", True)),
            sigma=float(model_cfg.get("sigma", 0.01)),
            seed=model_cfg.get("seed"),
            **kwargs,
        )

    @classmethod
    def from_file(cls, hilbert: Hilbert, path: PathLike, **kwargs: Any) -> "MultivalRBM":
        """Construct for `hilbert` and load parameters saved at `path`.

        The hidden size and bias flags come from the document and take
        precedence over the same keywords in `kwargs`.
        """
        doc = read_document(path)
        kwargs.update(
            nhidden=_document_nhidden(doc, hilbert.size),
            alpha=0,
            use_visible_bias=bool(doc.get("UseVisibleBias", True)),
            use_hidden_bias=bool(doc.get("UseHiddenBias", True)),
        )
        model = cls(hilbert, **kwargs)
        model.load_document(doc)
        return model

    # --------------------------------------------------
    # Structure
    # --------------------------------------------------

    def _init_structure(self, device: Optional[torch.device] = None) -> None:
        """(Re)allocate parameters and scratch for the current nv, nh, ls and bias flags.

        All parameters are zeroed.
        """
        if self.nh <= 0:
            raise ValueError(f"Number of hidden units must be positive, got {self.nh}.")

        if device is None and "W" in self._parameters:
            device = self.W.device

        n_in = self.nv * self.ls
        factory = {"dtype": self.param_dtype, "device": device}

        self.W = nn.Parameter(torch.zeros(n_in, self.nh, **factory))
        self.a = nn.Parameter(torch.zeros(n_in, **factory))
        self.b = nn.Parameter(torch.zeros(self.nh, **factory))

        self._npar = self.nv * self.nh * self.ls
        if self.usea:
            self._npar += n_in
        if self.useb:
            self._npar += self.nh

        local_states = tuple(float(s) for s in self.hilbert.local_states)
        self.register_buffer(
            "local_states",
            torch.tensor(local_states, dtype=torch.float64, device=device),
            persistent=False,
        )
        self._confindex: Dict[float, int] = {s: i for i, s in enumerate(local_states)}

        # scratch
        self.register_buffer("_vtilde", torch.zeros(n_in, **factory), persistent=False)
        self.register_buffer("_theta", torch.zeros(self.nh, **factory), persistent=False)
        self.register_buffer("_theta_new", torch.zeros(self.nh, **factory), persistent=False)

        self._log(f"RBM Multival initialized with nvisible = {self.nv} and nhidden = {self.nh}")
        self._log(f"Using visible bias = {self.usea}")
        self._log(f"Using hidden bias  = {self.useb}")
        self._log(f"Local size is      = {self.ls}")

    @property
    def nvisible(self) -> int:
        return self.nv

    @property
    def nhidden(self) -> int:
        return self.nh

    @property
    def local_size(self) -> int:
        return self.ls

    @property
    def npar(self) -> int:
        """Number of trainable parameters, i.e. the length of `get_parameters()`."""
        return self._npar

    @property
    def is_holomorphic(self) -> bool:
        return True

    # --------------------------------------------------
    # Encoding
    # --------------------------------------------------

    def _as_config(self, v: Any) -> torch.Tensor:
        v = torch.as_tensor(v, dtype=torch.float64, device=self.local_states.device)
        if v.ndim != 1 or v.shape[0] != self.nv:
            raise InvalidConfigurationValue(
                f"Configuration must have shape ({self.nv},), got {tuple(v.shape)}."
            )
        return v

    def _one_hot(self, v: torch.Tensor) -> torch.Tensor:
        """One-hot encode configurations of shape (..., nv) to (..., nv * ls)."""
        idx = (v.unsqueeze(-1) - self.local_states).abs().argmin(dim=-1)
        found = torch.isclose(v, self.local_states[idx], rtol=STATE_RTOL, atol=STATE_ATOL)
        if not bool(found.all()):
            bad = tuple(int(i) for i in torch.nonzero(~found)[0])
            raise InvalidConfigurationValue(
                f"Value {float(v[bad])} at site {bad[-1]} is not one of the "
                f"local states {self.local_states.tolist()}."
            )
        matches = torch.nn.functional.one_hot(idx, self.ls)
        return matches.reshape(*v.shape[:-1], self.nv * self.ls).to(self.param_dtype)

    def _site(self, site: int) -> int:
        site = int(site)
        if not 0 <= site < self.nv:
            raise IndexError(f"Site {site} out of range for {self.nv} visible sites.")
        return site

    def _row(self, site: int, value: Any) -> int:
        """Row of W (and entry of a) for `site` holding `value`."""
        site = self._site(site)
        value = float(value)
        idx = self._confindex.get(value)
        if idx is None:
            # nearest local state, for values rounded through float32
            target = torch.tensor(value, dtype=torch.float64, device=self.local_states.device)
            nearest = int((self.local_states - target).abs().argmin())
            if not bool(torch.isclose(target, self.local_states[nearest], rtol=STATE_RTOL, atol=STATE_ATOL)):
                raise InvalidConfigurationValue(
                    f"Value {value} at site {site} is not one of the "
                    f"local states {list(self._confindex)}."
                )
            idx = nearest
        return self.ls * site + idx

    @torch.no_grad()
    def compute_vtilde(self, v: Any, out: Optional[torch.Tensor] = None) -> torch.Tensor:
        """One-hot encoding of `v`, written into `out` (the instance scratch by default)."""
        target = self._vtilde if out is None else out
        target.copy_(self._one_hot(self._as_config(v)))
        return target

    # --------------------------------------------------
    # Pre-activations and lookups
    # --------------------------------------------------

    @torch.no_grad()
    def compute_theta(self, v: Any, out: Optional[torch.Tensor] = None) -> torch.Tensor:
        """theta = W^T vtilde(v) + b, computed from scratch."""
        target = self._theta if out is None else out
        vtilde = self.compute_vtilde(v)
        torch.addmv(self.b, self.W.t(), vtilde, out=target)
        return target

    def init_lookup(self, v: Any) -> ThetaLookup:
        theta = torch.empty(self.nh, dtype=self.param_dtype, device=self.W.device)
        return ThetaLookup(self.compute_theta(v, out=theta))

    @torch.no_grad()
    def update_lookup(
        self,
        v: Any,
        tochange: Sequence[int],
        newconf: Sequence[float],
        lookup: ThetaLookup,
    ) -> None:
        """Move `lookup` from `v` to `v` with sites `tochange` set to `newconf`.

        `v` must still hold the values before the change.
        """
        if len(tochange) == 0:
            return
        if len(tochange) != len(newconf):
            raise ValueError(
                f"tochange and newconf differ in length ({len(tochange)} != {len(newconf)})."
            )

        theta = _theta_of(lookup)
        # resolve every row before touching theta so a bad entry leaves it intact
        rows = self._change_rows(self._as_config(v), tochange, newconf)
        for old_row, new_row in rows:
            theta.sub_(self.W[old_row])
            theta.add_(self.W[new_row])

    def _change_rows(
        self,
        v: torch.Tensor,
        tochange: Sequence[int],
        newconf: Sequence[float],
    ) -> List[Tuple[int, int]]:
        """(old_row, new_row) of W for each changed site."""
        return [
            (self._row(site, v[self._site(site)]), self._row(site, new))
            for site, new in zip(tochange, newconf)
        ]

    def _apply_changes(
        self,
        v: torch.Tensor,
        tochange: Sequence[int],
        newconf: Sequence[float],
        theta: torch.Tensor,
    ) -> torch.Tensor:
        """Apply a change set to `theta` in place; return the visible-bias delta."""
        if len(tochange) != len(newconf):
            raise ValueError(
                f"tochange and newconf differ in length ({len(tochange)} != {len(newconf)})."
            )
        delta = torch.zeros((), dtype=self.param_dtype, device=theta.device)
        for old_row, new_row in self._change_rows(v, tochange, newconf):
            delta += self.a[new_row] - self.a[old_row]
            theta.sub_(self.W[old_row])
            theta.add_(self.W[new_row])
        return delta

    # --------------------------------------------------
    # Amplitudes
    # --------------------------------------------------

    def forward(self, v: Any) -> torch.Tensor:
        """Log-amplitudes for configurations of shape (nv,) or (batch, nv)."""
        v = torch.as_tensor(v, dtype=torch.float64, device=self.local_states.device)
        if v.shape[-1] != self.nv:
            raise InvalidConfigurationValue(
                f"Configurations must have {self.nv} sites, got shape {tuple(v.shape)}."
            )
        vtilde = self._one_hot(v)
        theta = vtilde @ self.W + self.b
        return vtilde @ self.a + sum_log_cosh(theta)

    @torch.no_grad()
    def log_val(self, v: Any, lookup: Optional[ThetaLookup] = None) -> torch.Tensor:
        """log psi(v); theta is taken from `lookup` when given, else computed from scratch."""
        if lookup is None:
            theta = self.compute_theta(v)
        else:
            theta = _theta_of(lookup)
            self.compute_vtilde(v)
        return torch.dot(self._vtilde, self.a) + sum_log_cosh(theta)

    @torch.no_grad()
    def log_val_diff(
        self,
        v: Any,
        tochange: Sequence[Sequence[int]],
        newconf: Sequence[Sequence[float]],
    ) -> torch.Tensor:
        """log psi(v') - log psi(v) for each candidate change set.

        Candidate k sets sites `tochange[k]` to `newconf[k]`. The base theta and
        its log-cosh sum are computed once and shared by all candidates; an
        empty change set gives exactly 0.
        """
        nconn = len(tochange)
        if len(newconf) != nconn:
            raise ValueError(
                f"tochange and newconf differ in length ({nconn} != {len(newconf)})."
            )

        v = self._as_config(v)
        diffs = torch.zeros(nconn, dtype=self.param_dtype, device=self.W.device)

        theta = self.compute_theta(v)
        logtsum = sum_log_cosh(theta)

        for k in range(nconn):
            if len(tochange[k]) == 0:
                continue
            self._theta_new.copy_(theta)
            delta = self._apply_changes(v, tochange[k], newconf[k], self._theta_new)
            diffs[k] = delta + sum_log_cosh(self._theta_new) - logtsum

        return diffs

    @torch.no_grad()
    def log_val_diff_lookup(
        self,
        v: Any,
        tochange: Sequence[int],
        newconf: Sequence[float],
        lookup: ThetaLookup,
    ) -> torch.Tensor:
        """Single-candidate log psi(v') - log psi(v) reusing the theta in `lookup`.

        `lookup` is left untouched.
        """
        theta = _theta_of(lookup)
        if len(tochange) == 0:
            return torch.zeros((), dtype=self.param_dtype, device=self.W.device)

        v = self._as_config(v)
        self._theta_new.copy_(theta)
        delta = self._apply_changes(v, tochange, newconf, self._theta_new)
        return delta + sum_log_cosh(self._theta_new) - sum_log_cosh(theta)

    # --------------------------------------------------
    # Gradients and flat parameters
    # --------------------------------------------------

    @torch.no_grad()
    def der_log(self, v: Any, lookup: Optional[ThetaLookup] = None) -> torch.Tensor:
        """d log psi(v) / d p for every trainable parameter p, in flat parameter order."""
        if lookup is None:
            theta = self.compute_theta(v)
        else:
            theta = _theta_of(lookup)
            self.compute_vtilde(v)

        vtilde = self._vtilde
        tanh_theta = torch.tanh(theta)

        blocks = []
        if self.usea:
            blocks.append(vtilde)
        if self.useb:
            blocks.append(tanh_theta)
        blocks.append(torch.outer(vtilde, tanh_theta).reshape(-1))
        return torch.cat(blocks)

    @torch.no_grad()
    def get_parameters(self) -> torch.Tensor:
        blocks = []
        if self.usea:
            blocks.append(self.a)
        if self.useb:
            blocks.append(self.b)
        blocks.append(self.W.reshape(-1))
        return torch.cat(blocks).detach().clone()

    @torch.no_grad()
    def set_parameters(self, pars: Any) -> None:
        pars = torch.as_tensor(pars, dtype=self.param_dtype, device=self.W.device).reshape(-1)
        if pars.numel() != self._npar:
            raise ValueError(
                f"Expected {self._npar} parameters, got {pars.numel()}."
            )

        k = 0
        if self.usea:
            n = self.a.numel()
            self.a.copy_(pars[k:k + n])
            k += n
        if self.useb:
            n = self.b.numel()
            self.b.copy_(pars[k:k + n])
            k += n
        self.W.copy_(pars[k:].reshape(self.W.shape))

    @torch.no_grad()
    def init_random_parameters(self, sigma: float = 0.01, seed: Optional[int] = None) -> None:
        """Draw every trainable parameter with real and imaginary parts ~ N(0, sigma^2)."""
        generator = torch.Generator()
        if seed is None:
            generator.seed()
        else:
            generator.manual_seed(int(seed))

        re = torch.randn(self._npar, dtype=torch.float64, generator=generator)
        im = torch.randn(self._npar, dtype=torch.float64, generator=generator)
        self.set_parameters(sigma * torch.complex(re, im))

    # --------------------------------------------------
    # Persistence
    # --------------------------------------------------

    def to_document(self) -> Dict[str, Any]:
        return {
            "Name": NAME,
            "Nvisible": self.nv,
            "Nhidden": self.nh,
            "LocalSize": self.ls,
            "UseVisibleBias": self.usea,
            "UseHiddenBias": self.useb,
            "a": encode_tensor(self.a),
            "b": encode_tensor(self.b),
            "W": encode_tensor(self.W),
        }

    def save(self, path: PathLike) -> None:
        write_document(self.to_document(), path)

    def load(self, path: PathLike) -> None:
        self.load_document(read_document(path))

    def load_document(self, doc: Dict[str, Any]) -> None:
        """Replace structure and parameters with those in `doc`.

        The document is fully validated and decoded before any state changes,
        so a failing load leaves the model as it was.
        """
        name = doc.get("Name")
        if name != NAME:
            raise StructuralMismatch(
                f"Error while constructing {NAME} from document with Name={name!r}."
            )

        nv = int(doc.get("Nvisible", self.nv))
        if nv != self.hilbert.size:
            raise StructuralMismatch(
                f"Loaded wave-function has incompatible Hilbert space: "
                f"Nvisible={nv}, Hilbert size={self.hilbert.size}."
            )

        ls = int(doc.get("LocalSize", self.ls))
        if ls != self.hilbert.local_size:
            raise StructuralMismatch(
                f"Loaded wave-function has incompatible Hilbert space: "
                f"LocalSize={ls}, Hilbert local size={self.hilbert.local_size}."
            )

        if "Nhidden" in doc:
            nh = int(doc["Nhidden"])
        elif "Alpha" in doc:
            nh = hidden_units(0, float(doc["Alpha"]), nv)
        else:
            raise StructuralMismatch("Document defines neither Nhidden nor Alpha.")
        if nh <= 0:
            raise StructuralMismatch(f"Number of hidden units must be positive, got {nh}.")

        usea = bool(doc.get("UseVisibleBias", True))
        useb = bool(doc.get("UseHiddenBias", True))

        if "W" not in doc:
            raise StructuralMismatch("Document has no weight matrix 'W'.")

        n_in = nv * ls
        W = self._decode_field(doc, "W", (n_in, nh))
        a = self._decode_field(doc, "a", (n_in,)) if "a" in doc and usea else None
        b = self._decode_field(doc, "b", (nh,)) if "b" in doc and useb else None

        if (nh, usea, useb) != (self.nh, self.usea, self.useb):
            self.nh = nh
            self.usea = usea
            self.useb = useb
            self._init_structure()
        else:
            with torch.no_grad():
                self.a.zero_()
                self.b.zero_()

        with torch.no_grad():
            self.W.copy_(W)
            if a is not None:
                self.a.copy_(a)
            if b is not None:
                self.b.copy_(b)

    def _decode_field(self, doc: Dict[str, Any], key: str, shape: Tuple[int, ...]) -> torch.Tensor:
        try:
            return decode_tensor(doc[key], self.param_dtype, shape)
        except (TypeError, ValueError) as e:
            raise StructuralMismatch(f"Invalid field {key!r} in document: {e}") from e

    # --------------------------------------------------
    # Visualization
    # --------------------------------------------------

    def draw_weights(self, save_path: Optional[str] = None, show: bool = True) -> None:
        """Heatmaps of |W| and arg W, one row per (site, local value).

        Horizontal lines separate the one-hot blocks of different sites.

        Args:
            save_path: If provided, save the figure to this path.
            show: If True, display the plot interactively.
        """
        try:
            import matplotlib.pyplot as plt
        except ImportError as e:
            print(f"[draw_weights] matplotlib import failed: {e}")
            return

        W = self.W.detach().cpu()
        fig, axes = plt.subplots(1, 2, figsize=(12, 6), sharey=True)

        panels = [
            (axes[0], W.abs().numpy(), "|W|", "viridis"),
            (axes[1], W.angle().numpy(), "arg W", "twilight"),
        ]
        for ax, data, title, cmap in panels:
            im = ax.imshow(data, aspect="auto", interpolation="nearest", cmap=cmap)
            for site in range(1, self.nv):
                ax.axhline(site * self.ls - 0.5, color="white", linewidth=0.8)
            ax.set_title(title)
            ax.set_xlabel("hidden unit")
            fig.colorbar(im, ax=ax)

        axes[0].set_ylabel("site x local value")
        fig.suptitle(
            f"MultivalRBM weights | nv={self.nv}, ls={self.ls}, nh={self.nh}",
            fontsize=12,
            fontweight="bold",
        )
        fig.tight_layout()

        if save_path:
            fig.savefig(save_path, dpi=150, bbox_inches="tight")
            print(f"Weight diagram saved to: {save_path}")

        if show:
            plt.show()
        else:
            plt.close(fig)
