"""Consistency checks of the ansatz fast paths against full recomputation."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import torch
from tqdm.auto import tqdm


class AnsatzTester:
    """Compare incremental and batched evaluations with brute force.

    For random configurations and random multi-site changes drawn from the
    model's Hilbert space, measures how far the fast paths drift from
    evaluating every configuration from scratch.

    Args:
        model: A MultivalRBM.
        seed: Seed for the configuration/change generator.
        max_changes: Maximum number of sites changed per candidate move.
        n_candidates: Candidate moves per configuration for `log_val_diff`.
    """

    def __init__(
        self,
        model,
        *,
        seed: Optional[int] = 0,
        max_changes: int = 2,
        n_candidates: int = 4,
    ):
        if max_changes < 1:
            raise ValueError(f"max_changes must be at least 1, got {max_changes}.")
        self.model = model
        self.hilbert = model.hilbert
        self.max_changes = min(int(max_changes), self.hilbert.size)
        self.n_candidates = int(n_candidates)

        self.generator = torch.Generator()
        if seed is None:
            self.generator.seed()
        else:
            self.generator.manual_seed(int(seed))

    def _random_change(self, v: torch.Tensor) -> Tuple[List[int], List[float]]:
        """Distinct sites, each moved to a different local value."""
        k = int(torch.randint(1, self.max_changes + 1, (1,), generator=self.generator))
        sites = torch.randperm(self.hilbert.size, generator=self.generator)[:k].tolist()
        states = list(self.hilbert.local_states)

        newconf = []
        for site in sites:
            choices = [s for s in states if s != float(v[site])] or states
            j = int(torch.randint(len(choices), (1,), generator=self.generator))
            newconf.append(choices[j])
        return sites, newconf

    @staticmethod
    def _apply(v: torch.Tensor, sites: List[int], newconf: List[float]) -> torch.Tensor:
        out = v.clone()
        for site, value in zip(sites, newconf):
            out[site] = value
        return out

    def run(self, n_samples: int = 100, *, tolerance: float = 1e-8, log_every: int = 20) -> Dict[str, Any]:
        """Check `n_samples` random configurations.

        Returns:
            Dictionary with:
                - max_err_log_val_diff: worst |log_val_diff - brute force difference|.
                - max_err_lookup_theta: worst |updated lookup - theta from scratch|.
                - max_err_log_val_lookup: worst |log_val(lookup) - log_val()|.
                - max_err_empty_diff: worst |diff| for empty candidates (should be 0).
                - n_samples, tolerance, passed.
        """
        model = self.model
        errs = {
            "max_err_log_val_diff": 0.0,
            "max_err_lookup_theta": 0.0,
            "max_err_log_val_lookup": 0.0,
            "max_err_empty_diff": 0.0,
        }

        pbar = tqdm(total=n_samples, desc="MultivalRBM consistency", leave=True)

        for i in range(n_samples):
            v = self.hilbert.random_state(self.generator)
            base = model.log_val(v).clone()

            # batched differences, with one empty candidate at the end
            moves = [self._random_change(v) for _ in range(self.n_candidates)]
            tochange = [m[0] for m in moves] + [[]]
            newconf = [m[1] for m in moves] + [[]]
            diffs = model.log_val_diff(v, tochange, newconf)

            for k, (sites, values) in enumerate(moves):
                brute = model.log_val(self._apply(v, sites, values)) - base
                errs["max_err_log_val_diff"] = max(
                    errs["max_err_log_val_diff"], float((diffs[k] - brute).abs())
                )
            errs["max_err_empty_diff"] = max(errs["max_err_empty_diff"], float(diffs[-1].abs()))

            # incremental lookup along a short random walk
            lookup = model.init_lookup(v)
            for sites, values in moves:
                model.update_lookup(v, sites, values, lookup)
                v = self._apply(v, sites, values)

            theta = model.compute_theta(v).clone()
            errs["max_err_lookup_theta"] = max(
                errs["max_err_lookup_theta"], float((lookup.theta - theta).abs().max())
            )
            from_lookup = model.log_val(v, lookup)
            from_scratch = model.log_val(v)
            errs["max_err_log_val_lookup"] = max(
                errs["max_err_log_val_lookup"], float((from_lookup - from_scratch).abs())
            )

            if (i + 1) % log_every == 0:
                pbar.set_postfix(
                    diff=f"{errs['max_err_log_val_diff']:.2e}",
                    theta=f"{errs['max_err_lookup_theta']:.2e}",
                )
            pbar.update(1)

        pbar.close()

        return {
            **errs,
            "n_samples": n_samples,
            "tolerance": tolerance,
            "passed": all(e <= tolerance for e in errs.values()),
        }
