import itertools

import pytest
import torch

from multirbm.errors import InvalidConfigurationValue, LookupTypeMismatch
from multirbm.hilbert import LocalHilbert
from multirbm.model import MultivalRBM, ThetaLookup, hidden_units


def _apply(v, sites, values):
    out = v.clone()
    for site, value in zip(sites, values):
        out[site] = value
    return out


def _direct_amplitude(model, v):
    """psi(v) evaluated without the log-cosh reduction."""
    with torch.no_grad():
        vtilde = model._one_hot(torch.as_tensor(v, dtype=torch.float64))
        theta = vtilde @ model.W + model.b
        return torch.exp(vtilde @ model.a) * torch.prod(torch.cosh(theta))


# --------------------------------------------------
# Structure
# --------------------------------------------------

def test_hidden_units_takes_larger_of_explicit_and_density():
    assert hidden_units(0, 2, 4) == 8
    assert hidden_units(10, 2, 4) == 10
    assert hidden_units(3, 0.5, 5) == 3
    assert hidden_units(0, 1.5, 4) == 6


def test_hidden_units_density_is_not_truncated_below_integer():
    # 0.57 * 100 evaluates to 56.99999999999999
    assert hidden_units(0, 0.57, 100) == 57
    assert hidden_units(0, 0.29, 100) == 29
    assert hidden_units(0, 0.5, 3) == 1


def test_binary_like_scenario_has_80_parameters(make_model):
    h = LocalHilbert([0.0, 1.0], size=4)
    model = make_model(h, nhidden=0, alpha=2)

    assert model.nh == 8
    assert model.npar == 80
    assert model.get_parameters().shape == (80,)


@pytest.mark.parametrize("usea,useb", list(itertools.product([True, False], repeat=2)))
@pytest.mark.parametrize("nv,ls,nh", [(1, 1, 1), (3, 2, 5), (4, 3, 2)])
def test_npar_matches_formula_and_flat_length(make_model, usea, useb, nv, ls, nh):
    h = LocalHilbert([float(k) for k in range(ls)], size=nv)
    model = make_model(h, nhidden=nh, use_visible_bias=usea, use_hidden_bias=useb)

    expected = nv * nh * ls + (nv * ls if usea else 0) + (nh if useb else 0)
    assert model.npar == expected
    assert model.get_parameters().numel() == expected
    assert model.der_log([0.0] * nv).numel() == expected


def test_disabled_biases_are_zero(hilbert, make_model):
    model = make_model(hilbert, use_visible_bias=False, use_hidden_bias=False)

    assert torch.count_nonzero(model.a) == 0
    assert torch.count_nonzero(model.b) == 0
    assert torch.count_nonzero(model.W) > 0


def test_weight_shape_and_structural_flags(model):
    assert model.W.shape == (model.nv * model.ls, model.nh)
    assert model.is_holomorphic is True
    assert (model.nvisible, model.nhidden, model.local_size) == (5, 4, 3)


def test_real_dtype_is_rejected(hilbert):
    with pytest.raises(ValueError):
        MultivalRBM(hilbert, nhidden=2, dtype=torch.float64, log_fn=lambda m: None)


def test_zero_hidden_units_rejected(hilbert):
    with pytest.raises(ValueError):
        MultivalRBM(hilbert, nhidden=0, alpha=0, log_fn=lambda m: None)


def test_initialization_logs_structure(hilbert):
    lines = []
    MultivalRBM(hilbert, nhidden=3, log_fn=lines.append)

    assert any("nvisible = 5" in line and "nhidden = 3" in line for line in lines)
    assert any("Local size" in line and "3" in line for line in lines)
    assert any("visible bias" in line for line in lines)
    assert any("hidden bias" in line for line in lines)


def test_seeded_initialization_is_reproducible(hilbert, make_model):
    m1 = make_model(hilbert, seed=7)
    m2 = make_model(hilbert, seed=7)
    m3 = make_model(hilbert, seed=8)

    torch.testing.assert_close(m1.get_parameters(), m2.get_parameters())
    assert not torch.equal(m1.get_parameters(), m3.get_parameters())


# --------------------------------------------------
# Encoding
# --------------------------------------------------

def test_vtilde_is_one_hot_per_site(model, config):
    vtilde = model.compute_vtilde(config).clone()

    expected = torch.tensor(
        [1, 0, 0,
         0, 1, 0,
         0, 0, 1,
         0, 0, 1,
         0, 1, 0],
        dtype=model.param_dtype,
    )
    torch.testing.assert_close(vtilde, expected)


def test_vtilde_writes_into_given_buffer(model, config):
    out = torch.full((model.nv * model.ls,), 7.0, dtype=model.param_dtype)
    result = model.compute_vtilde(config, out=out)

    assert result is out
    assert out.real.sum() == model.nv


def test_invalid_site_value_raises(model):
    with pytest.raises(InvalidConfigurationValue):
        model.compute_vtilde([-1.0, 0.0, 0.5, 1.0, 0.0])


def test_single_precision_configuration_matches_local_states(make_model):
    hilbert = LocalHilbert([0.1, 0.5, 0.9], size=4)
    model = make_model(hilbert)
    v64 = torch.tensor([0.1, 0.9, 0.5, 0.1], dtype=torch.float64)
    v32 = v64.to(torch.float32)

    torch.testing.assert_close(model.log_val(v32), model.log_val(v64))

    lookup = model.init_lookup(v32)
    model.update_lookup(v32, [1, 3], v32[[2, 1]], lookup)
    new = _apply(v64, [1, 3], [0.5, 0.9])
    torch.testing.assert_close(lookup.theta, model.compute_theta(new).clone())

    with pytest.raises(InvalidConfigurationValue):
        model.log_val([0.1, 0.9 + 1e-4, 0.5, 0.1])


def test_wrong_configuration_length_raises(model):
    with pytest.raises(InvalidConfigurationValue):
        model.log_val([-1.0, 0.0, 1.0])


# --------------------------------------------------
# Pre-activations and lookups
# --------------------------------------------------

def test_compute_theta_matches_matrix_formula(model, config):
    vtilde = model.compute_vtilde(config).clone()
    theta = model.compute_theta(config).clone()

    torch.testing.assert_close(theta, model.W.detach().t() @ vtilde + model.b.detach())


def test_update_lookup_single_site_matches_full_recomputation(model, config):
    lookup = model.init_lookup(config)
    model.update_lookup(config, [2], [-1.0], lookup)

    new = _apply(config, [2], [-1.0])
    torch.testing.assert_close(lookup.theta, model.compute_theta(new).clone())
    torch.testing.assert_close(model.log_val(new, lookup), model.log_val(new))


def test_update_lookup_several_steps_track_configuration(model, config):
    lookup = model.init_lookup(config)
    v = config
    for sites, values in [([0, 4], [1.0, -1.0]), ([1], [1.0]), ([0, 2, 3], [0.0, 0.0, -1.0])]:
        model.update_lookup(v, sites, values, lookup)
        v = _apply(v, sites, values)

    torch.testing.assert_close(lookup.theta, model.compute_theta(v).clone())


def test_update_lookup_empty_change_is_noop(model, config):
    lookup = model.init_lookup(config)
    before = lookup.theta.clone()
    model.update_lookup(config, [], [], lookup)

    torch.testing.assert_close(lookup.theta, before)


def test_lookup_of_wrong_type_raises(model, config):
    with pytest.raises(LookupTypeMismatch):
        model.update_lookup(config, [0], [1.0], torch.zeros(model.nh))
    with pytest.raises(LookupTypeMismatch):
        model.log_val(config, lookup={"theta": None})
    with pytest.raises(LookupTypeMismatch):
        model.der_log(config, lookup=[0.0])


def test_update_lookup_rejects_bad_new_value(model, config):
    lookup = model.init_lookup(config)
    with pytest.raises(InvalidConfigurationValue):
        model.update_lookup(config, [1], [2.0], lookup)


def test_update_lookup_failure_leaves_lookup_intact(model, config):
    lookup = model.init_lookup(config)
    before = lookup.theta.clone()
    with pytest.raises(InvalidConfigurationValue):
        model.update_lookup(config, [0, 1], [1.0, 2.0], lookup)
    torch.testing.assert_close(lookup.theta, before)

    with pytest.raises(IndexError):
        model.update_lookup(config, [0, 7], [1.0, 0.0], lookup)
    torch.testing.assert_close(lookup.theta, before)


def test_update_lookup_rejects_out_of_range_site(model, config):
    lookup = model.init_lookup(config)
    with pytest.raises(IndexError):
        model.update_lookup(config, [-1], [1.0], lookup)
    with pytest.raises(IndexError):
        model.update_lookup(config, [5], [1.0], lookup)


def test_init_lookup_is_independent_of_scratch(model, config):
    lookup = model.init_lookup(config)
    saved = lookup.theta.clone()
    model.log_val([1.0, 1.0, 1.0, 1.0, 1.0])

    assert isinstance(lookup, ThetaLookup)
    torch.testing.assert_close(lookup.theta, saved)


# --------------------------------------------------
# Amplitudes
# --------------------------------------------------

def test_log_val_matches_direct_amplitude(model, config):
    torch.testing.assert_close(torch.exp(model.log_val(config)), _direct_amplitude(model, config))


def test_forward_batch_matches_log_val(model, hilbert):
    g = torch.Generator().manual_seed(3)
    batch = torch.stack([hilbert.random_state(g) for _ in range(6)])

    with torch.no_grad():
        out = model(batch)

    assert out.shape == (6,)
    for i in range(6):
        torch.testing.assert_close(out[i], model.log_val(batch[i]))


def test_log_val_diff_matches_brute_force(model, config):
    tochange = [[0], [1, 3], [2, 4, 0], []]
    newconf = [[1.0], [-1.0, 0.0], [0.0, -1.0, 0.0], []]

    diffs = model.log_val_diff(config, tochange, newconf)
    base = model.log_val(config)

    assert diffs.shape == (4,)
    for k in range(3):
        brute = model.log_val(_apply(config, tochange[k], newconf[k])) - base
        torch.testing.assert_close(diffs[k], brute)


def test_log_val_diff_empty_candidates_are_exactly_zero(model, config):
    diffs = model.log_val_diff(config, [[], [1], []], [[], [1.0], []])

    assert diffs[0] == 0
    assert diffs[2] == 0
    assert diffs[1] != 0


def test_log_val_diff_leaves_lookup_untouched(model, config):
    lookup = model.init_lookup(config)
    before = lookup.theta.clone()
    model.log_val_diff(config, [[0, 1]], [[1.0, 1.0]])

    torch.testing.assert_close(lookup.theta, before)


def test_log_val_diff_length_mismatch_raises(model, config):
    with pytest.raises(ValueError):
        model.log_val_diff(config, [[0], [1]], [[1.0]])
    with pytest.raises(ValueError):
        model.log_val_diff(config, [[0, 1]], [[1.0]])


def test_log_val_diff_lookup_matches_batched_diff(model, config):
    lookup = model.init_lookup(config)
    before = lookup.theta.clone()

    single = model.log_val_diff_lookup(config, [1, 3], [-1.0, 0.0], lookup)
    batched = model.log_val_diff(config, [[1, 3]], [[-1.0, 0.0]])

    torch.testing.assert_close(single, batched[0])
    torch.testing.assert_close(lookup.theta, before)
    assert model.log_val_diff_lookup(config, [], [], lookup) == 0


# --------------------------------------------------
# Gradients and flat parameters
# --------------------------------------------------

def test_der_log_blocks_in_parameter_order(model, config):
    der = model.der_log(config)
    vtilde = model.compute_vtilde(config).clone()
    tanh_theta = torch.tanh(model.compute_theta(config).clone())

    n_in = model.nv * model.ls
    torch.testing.assert_close(der[:n_in], vtilde)
    torch.testing.assert_close(der[n_in:n_in + model.nh], tanh_theta)
    torch.testing.assert_close(der[n_in + model.nh:], torch.outer(vtilde, tanh_theta).reshape(-1))


def test_der_log_with_lookup_matches_without(model, config):
    lookup = model.init_lookup(config)
    torch.testing.assert_close(model.der_log(config, lookup), model.der_log(config))


def test_der_log_matches_finite_differences(make_model):
    h = LocalHilbert([0.0, 1.0, 2.0], size=3)
    model = make_model(h, nhidden=2)
    v = [2.0, 0.0, 1.0]
    eps = 1e-6

    pars = model.get_parameters()
    der = model.der_log(v)
    numeric = torch.zeros_like(der)
    for k in range(model.npar):
        shift = torch.zeros_like(pars)
        shift[k] = eps
        model.set_parameters(pars + shift)
        up = model.log_val(v)
        model.set_parameters(pars - shift)
        down = model.log_val(v)
        numeric[k] = (up - down) / (2 * eps)
    model.set_parameters(pars)

    torch.testing.assert_close(der, numeric, rtol=1e-6, atol=1e-7)


def test_der_log_without_visible_bias_starts_with_hidden_block(hilbert, make_model, config):
    model = make_model(hilbert, use_visible_bias=False)
    der = model.der_log(config)
    tanh_theta = torch.tanh(model.compute_theta(config).clone())

    torch.testing.assert_close(der[:model.nh], tanh_theta)


def test_get_set_parameters_round_trip(model):
    W, a, b = model.W.detach().clone(), model.a.detach().clone(), model.b.detach().clone()
    model.set_parameters(model.get_parameters())

    torch.testing.assert_close(model.W.detach(), W)
    torch.testing.assert_close(model.a.detach(), a)
    torch.testing.assert_close(model.b.detach(), b)


def test_set_parameters_assigns_blocks_in_order(model):
    pars = torch.arange(model.npar, dtype=torch.float64).to(model.param_dtype)
    model.set_parameters(pars)

    n_in = model.nv * model.ls
    assert model.a[0] == 0
    assert model.b[0] == n_in
    assert model.W[0, 0] == n_in + model.nh
    assert model.W[0, 1] == n_in + model.nh + 1
    assert model.W[1, 0] == n_in + 2 * model.nh


def test_set_parameters_with_disabled_bias_keeps_it_zero(hilbert, make_model):
    model = make_model(hilbert, use_hidden_bias=False)
    model.set_parameters(torch.ones(model.npar, dtype=model.param_dtype))

    assert torch.count_nonzero(model.b) == 0
    assert torch.all(model.a == 1)


def test_set_parameters_wrong_length_raises(model):
    with pytest.raises(ValueError):
        model.set_parameters(torch.zeros(model.npar + 1, dtype=model.param_dtype))
