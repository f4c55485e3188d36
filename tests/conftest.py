import pytest
import torch

from multirbm.hilbert import LocalHilbert
from multirbm.model import MultivalRBM


def _quiet(msg):
    pass


@pytest.fixture
def hilbert():
    return LocalHilbert([-1.0, 0.0, 1.0], size=5)


@pytest.fixture
def make_model():
    def _make(hilbert, **kwargs):
        kwargs.setdefault("nhidden", 4)
        kwargs.setdefault("sigma", 0.1)
        kwargs.setdefault("seed", 1234)
        kwargs.setdefault("log_fn", _quiet)
        return MultivalRBM(hilbert, **kwargs)

    return _make


@pytest.fixture
def model(hilbert, make_model):
    return make_model(hilbert)


@pytest.fixture
def config():
    return torch.tensor([-1.0, 0.0, 1.0, 1.0, 0.0], dtype=torch.float64)
