import numpy as np
import pytest

from asqp.blocks.aux import ASConfig, Builder
from asqp.blocks.kkt import KKTAssembler
from asqp.blocks.linalg import DenseLinearAlgebra


@pytest.fixture
def cfg():
    return ASConfig()


@pytest.fixture
def unconstrained():
    # min x1² + x2² − 2x1 + 4x2  →  x = (1, −2)
    return Builder(2.0 * np.eye(2), [2.0, -4.0])


@pytest.fixture
def one_equality():
    return Builder(np.eye(2), [0.0, 0.0]).equalities([[1.0, 1.0]], [1.0])


@pytest.fixture
def one_inequality():
    return Builder(np.eye(2), [2.0, 2.0]).inequalities([[1.0, 1.0]], [1.0])


@pytest.fixture
def infeasible():
    # x1 ≤ −1 and x1 ≥ 1
    return Builder(np.eye(2), [0.0, 0.0]).inequalities([[1.0, 0.0], [-1.0, 0.0]], [-1.0, -1.0])


@pytest.fixture
def redundant_pair():
    return Builder(np.eye(2), [2.0, 2.0]).inequalities([[1.0, 1.0], [2.0, 2.0]], [1.0, 2.0])


@pytest.fixture
def unit_box():
    # x ≤ 1 componentwise with the unconstrained minimum at (10, 10, 10)
    return Builder(np.eye(3), [10.0, 10.0, 10.0]).inequalities(np.eye(3), np.ones(3))


def reduced_gradient(problem, res):
    """Q x − c + Aᵀλ over the equalities and the active inequalities."""
    mE = problem.m_eq
    lam = np.concatenate([res.multipliers[:mE], res.multipliers[mE:][res.active_set]])
    return KKTAssembler(problem, DenseLinearAlgebra()).reduced_gradient(res.x, res.active_set, lam)


def assert_kkt(problem, res, cfg, rtol=1e-8):
    """Optimality certificate for an OPTIMAL result."""
    mE = problem.m_eq
    lam_I = res.multipliers[mE:]
    assert np.all(lam_I[res.active_set] >= -cfg.solution_tol)
    if problem.m_eq:
        np.testing.assert_allclose(problem.AE @ res.x, problem.BE, atol=1e-7)
    if problem.m_ineq:
        assert np.all(problem.BI - problem.AI @ res.x >= -1e-7)
    rg = reduced_gradient(problem, res)
    assert np.linalg.norm(rg) <= rtol * (1.0 + np.linalg.norm(problem.c))
