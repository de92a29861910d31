# portfolio.py
# Long-only mean-variance portfolio and a small box-constrained least-squares
# problem, solved with the active-set QP solver.

import logging

import numpy as np

from asqp.blocks.aux import ASConfig, Builder
from asqp.solver import ActiveSetSolver

# ---------------------------
# Test problems
# ---------------------------

def portfolio(n_assets: int = 8, risk_aversion: float = 4.0, seed: int = 0) -> Builder:
    """
    maximise  μᵀw − (γ/2) wᵀΣw   s.t.  Σ w = 1,  w ≥ 0
    written as  min ½ wᵀ(γΣ)w − μᵀw.
    """
    rng = np.random.default_rng(seed)
    F = rng.standard_normal((n_assets, 3))
    Sigma = F @ F.T / 3.0 + np.diag(rng.uniform(0.01, 0.05, n_assets))
    mu = rng.uniform(0.02, 0.12, n_assets)
    return (
        Builder(risk_aversion * Sigma, mu)
        .equalities(np.ones((1, n_assets)), [1.0])
        .inequalities(-np.eye(n_assets), np.zeros(n_assets))
    )


def box_least_squares(m: int = 20, n: int = 5, seed: int = 1) -> Builder:
    """min ½‖Mx − y‖²  s.t.  −0.5 ≤ x ≤ 0.5."""
    rng = np.random.default_rng(seed)
    M = rng.standard_normal((m, n))
    y = rng.standard_normal(m) * 3.0
    AI = np.vstack([np.eye(n), -np.eye(n)])
    BI = np.full(2 * n, 0.5)
    return Builder(M.T @ M, M.T @ y).inequalities(AI, BI)


# ---------------------------
# Utility to run a single solve
# ---------------------------

def run(name: str, problem: Builder, cfg: ASConfig):
    with ActiveSetSolver(problem, cfg) as solver:
        res = solver.solve()
        print(f"{name}: {res}")
        print("  x =", np.round(res.x, 4))
        warm = solver.solve(kick_start=res)
        print(f"  warm re-solve: {warm.state.name} in {warm.iterations} iterations")
    return res


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    cfg = ASConfig(verbose=True)
    run("portfolio", portfolio(), cfg)
    run("box least squares", box_least_squares(), cfg)
