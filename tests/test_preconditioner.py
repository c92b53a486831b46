from __future__ import annotations

import numpy as np
import pytest
from scipy import sparse

from pose_sync_core import (
    IncompleteCholeskyPreconditioner,
    JacobiPreconditioner,
    PoseSyncProblem,
    make_preconditioner,
    tangent_cg_solve,
)

PRECONDITIONERS = ["jacobi", "incomplete_cholesky"]


@pytest.mark.parametrize("formulation", ["implicit", "explicit"])
@pytest.mark.parametrize("kind", PRECONDITIONERS)
def test_preconditioned_vector_is_tangent(noisy_graph, formulation, kind):
    measurements, _, _ = noisy_graph
    problem = PoseSyncProblem(measurements, formulation=formulation, preconditioner=kind, rank=4)
    Y = problem.random_sample(0)
    V = problem.tangent_space_projection(Y, np.random.default_rng(1).standard_normal(Y.shape))

    PV = problem.precondition(Y, V)
    assert PV.shape == V.shape
    assert np.all(np.isfinite(PV))
    assert np.allclose(problem.tangent_space_projection(Y, PV), PV, atol=1e-10)


def test_no_preconditioner_returns_input(noisy_graph):
    measurements, _, _ = noisy_graph
    problem = PoseSyncProblem(measurements, preconditioner="none")
    assert problem.preconditioner is None
    Y = problem.random_sample(0)
    V = np.random.default_rng(2).standard_normal(Y.shape)
    assert np.array_equal(problem.precondition(Y, V), V)


def test_jacobi_uses_connection_laplacian_diagonal(noisy_graph):
    measurements, _, _ = noisy_graph
    problem = PoseSyncProblem(measurements, preconditioner="jacobi")
    assert isinstance(problem.preconditioner, JacobiPreconditioner)
    Y = problem.random_sample(3)
    V = problem.tangent_space_projection(Y, np.random.default_rng(4).standard_normal(Y.shape))

    expected = problem.tangent_space_projection(Y, V / problem.LGrho.diagonal())
    assert np.allclose(problem.precondition(Y, V), expected)


def test_jacobi_floors_zero_diagonal():
    pre = JacobiPreconditioner(sparse.diags([2.0, 0.0, 4.0]), jitter=1e-6)
    assert np.allclose(pre.inv_diag, [0.5, 1e6, 0.25])


def test_incomplete_cholesky_is_near_inverse_with_small_drop_tol(noisy_graph):
    measurements, _, _ = noisy_graph
    problem = PoseSyncProblem(measurements, preconditioner="none")
    P = problem.LGrho
    pre = IncompleteCholeskyPreconditioner(P, drop_tol=1e-12, fill_factor=100.0, shift=1e-3)
    P_shift = P.toarray() + pre.shift * np.eye(P.shape[0])

    V = np.random.default_rng(5).standard_normal((3, P.shape[0]))
    assert np.allclose(pre.apply(V @ P_shift), V, rtol=1e-4, atol=1e-6)


def test_preconditioner_aliases():
    P = sparse.diags([1.0, 2.0, 3.0]).tocsc()
    assert make_preconditioner(None, P) is None
    assert isinstance(make_preconditioner("diagonal", P), JacobiPreconditioner)
    assert isinstance(make_preconditioner("ichol", P), IncompleteCholeskyPreconditioner)


def test_unknown_preconditioner_raises(noisy_graph):
    measurements, _, _ = noisy_graph
    with pytest.raises(ValueError):
        PoseSyncProblem(measurements, preconditioner="multigrid")


def _spd(n, seed):
    B = np.random.default_rng(seed).standard_normal((n, n))
    return B @ B.T + n * np.eye(n)


def test_tangent_cg_solves_spd_system():
    A = _spd(12, 0)
    b = np.random.default_rng(1).standard_normal((2, 12))
    x, info = tangent_cg_solve(lambda V: V @ A, b, tol=1e-10, max_iter=100)
    assert info["converged"]
    assert not info["negative_curvature"]
    assert np.allclose(x @ A, b, atol=1e-8)


def test_tangent_cg_with_preconditioner_takes_fewer_iterations():
    rng = np.random.default_rng(2)
    scales = np.logspace(0, 4, 30)
    A = np.diag(scales) + 0.01 * _spd(30, 3)
    b = rng.standard_normal((1, 30))
    diag = np.diag(A)

    _, plain = tangent_cg_solve(lambda V: V @ A, b, tol=1e-8, max_iter=500)
    x, pre = tangent_cg_solve(lambda V: V @ A, b, tol=1e-8, max_iter=500, M_inv=lambda V: V / diag)
    assert pre["converged"]
    assert pre["iters"] < plain["iters"]
    assert np.allclose(x @ A, b, rtol=1e-5, atol=1e-6)


def test_tangent_cg_stops_on_negative_curvature():
    A = -np.eye(4)
    x, info = tangent_cg_solve(lambda V: V @ A, np.ones((1, 4)))
    assert info["negative_curvature"]
    assert not info["converged"]
    assert np.array_equal(x, np.zeros((1, 4)))


def test_tangent_cg_zero_rhs():
    x, info = tangent_cg_solve(lambda V: V, np.zeros((2, 3)))
    assert info["converged"] and info["iters"] == 0
    assert np.array_equal(x, np.zeros((2, 3)))


def test_tangent_cg_verbose_progress(capsys):
    A = np.diag(np.logspace(0, 4, 30))
    b = np.ones((1, 30))
    _, info = tangent_cg_solve(lambda V: V @ A, b, tol=1e-12, max_iter=200, verbose=True, log_prefix="[test] ")
    assert info["iters"] >= 10
    out = capsys.readouterr().out
    assert "[test] [tCG] iter 10 rel_res=" in out
