from __future__ import annotations

import numpy as np
import pytest

from pose_sync_manifold import StiefelProduct, project_to_SOd


def test_tangent_projection_is_idempotent():
    SP = StiefelProduct(5, 3, 5)
    Y = SP.random_sample(0)
    V = np.random.default_rng(1).standard_normal(SP.shape)

    P1 = SP.proj(Y, V)
    P2 = SP.proj(Y, P1)
    assert np.allclose(P1, P2, atol=1e-12)


def test_tangent_projection_output_is_tangent():
    SP = StiefelProduct(4, 2, 3)
    Y = SP.random_sample(2)
    P = SP.proj(Y, np.random.default_rng(3).standard_normal(SP.shape))

    Yb, Pb = SP.to_blocks(Y), SP.to_blocks(P)
    S = np.swapaxes(Yb, 1, 2) @ Pb
    # Y_i^T P_i is skew-symmetric on the tangent space
    assert np.allclose(S + np.swapaxes(S, 1, 2), 0.0, atol=1e-12)


def test_retract_keeps_blocks_orthonormal():
    SP = StiefelProduct(6, 3, 4)
    Y = SP.random_sample(4)
    V = SP.proj(Y, 0.7 * np.random.default_rng(5).standard_normal(SP.shape))

    Yp = SP.retract(Y, V)
    Yb = SP.to_blocks(Yp)
    G = np.swapaxes(Yb, 1, 2) @ Yb
    assert np.max(np.abs(G - np.eye(3))) < 1e-8
    assert SP.is_feasible(Yp)


def test_retract_zero_vector_returns_point():
    SP = StiefelProduct(3, 3, 5)
    Y = SP.random_sample(6)
    assert np.allclose(SP.retract(Y, np.zeros_like(Y)), Y, atol=1e-10)


def test_retract_tiny_vector_stays_feasible():
    SP = StiefelProduct(3, 2, 2)
    Y = SP.random_sample(7)
    V = SP.proj(Y, 1e-14 * np.ones(SP.shape))
    Yp = SP.retract(Y, V)
    assert SP.is_feasible(Yp)
    assert np.allclose(Yp, Y, atol=1e-10)


def test_random_sample_is_reproducible_and_feasible():
    SP = StiefelProduct(4, 3, 5)
    Y1 = SP.random_sample(11)
    Y2 = SP.random_sample(11)
    Y3 = SP.random_sample(12)
    assert np.array_equal(Y1, Y2)
    assert not np.allclose(Y1, Y3)
    assert SP.is_feasible(Y1)


def test_project_to_SOd_fixes_reflections():
    rng = np.random.default_rng(0)
    Q, _ = np.linalg.qr(rng.standard_normal((3, 3)))
    if np.linalg.det(Q) > 0:
        Q[:, 0] *= -1.0
    R = project_to_SOd(Q + 0.01 * rng.standard_normal((3, 3)))
    assert np.isclose(np.linalg.det(R), 1.0)
    assert np.allclose(R.T @ R, np.eye(3), atol=1e-12)


def test_project_to_SOd_stack():
    rng = np.random.default_rng(1)
    stack = rng.standard_normal((5, 2, 2))
    R = project_to_SOd(stack)
    assert R.shape == (5, 2, 2)
    assert np.allclose(np.linalg.det(R), 1.0)


def test_shape_mismatch_raises():
    SP = StiefelProduct(3, 2, 3)
    Y = SP.random_sample(0)
    with pytest.raises(ValueError):
        SP.proj(Y, np.zeros((3, 5)))
    with pytest.raises(ValueError):
        SP.retract(Y[:2], Y[:2])


def test_rank_below_dimension_raises():
    with pytest.raises(ValueError):
        StiefelProduct(3, 3, 2)
