from __future__ import annotations

import numpy as np
import pytest

from pose_sync_core import PoseSyncProblem
from pose_sync_matrices import (
    RelativePoseMeasurement,
    check_connected,
    infer_problem_dimensions,
    make_cycle_measurements,
    make_synthetic_pose_graph,
    oriented_incidence_matrix,
    quadratic_form_matrix,
    random_rotation,
    rotational_connection_laplacian,
    translational_data_matrix,
    translational_weight_matrix,
)


def _random_poses(n, d, seed):
    rng = np.random.default_rng(seed)
    R = np.stack([random_rotation(d, rng) for _ in range(n)])
    t = rng.standard_normal((n, d))
    return R, t


def _cost(measurements, R, t):
    """sum_e kappa ||R_j - R_i R_e||^2 + tau ||t_j - t_i - R_i t_e||^2"""
    rot = sum(meas.kappa * np.sum((R[meas.j] - R[meas.i] @ meas.R) ** 2) for meas in measurements)
    trans = sum(meas.tau * np.sum((t[meas.j] - t[meas.i] - R[meas.i] @ meas.t) ** 2)
                for meas in measurements)
    return rot, trans


def test_incidence_matrix_entries():
    measurements = make_cycle_measurements(4, d=2)
    A = oriented_incidence_matrix(measurements, 4).toarray()
    assert A.shape == (4, 4)
    for e, meas in enumerate(measurements):
        assert A[meas.i, e] == -1.0
        assert A[meas.j, e] == 1.0
    assert np.allclose(A.sum(axis=0), 0.0)


def test_connection_laplacian_quadratic_form():
    measurements, _, _ = make_synthetic_pose_graph(6, d=3, rot_noise=0.2, seed=1)
    n, _, d = infer_problem_dimensions(measurements)
    L = rotational_connection_laplacian(measurements, n, d).toarray()
    assert np.allclose(L, L.T)

    R, t = _random_poses(n, d, seed=2)
    R_row = np.concatenate(R, axis=1)
    rot, _ = _cost(measurements, R, t)
    assert np.isclose(np.trace(R_row @ L @ R_row.T), rot, rtol=1e-10)


def test_translational_residuals():
    measurements, _, _ = make_synthetic_pose_graph(5, d=2, trans_noise=0.3, seed=4)
    n, m, d = infer_problem_dimensions(measurements)
    A = oriented_incidence_matrix(measurements, n)
    T = translational_data_matrix(measurements, n, d)
    SqrtOmega = translational_weight_matrix(measurements, sqrt=True)

    R, t = _random_poses(n, d, seed=5)
    R_row = np.concatenate(R, axis=1)
    residuals = (A.T @ t).T + (T @ R_row.T).T          # d x m
    _, trans = _cost(measurements, R, t)
    assert np.isclose(np.sum(((SqrtOmega @ residuals.T).T) ** 2), trans, rtol=1e-10)


def test_quadratic_form_matrix_matches_cost():
    measurements, _, _ = make_synthetic_pose_graph(6, d=3, rot_noise=0.1, trans_noise=0.1, seed=6)
    n, _, d = infer_problem_dimensions(measurements)
    A = oriented_incidence_matrix(measurements, n)
    M = quadratic_form_matrix(
        A,
        translational_weight_matrix(measurements, sqrt=False),
        translational_data_matrix(measurements, n, d),
        rotational_connection_laplacian(measurements, n, d),
    ).toarray()
    assert M.shape == (n + n * d, n + n * d)

    R, t = _random_poses(n, d, seed=7)
    X = np.hstack([t.T, np.concatenate(R, axis=1)])
    assert np.isclose(np.trace(X @ M @ X.T), sum(_cost(measurements, R, t)), rtol=1e-10)


def test_weight_matrix_sqrt():
    measurements = [RelativePoseMeasurement(0, 1, np.eye(2), np.zeros(2), kappa=1.0, tau=4.0),
                    RelativePoseMeasurement(1, 2, np.eye(2), np.zeros(2), kappa=1.0, tau=9.0)]
    assert np.allclose(translational_weight_matrix(measurements, sqrt=True).diagonal(), [2.0, 3.0])
    assert np.allclose(translational_weight_matrix(measurements, sqrt=False).diagonal(), [4.0, 9.0])


def test_infer_problem_dimensions():
    measurements = make_cycle_measurements(5, d=3)
    assert infer_problem_dimensions(measurements) == (5, 5, 3)
    assert infer_problem_dimensions(measurements, num_poses=7) == (7, 5, 3)


@pytest.mark.parametrize(
    "measurements",
    [
        [],
        [RelativePoseMeasurement(0, 0, np.eye(3), np.zeros(3))],
        [RelativePoseMeasurement(0, 1, np.eye(4), np.zeros(4))],
        [RelativePoseMeasurement(0, 1, np.eye(3), np.zeros(2))],
        [RelativePoseMeasurement(-1, 1, np.eye(2), np.zeros(2))],
        [RelativePoseMeasurement(0, 1, np.eye(2), np.zeros(2), kappa=0.0)],
        [RelativePoseMeasurement(0, 1, np.eye(2), np.zeros(2), tau=-1.0)],
    ],
)
def test_invalid_measurements_raise(measurements):
    with pytest.raises(ValueError):
        infer_problem_dimensions(measurements)


def test_num_poses_too_small_raises():
    with pytest.raises(ValueError):
        infer_problem_dimensions(make_cycle_measurements(4, d=2), num_poses=2)


def _two_components(d=2):
    I, z = np.eye(d), np.zeros(d)
    return [RelativePoseMeasurement(0, 1, I, z), RelativePoseMeasurement(2, 3, I, z)]


def test_check_connected():
    labels = check_connected(oriented_incidence_matrix(make_cycle_measurements(4, d=2), 4))
    assert np.all(labels == 0)
    with pytest.raises(ValueError, match="disconnected"):
        check_connected(oriented_incidence_matrix(_two_components(), 4))


@pytest.mark.parametrize("formulation", ["implicit", "explicit"])
def test_disconnected_graph_rejected_at_construction(formulation):
    with pytest.raises(ValueError):
        PoseSyncProblem(_two_components(), formulation=formulation)


def test_isolated_pose_rejected():
    # pose 3 never appears in a measurement
    with pytest.raises(ValueError):
        PoseSyncProblem(make_cycle_measurements(3, d=2), num_poses=4)


def test_synthetic_graph_is_consistent_when_noiseless():
    measurements, R_true, t_true = make_synthetic_pose_graph(7, d=3, num_loop_closures=3, seed=8)
    assert len(measurements) == 6 + 3
    assert np.allclose(R_true[0], np.eye(3))
    assert np.allclose(t_true[0], 0.0)
    rot, trans = _cost(measurements, R_true, t_true)
    assert rot < 1e-12 and trans < 1e-12
