from __future__ import annotations

import pytest

from pose_sync_matrices import make_cycle_measurements, make_synthetic_pose_graph


@pytest.fixture
def noisy_graph():
    measurements, R_true, t_true = make_synthetic_pose_graph(
        8, d=3, num_loop_closures=4, rot_noise=0.1, trans_noise=0.1, seed=3
    )
    return measurements, R_true, t_true


@pytest.fixture
def noiseless_graph():
    measurements, R_true, t_true = make_synthetic_pose_graph(10, d=3, num_loop_closures=5, seed=7)
    return measurements, R_true, t_true


@pytest.fixture
def cycle4():
    return make_cycle_measurements(4, d=3)
