"""
Measurement records and the sparse data matrices derived from them.

This module contains:
  - RelativePoseMeasurement (one edge of the pose graph)
  - Builders for the oriented incidence matrix, weight matrices, translational
    data matrix, rotational connection Laplacian and the explicit quadratic form M
  - Connectivity check used to reject gauge-deficient graphs
  - Synthetic pose-graph generators used for demos/tests

It should not contain solvers or plotting.
"""


from dataclasses import dataclass

import numpy as np
from scipy import sparse
from scipy.sparse.csgraph import connected_components

from pose_sync_manifold import project_to_SOd


@dataclass(frozen=True)
class RelativePoseMeasurement:
    """
    Relative pose measurement from pose i to pose j.

    Model:  R_j = R_i R,   t_j = t_i + R_i t
    kappa / tau are the rotational / translational precisions.
    """
    i: int
    j: int
    R: np.ndarray
    t: np.ndarray
    kappa: float = 1.0
    tau: float = 1.0


def infer_problem_dimensions(measurements, num_poses=None):
    """
    Validate a measurement list and return (n, m, d).

    n defaults to 1 + the largest pose index appearing in the list.
    """
    measurements = list(measurements)
    m = len(measurements)
    if m == 0:
        raise ValueError("At least one measurement is required.")

    d = np.asarray(measurements[0].R).shape[0]
    if d not in (2, 3):
        raise ValueError(f"Only SE(2) and SE(3) are supported, got d={d}.")

    max_idx = 0
    for e, meas in enumerate(measurements):
        R = np.asarray(meas.R, dtype=float)
        t = np.asarray(meas.t, dtype=float)
        if R.shape != (d, d):
            raise ValueError(f"Measurement {e}: R has shape {R.shape}, expected {(d, d)}.")
        if t.shape != (d,):
            raise ValueError(f"Measurement {e}: t has shape {t.shape}, expected {(d,)}.")
        if meas.i < 0 or meas.j < 0:
            raise ValueError(f"Measurement {e}: negative pose index ({meas.i}, {meas.j}).")
        if meas.i == meas.j:
            raise ValueError(f"Measurement {e}: self loop on pose {meas.i}.")
        if not (meas.kappa > 0 and meas.tau > 0):
            raise ValueError(f"Measurement {e}: precisions must be positive (kappa={meas.kappa}, tau={meas.tau}).")
        max_idx = max(max_idx, meas.i, meas.j)

    n = max_idx + 1
    if num_poses is not None:
        if int(num_poses) < n:
            raise ValueError(f"num_poses={num_poses} but measurements reference pose {max_idx}.")
        n = int(num_poses)
    if n < 2:
        raise ValueError("A pose graph needs at least two poses.")
    return n, m, d


def oriented_incidence_matrix(measurements, n):
    """n x m incidence matrix: -1 at the source row, +1 at the target row of each edge."""
    m = len(measurements)
    rows = np.empty(2 * m, dtype=int)
    cols = np.repeat(np.arange(m), 2)
    vals = np.tile([-1.0, 1.0], m)
    for e, meas in enumerate(measurements):
        rows[2 * e] = meas.i
        rows[2 * e + 1] = meas.j
    return sparse.csr_matrix((vals, (rows, cols)), shape=(n, m))


def translational_weight_matrix(measurements, sqrt=True):
    """Diagonal m x m matrix of translational precisions (or their square roots)."""
    tau = np.array([meas.tau for meas in measurements], dtype=float)
    return sparse.diags(np.sqrt(tau) if sqrt else tau, format="csr")


def translational_data_matrix(measurements, n, d):
    """
    m x (n*d) matrix T: row e holds -t_e^T in the block column of the source pose.

    With this convention the translational residuals of all edges are
    t A + R T^T for t (d x n) and R (d x n*d).
    """
    m = len(measurements)
    rows = np.repeat(np.arange(m), d)
    cols = np.empty(m * d, dtype=int)
    vals = np.empty(m * d, dtype=float)
    for e, meas in enumerate(measurements):
        cols[e * d:(e + 1) * d] = meas.i * d + np.arange(d)
        vals[e * d:(e + 1) * d] = -np.asarray(meas.t, dtype=float)
    return sparse.csr_matrix((vals, (rows, cols)), shape=(m, n * d))


def rotational_connection_laplacian(measurements, n, d):
    """
    (n*d) x (n*d) connection Laplacian L(G^rho).

    Each edge (i, j, R, kappa) contributes kappa*I to blocks (i,i) and (j,j),
    -kappa*R to block (i,j) and -kappa*R^T to block (j,i), so that
    tr(R L R^T) = sum_e kappa_e ||R_j - R_i R_e||_F^2.
    """
    blk = np.arange(d)
    I_r, I_c = np.meshgrid(blk, blk, indexing="ij")
    I_r, I_c = I_r.ravel(), I_c.ravel()

    rows, cols, vals = [], [], []
    for meas in measurements:
        i, j, kappa = meas.i, meas.j, float(meas.kappa)
        R = np.asarray(meas.R, dtype=float)

        # diagonal blocks
        rows += [i * d + blk, j * d + blk]
        cols += [i * d + blk, j * d + blk]
        vals += [np.full(d, kappa), np.full(d, kappa)]

        # off-diagonal blocks
        rows += [i * d + I_r, j * d + I_c]
        cols += [j * d + I_c, i * d + I_r]
        vals += [-kappa * R.ravel(), -kappa * R.ravel()]

    rows = np.concatenate(rows)
    cols = np.concatenate(cols)
    vals = np.concatenate(vals)
    # duplicate (row, col) entries are summed by the constructor
    return sparse.csr_matrix((vals, (rows, cols)), shape=(n * d, n * d))


def reduced_incidence_matrix(A, gauge_pose=0):
    """Drop the row of the gauge pose (its translation is pinned at the origin)."""
    n = A.shape[0]
    keep = np.setdiff1d(np.arange(n), [gauge_pose])
    return sparse.csr_matrix(A[keep, :])


def quadratic_form_matrix(A, Omega, T, LGrho):
    """
    Full (n + n*d) x (n + n*d) matrix M of the translation-explicit problem,

        M = [[ A Omega A^T     A Omega T          ],
             [ T^T Omega A^T   T^T Omega T + LGrho ]]

    so that F(X) = tr(X M X^T) for X = [t | R].
    """
    AO = A @ Omega
    TO = T.T @ Omega
    M = sparse.bmat([[AO @ A.T, AO @ T],
                     [TO @ A.T, TO @ T + LGrho]], format="csr")
    return 0.5 * (M + M.T)


def check_connected(A):
    """
    Raise ValueError unless the graph with incidence matrix A is connected.

    After gauge fixing, a disconnected graph makes the reduced incidence Gram
    matrix singular, so this must be rejected at construction.
    """
    n = A.shape[0]
    adj = abs(A) @ abs(A).T
    n_comp, labels = connected_components(adj, directed=False)
    if n_comp != 1:
        sizes = np.bincount(labels)
        raise ValueError(
            f"Measurement graph is disconnected: {n_comp} components over {n} poses "
            f"(component sizes {sizes.tolist()})."
        )
    return labels


# =============================================================================
# Synthetic pose graphs
# =============================================================================

def random_rotation(d, rng=None, angle_scale=np.pi):
    """Random rotation in SO(d) with rotation angles of size up to angle_scale."""
    rng = np.random.default_rng(rng)
    W = rng.standard_normal((d, d))
    W = 0.5 * (W - W.T)
    nrm = np.linalg.norm(W)
    if nrm > 0:
        W *= angle_scale * rng.uniform() / nrm
    # matrix exponential of a skew matrix via eigendecomposition of i*W
    w, V = np.linalg.eigh(1j * W)
    R = (V @ np.diag(np.exp(-1j * w)) @ V.conj().T).real
    return project_to_SOd(R)


def make_measurement(i, j, Ri, ti, Rj, tj, kappa=1.0, tau=1.0):
    """Noiseless relative measurement between two absolute poses."""
    R = Ri.T @ Rj
    t = Ri.T @ (tj - ti)
    return RelativePoseMeasurement(i, j, R, t, kappa, tau)


def make_cycle_measurements(n, d=3, kappa=1.0, tau=1.0):
    """n-pose cycle with identity rotations and zero translations."""
    I = np.eye(d)
    z = np.zeros(d)
    return [RelativePoseMeasurement(k, (k + 1) % n, I.copy(), z.copy(), kappa, tau) for k in range(n)]


def make_synthetic_pose_graph(n, d=3, num_loop_closures=None, rot_noise=0.0, trans_noise=0.0,
                              kappa=100.0, tau=10.0, step=1.0, seed=0):
    """
    Random trajectory with odometry edges i -> i+1 plus random loop closures.

    Returns (measurements, R_true, t_true) with R_true (n, d, d), t_true (n, d).
    Pose 0 is at the identity. Noise is applied as a random rotation of angle
    ~rot_noise and Gaussian translation noise of std trans_noise.
    """
    if n < 2:
        raise ValueError("n must be at least 2")
    rng = np.random.default_rng(seed)

    R_true = np.empty((n, d, d))
    t_true = np.empty((n, d))
    R_true[0] = np.eye(d)
    t_true[0] = 0.0
    for k in range(1, n):
        dR = random_rotation(d, rng, angle_scale=0.5)
        R_true[k] = R_true[k - 1] @ dR
        t_true[k] = t_true[k - 1] + R_true[k - 1] @ (step * rng.standard_normal(d))

    edges = [(k, k + 1) for k in range(n - 1)]
    if num_loop_closures is None:
        num_loop_closures = n // 2
    existing = set(edges)
    tries = 0
    while len(edges) < n - 1 + num_loop_closures and tries < 100 * (num_loop_closures + 1):
        tries += 1
        i, j = sorted(rng.choice(n, size=2, replace=False).tolist())
        if (i, j) in existing:
            continue
        existing.add((i, j))
        edges.append((i, j))

    measurements = []
    for i, j in edges:
        meas = make_measurement(i, j, R_true[i], t_true[i], R_true[j], t_true[j], kappa, tau)
        R_noisy = meas.R
        t_noisy = meas.t
        if rot_noise > 0:
            R_noisy = R_noisy @ random_rotation(d, rng, angle_scale=rot_noise)
        if trans_noise > 0:
            t_noisy = t_noisy + trans_noise * rng.standard_normal(d)
        measurements.append(RelativePoseMeasurement(i, j, R_noisy, t_noisy, kappa, tau))

    return measurements, R_true, t_true
