"""
Core algorithms and data structures for rank-restricted pose synchronization.

This module contains:
  - Sparse factorization helpers and the projection solver strategies
    (Cholesky / QR) used to eliminate translations
  - Preconditioners (Jacobi / incomplete Cholesky) for the inner CG solves
  - PoseSyncProblem: cached data matrices, objective, Euclidean and Riemannian
    gradient, Riemannian Hessian-vector products, rounding and chordal initialization
  - Minimum-eigenvalue certification of S - Lambda(Y) (Lanczos via ARPACK)
  - Tangent-space preconditioned conjugate gradient

The objective is F(Y) = tr(Y S Y^T) over Y in (a product with) St(d, r)^n, where
S = Q (translation-implicit) or S = M (translation-explicit).

It is intentionally free of demo/CLI/plotting code.
"""


import time

import numpy as np
from scipy import sparse
from scipy import linalg as sp_linalg
from scipy.sparse.linalg import (
    ArpackNoConvergence,
    LinearOperator,
    eigsh,
    spilu,
    splu,
)

from pose_sync_manifold import StiefelProduct, project_to_SOd, sym
from pose_sync_matrices import (
    check_connected,
    infer_problem_dimensions,
    oriented_incidence_matrix,
    quadratic_form_matrix,
    reduced_incidence_matrix,
    rotational_connection_laplacian,
    translational_data_matrix,
    translational_weight_matrix,
)

FORMULATIONS = ("implicit", "explicit")


def _inner(A, B):
    """Frobenius inner product <A, B> = tr(A^T B)."""
    return float(np.sum(A * B))


# =============================================================================
# Sparse factorizations
# =============================================================================

def sparse_symmetric_factor(G):
    """
    Sparse symmetric factorization G = L D L^T of an SPD matrix G.

    SuperLU is run in symmetric mode with pure diagonal pivoting (no row
    interchanges), so its LU factor is L (D L^T) up to a symmetric fill-reducing
    permutation, and the pivots diag(U) are the entries of D. All pivots
    positive certifies that G is positive definite; otherwise LinAlgError.
    Returns a SuperLU object (use .solve(rhs) with 1-D or 2-D rhs).
    """
    G = sparse.csc_matrix(G)
    try:
        factor = splu(
            G,
            permc_spec="MMD_AT_PLUS_A",
            diag_pivot_thresh=0.0,
            options=dict(SymmetricMode=True),
        )
    except RuntimeError as exc:
        raise np.linalg.LinAlgError(f"Sparse symmetric factorization failed: {exc}") from exc

    pivots = factor.U.diagonal()
    if np.any(pivots <= 0):
        raise np.linalg.LinAlgError(
            f"Matrix is not positive definite (min pivot {float(np.min(pivots)):.3e})."
        )
    return factor


class CholeskyProjectionSolver:
    """
    Least-squares solves against B = SqrtOmega_AredT through the normal equations.

    solve(rhs) returns x = (B^T B)^{-1} B^T rhs using a sparse L D L^T factor
    (see sparse_symmetric_factor) of the Gram matrix B^T B = Ared Omega Ared^T.
    Requires the Gram matrix to be SPD, which holds exactly when the
    measurement graph is connected.
    """

    name = "cholesky"

    def __init__(self, Ared_SqrtOmega):
        self.Ared_SqrtOmega = sparse.csr_matrix(Ared_SqrtOmega)
        self.gram = (self.Ared_SqrtOmega @ self.Ared_SqrtOmega.T).tocsc()
        self.factor = sparse_symmetric_factor(self.gram)

    def solve(self, rhs):
        return self.factor.solve(np.asarray(self.Ared_SqrtOmega @ rhs, dtype=float))


class QRProjectionSolver:
    """
    Least-squares solves against B = SqrtOmega_AredT from the triangular factor of B = QR.

    Q is never formed. R is accumulated by a row-blocked QR: B stays sparse and
    only block_rows of its rows are densified at a time, so memory is
    O(n^2 + block_rows * n) instead of O(m * n). Solves use the corrected
    semi-normal equations R^T R x = B^T rhs with one refinement step on the
    residual, which recovers the accuracy of a full QR solve.
    """

    name = "qr"

    def __init__(self, Ared_SqrtOmega, rcond=None, block_rows=1024):
        self.Ared_SqrtOmega = sparse.csr_matrix(Ared_SqrtOmega)
        self.SqrtOmega_AredT = sparse.csr_matrix(self.Ared_SqrtOmega.T)
        m, k = self.SqrtOmega_AredT.shape
        if m < k:
            raise np.linalg.LinAlgError(f"Reduced incidence matrix has fewer rows ({m}) than columns ({k}).")

        step = max(int(block_rows), k)
        R = np.zeros((0, k))
        for start in range(0, m, step):
            chunk = self.SqrtOmega_AredT[start:start + step].toarray()
            R = sp_linalg.qr(np.vstack([R, chunk]), mode="r")[0][:k]
        self.R = R

        diag = np.abs(np.diag(self.R))
        if rcond is None:
            rcond = np.finfo(float).eps * max(m, k)
        if diag.size and float(np.min(diag)) <= rcond * float(np.max(diag)):
            raise np.linalg.LinAlgError("Reduced incidence matrix is rank deficient (QR).")

    def _seminormal_solve(self, y):
        """x with R^T R x = y."""
        z = sp_linalg.solve_triangular(self.R, y, trans="T", lower=False)
        return sp_linalg.solve_triangular(self.R, z, lower=False)

    def solve(self, rhs):
        rhs = np.asarray(rhs, dtype=float)
        x = self._seminormal_solve(np.asarray(self.Ared_SqrtOmega @ rhs, dtype=float))
        resid = rhs - self.SqrtOmega_AredT @ x
        return x + self._seminormal_solve(np.asarray(self.Ared_SqrtOmega @ resid, dtype=float))


PROJECTION_SOLVERS = {
    "cholesky": CholeskyProjectionSolver,
    "qr": QRProjectionSolver,
}


def make_projection_solver(kind, Ared_SqrtOmega):
    """Build the projection solver strategy named by kind ('cholesky' or 'qr')."""
    try:
        cls = PROJECTION_SOLVERS[str(kind).lower()]
    except KeyError:
        raise ValueError(f"Unknown factorization '{kind}'. Valid: {list(PROJECTION_SOLVERS)}") from None
    return cls(Ared_SqrtOmega)


# =============================================================================
# Preconditioners
# =============================================================================

class JacobiPreconditioner:
    """Inverse of the (floored) diagonal of P, applied as a column scaling."""

    name = "jacobi"

    def __init__(self, P, jitter=1e-10):
        diag = np.asarray(P.diagonal(), dtype=float)
        self.inv_diag = 1.0 / np.maximum(diag, jitter)

    def apply(self, V):
        return V * self.inv_diag


class IncompleteCholeskyPreconditioner:
    """
    Incomplete factorization of P + shift * mean(diag(P)) * I.

    P is the connection Laplacian (implicit) or M (explicit); both are only
    positive semidefinite, hence the relative diagonal shift.

    Parameters
    ----------
    drop_tol : float
        Drop tolerance for the incomplete factorization.
    fill_factor : float
        Upper bound on the ratio of fill-in to nnz(P).
    shift : float
        Relative diagonal shift.
    """

    name = "incomplete_cholesky"

    def __init__(self, P, drop_tol=1e-4, fill_factor=10.0, shift=1e-3):
        P = sparse.csc_matrix(P)
        N = P.shape[0]
        mean_diag = float(np.mean(P.diagonal()))
        self.drop_tol = drop_tol
        self.fill_factor = fill_factor
        self.shift = shift * mean_diag
        P_shift = (P + self.shift * sparse.identity(N, format="csc")).tocsc()
        try:
            self.factor = spilu(
                P_shift,
                drop_tol=drop_tol,
                fill_factor=fill_factor,
                permc_spec="MMD_AT_PLUS_A",
                diag_pivot_thresh=0.0,
                options=dict(SymmetricMode=True),
            )
        except RuntimeError as exc:
            raise np.linalg.LinAlgError(f"Incomplete factorization failed: {exc}") from exc

    def apply(self, V):
        # rows of V are independent right-hand sides of P x = v
        return self.factor.solve(np.ascontiguousarray(V.T)).T


def make_preconditioner(kind, P, jacobi_jitter=1e-10, ichol_drop_tol=1e-4,
                        ichol_fill_factor=10.0, ichol_shift=1e-3):
    """Return a preconditioner object for P, or None for kind == 'none'."""
    k = "none" if kind is None else str(kind).lower()
    if k == "none":
        return None
    if k in ("jacobi", "diagonal"):
        return JacobiPreconditioner(P, jitter=jacobi_jitter)
    if k in ("incomplete_cholesky", "ichol"):
        return IncompleteCholeskyPreconditioner(P, drop_tol=ichol_drop_tol,
                                                fill_factor=ichol_fill_factor, shift=ichol_shift)
    raise ValueError(f"Unknown preconditioner '{kind}'. Valid: ['none', 'jacobi', 'incomplete_cholesky']")


# =============================================================================
# Problem
# =============================================================================

class PoseSyncProblem:
    """
    Rank-restricted Riemannian form of the pose-synchronization relaxation.

    Holds all precomputed data matrices, the projection solver and the
    preconditioner, and exposes the operators a Riemannian trust-region driver
    needs (objective, gradient, Hessian-vector product, preconditioner,
    retraction, tangent projection, random sampling).

    Points Y are r x N arrays:
      - implicit: N = n*d,      Y = [Y_1 | ... | Y_n]
      - explicit: N = n + n*d,  Y = [t | Y_1 | ... | Y_n], translation columns
        unconstrained

    Parameters
    ----------
    measurements : sequence of RelativePoseMeasurement
    formulation : {"implicit", "explicit"}
    factorization : {"cholesky", "qr"}
        Strategy used for the orthogonal projection Pi and translation recovery.
    preconditioner : {"none", "jacobi", "incomplete_cholesky"}
    rank : int, optional
        Initial relaxation rank (defaults to d).
    num_poses : int, optional
        Defaults to 1 + the largest pose index in measurements.
    ichol_drop_tol, ichol_fill_factor, ichol_shift : float
        Incomplete Cholesky controls (see IncompleteCholeskyPreconditioner).
    jacobi_jitter : float
        Floor for the Jacobi diagonal.
    verbose : bool
        Print construction timings.
    log_prefix : str
        Prefix for printed lines.
    """

    def __init__(
        self,
        measurements,
        formulation="implicit",
        factorization="cholesky",
        preconditioner="incomplete_cholesky",
        rank=None,
        num_poses=None,
        ichol_drop_tol=1e-4,
        ichol_fill_factor=10.0,
        ichol_shift=1e-3,
        jacobi_jitter=1e-10,
        verbose=False,
        log_prefix="",
    ):
        pfx = log_prefix or ""
        formulation = str(formulation).lower()
        if formulation not in FORMULATIONS:
            raise ValueError(f"formulation must be one of {FORMULATIONS}, got '{formulation}'.")

        measurements = list(measurements)
        n, m, d = infer_problem_dimensions(measurements, num_poses=num_poses)
        self._formulation = formulation
        self.n = n
        self.m = m
        self.d = d

        if verbose:
            print(f"{pfx}[PoseSync] n={n} m={m} d={d} formulation={formulation}")

        t0 = time.perf_counter()
        self.A = oriented_incidence_matrix(measurements, n)
        check_connected(self.A)

        SqrtOmega = translational_weight_matrix(measurements, sqrt=True)
        T = translational_data_matrix(measurements, n, d)
        self.LGrho = rotational_connection_laplacian(measurements, n, d)

        Ared = reduced_incidence_matrix(self.A, gauge_pose=0)
        self.Ared_SqrtOmega = sparse.csr_matrix(Ared @ SqrtOmega)
        self.SqrtOmega_AredT = sparse.csr_matrix(self.Ared_SqrtOmega.T)
        self.SqrtOmega_T = sparse.csr_matrix(SqrtOmega @ T)
        self.TT_SqrtOmega = sparse.csr_matrix(self.SqrtOmega_T.T)

        if formulation == "explicit":
            Omega = translational_weight_matrix(measurements, sqrt=False)
            self.M = quadratic_form_matrix(self.A, Omega, T, self.LGrho)
        else:
            self.M = None
        t1 = time.perf_counter()
        if verbose:
            print(f"{pfx}[PoseSync] data matrices built in {t1 - t0:.3e} sec")

        self._projection = make_projection_solver(factorization, self.Ared_SqrtOmega)
        t2 = time.perf_counter()
        if verbose:
            print(f"{pfx}[PoseSync] {self._projection.name} projection solver built in {t2 - t1:.3e} sec")

        P = self.LGrho if formulation == "implicit" else self.M
        self._preconditioner = make_preconditioner(
            preconditioner, P,
            jacobi_jitter=jacobi_jitter,
            ichol_drop_tol=ichol_drop_tol,
            ichol_fill_factor=ichol_fill_factor,
            ichol_shift=ichol_shift,
        )
        t3 = time.perf_counter()
        if verbose:
            print(f"{pfx}[PoseSync] preconditioner={preconditioner} built in {t3 - t2:.3e} sec")

        self._manifold = StiefelProduct(n, d, d if rank is None else rank)

    # ------------------------------------------------------------------
    # accessors
    # ------------------------------------------------------------------
    @property
    def formulation(self):
        return self._formulation

    @property
    def num_poses(self):
        return self.n

    @property
    def num_measurements(self):
        return self.m

    @property
    def dimension(self):
        return self.d

    @property
    def relaxation_rank(self):
        return self._manifold.r

    @property
    def manifold(self):
        return self._manifold

    @property
    def projection_solver(self):
        return self._projection

    @property
    def preconditioner(self):
        return self._preconditioner

    @property
    def rotation_offset(self):
        """Column index at which the Stiefel blocks start."""
        return 0 if self._formulation == "implicit" else self.n

    @property
    def point_dim(self):
        """Number of columns N of a point Y."""
        return self.rotation_offset + self.n * self.d

    def __repr__(self):
        return (f"PoseSyncProblem(n={self.n}, m={self.m}, d={self.d}, r={self.relaxation_rank}, "
                f"formulation='{self._formulation}', factorization='{self._projection.name}')")

    def set_relaxation_rank(self, rank):
        """Change r. Replaces the manifold in a single assignment; no data is rebuilt."""
        self._manifold = StiefelProduct(self.n, self.d, rank)

    # ------------------------------------------------------------------
    # shape helpers
    # ------------------------------------------------------------------
    def _check_point(self, Y, name="Y"):
        Y = np.asarray(Y, dtype=float)
        if Y.ndim != 2 or Y.shape[1] != self.point_dim:
            raise ValueError(f"{name} must have shape (k, {self.point_dim}), got {Y.shape}.")
        return Y

    def _check_pair(self, Y, V, name="dotY"):
        Y = self._check_point(Y)
        V = self._check_point(V, name)
        if V.shape != Y.shape:
            raise ValueError(f"{name} has shape {V.shape} but Y has shape {Y.shape}.")
        return Y, V

    def _rotation_blocks(self, X):
        """(k, N) -> (n, k, d) stack of the Stiefel blocks of X."""
        o = self.rotation_offset
        k = X.shape[0]
        return X[:, o:].reshape(k, self.n, self.d).transpose(1, 0, 2)

    # ------------------------------------------------------------------
    # linear algebra
    # ------------------------------------------------------------------
    def Pi_product(self, X):
        """
        Orthogonal projection Pi X onto the complement of range(SqrtOmega_AredT).

        X is m x k (or length m). Same result for both projection solvers up to roundoff.
        """
        X = np.asarray(X, dtype=float)
        if X.shape[0] != self.m:
            raise ValueError(f"Pi_product expects {self.m} rows, got shape {X.shape}.")
        return X - self.SqrtOmega_AredT @ self._projection.solve(X)

    def Q_product(self, X):
        """Q X = LGrho X + T^T Omega^(1/2) Pi Omega^(1/2) T X, for X with n*d rows."""
        return self.LGrho @ X + self.TT_SqrtOmega @ self.Pi_product(self.SqrtOmega_T @ X)

    def _S_product(self, X):
        """S X for X with N rows (column form)."""
        if self._formulation == "implicit":
            return self.Q_product(X)
        return self.M @ X

    def data_matrix_product(self, Y):
        """
        Y S for Y with N columns (any number of rows).

        S is symmetric, so this is (S Y^T)^T and tr(Y^T data_matrix_product(Y)) = F(Y).
        """
        Y = self._check_point(Y)
        return np.asarray(self._S_product(Y.T)).T

    def evaluate_objective(self, Y):
        """F(Y) = tr(Y S Y^T)."""
        Y = self._check_point(Y)
        return _inner(Y, self.data_matrix_product(Y))

    def euclidean_gradient(self, Y):
        """nabla F(Y) = 2 Y S."""
        return 2.0 * self.data_matrix_product(Y)

    def riemannian_gradient(self, Y, nablaF_Y=None):
        """grad F(Y) = tangent projection of the Euclidean gradient."""
        if nablaF_Y is None:
            nablaF_Y = self.euclidean_gradient(Y)
        return self.tangent_space_projection(Y, nablaF_Y)

    def riemannian_hessian_vector_product(self, Y, dotY, nablaF_Y=None):
        """
        Hess F(Y)[dotY] for a tangent vector dotY at Y.

        On each Stiefel block:
            Proj_Y(2 dotY S - dotY_i sym(Y_i^T nablaF_i))
        The curvature term alone is not tangent, so the difference is projected
        and the result lies in T_Y. Translation columns (explicit) keep the
        Euclidean term 2 dotY S.
        """
        Y, dotY = self._check_pair(Y, dotY)
        if nablaF_Y is None:
            nablaF_Y = self.euclidean_gradient(Y)
        else:
            _, nablaF_Y = self._check_pair(Y, nablaF_Y, "nablaF_Y")

        H = 2.0 * self.data_matrix_product(dotY)
        SP = self._manifold
        o = self.rotation_offset
        curvature = SP.sym_block_diag_product(dotY[:, o:], Y[:, o:], nablaF_Y[:, o:])
        H[:, o:] = SP.proj(Y[:, o:], H[:, o:] - curvature)
        return H

    def precondition(self, Y, dotY):
        """
        Apply the configured preconditioner to dotY and project back onto T_Y.

        The preconditioners do not know the manifold geometry, so their output
        is re-projected. With no preconditioner, dotY is returned unchanged.
        """
        Y, dotY = self._check_pair(Y, dotY)
        if self._preconditioner is None:
            return dotY
        return self.tangent_space_projection(Y, self._preconditioner.apply(dotY))

    # ------------------------------------------------------------------
    # geometry
    # ------------------------------------------------------------------
    def tangent_space_projection(self, Y, dotY):
        """Orthogonal projection of dotY onto the tangent space of the domain at Y."""
        Y, dotY = self._check_pair(Y, dotY)
        o = self.rotation_offset
        P = dotY.copy()
        P[:, o:] = self._manifold.proj(Y[:, o:], dotY[:, o:])
        return P

    def retract(self, Y, dotY):
        """Retraction along dotY: polar per Stiefel block, addition on translations."""
        Y, dotY = self._check_pair(Y, dotY)
        o = self.rotation_offset
        Yplus = Y + dotY
        Yplus[:, o:] = self._manifold.retract(Y[:, o:], dotY[:, o:])
        return Yplus

    def random_sample(self, seed=None):
        """Random point of the domain at the current relaxation rank."""
        rng = np.random.default_rng(seed)
        R = self._manifold.random_sample(rng)
        if self._formulation == "implicit":
            return R
        t = rng.standard_normal((self.relaxation_rank, self.n))
        return np.hstack([t, R])

    # ------------------------------------------------------------------
    # rounding / initialization
    # ------------------------------------------------------------------
    def recover_translations(self, R):
        """
        Optimal translations for fixed rotations R (d x n*d), pose 0 at the origin.

        Minimizes sum_e tau_e ||t_j - t_i - R_i t_e||^2, a least-squares problem
        against SqrtOmega_AredT solved with the cached projection solver.
        """
        R = np.asarray(R, dtype=float)
        if R.shape != (self.d, self.n * self.d):
            raise ValueError(f"R must have shape {(self.d, self.n * self.d)}, got {R.shape}.")
        t_red = -self._projection.solve(self.SqrtOmega_T @ R.T)    # (n-1) x d
        t = np.zeros((self.d, self.n))
        t[:, 1:] = t_red.T
        return t

    def round_solution(self, Y):
        """
        Round a rank-r point Y to poses X = [t | R_1 ... R_n] (d x (n + n*d)).

        Truncated rank-d SVD, majority determinant sign fix, per-block projection
        onto SO(d); translations are recovered (implicit) or read off (explicit).
        """
        Y = self._check_point(Y)
        n, d, o = self.n, self.d, self.rotation_offset
        if Y.shape[0] < d:
            raise ValueError(f"Y must have at least d={d} rows to round, got {Y.shape[0]}.")

        _, s, Vt = np.linalg.svd(Y, full_matrices=False)
        R = s[:d, None] * Vt[:d]                 # d x N

        dets = np.linalg.det(self._rotation_blocks(R))
        if np.count_nonzero(dets > 0) < n / 2.0:
            # reflect so that the majority of blocks are proper rotations
            R[-1] *= -1.0

        Rb = project_to_SOd(self._rotation_blocks(R))             # (n, d, d)
        R_rot = Rb.transpose(1, 0, 2).reshape(d, n * d)

        if self._formulation == "implicit":
            t = self.recover_translations(R_rot)
        else:
            t = R[:, :o]
        return np.hstack([t, R_rot])

    def point_from_poses(self, X):
        """d x N point corresponding to rounded poses X = [t | R]."""
        X = np.asarray(X, dtype=float)
        if X.shape != (self.d, self.n + self.n * self.d):
            raise ValueError(f"X must have shape {(self.d, self.n + self.n * self.d)}, got {X.shape}.")
        if self._formulation == "implicit":
            return X[:, self.n:].copy()
        return X.copy()

    def chordal_initialization(self):
        """
        Chordal initialization at the current relaxation rank.

        Solves min tr(R LGrho R^T) with R_0 = I (a sparse SPD system on the
        remaining blocks), projects each block to SO(d), and embeds the result
        in the top d rows of an r x N zero matrix.
        """
        n, d = self.n, self.d
        L = sparse.csr_matrix(self.LGrho)
        L_rr = L[d:, d:]
        L_r0 = L[d:, :d].toarray()

        factor = sparse_symmetric_factor(L_rr)
        R_rest_T = factor.solve(-L_r0)                   # rows of block k are R_{k+1}^T

        Rb = np.concatenate([np.eye(d)[None], R_rest_T.reshape(n - 1, d, d).transpose(0, 2, 1)])
        Rb = project_to_SOd(Rb)
        R = Rb.transpose(1, 0, 2).reshape(d, n * d)

        Y = np.zeros((self.relaxation_rank, self.point_dim))
        o = self.rotation_offset
        Y[:d, o:] = R
        if self._formulation == "explicit":
            Y[:d, :o] = self.recover_translations(R)
        return Y

    # ------------------------------------------------------------------
    # certification
    # ------------------------------------------------------------------
    def compute_Lambda_blocks(self, Y):
        """
        d x n*d matrix of the diagonal blocks of the Lagrange multiplier Lambda(Y).

        Lambda_i = sym((Y S)_i^T Y_i) for each Stiefel block i.
        """
        Y = self._check_point(Y)
        SYb = self._rotation_blocks(self.data_matrix_product(Y))     # (n, k, d)
        Yb = self._rotation_blocks(Y)
        Lam = sym(np.swapaxes(SYb, 1, 2) @ Yb)                       # (n, d, d)
        return Lam.transpose(1, 0, 2).reshape(self.d, self.n * self.d)

    def compute_S_minus_Lambda_min_eig(
        self,
        Y,
        max_iterations=10000,
        min_eigenvalue_nonnegativity_tolerance=1e-5,
        num_Lanczos_vectors=20,
        seed=0,
        verbose=False,
        log_prefix="",
    ):
        """
        Minimum eigenpair of S - Lambda(Y) by Lanczos.

        Stage 1 finds the largest-magnitude eigenvalue lambda_lm. If it is
        negative it is the minimum. Otherwise the spectrum is shifted by
        -2 lambda_lm, making lambda_min - 2 lambda_lm the largest-magnitude
        eigenvalue, and stage 2 is started from a ~3% perturbation of the first
        row of Y (an eigenvector for eigenvalue 0 when Y is critical).

        Returns
        -------
        min_eigenvalue : float (nan if not converged)
        min_eigenvector : (N,) unit vector or None
        info : dict with keys converged, lambda_lm, stage, time
        """
        pfx = log_prefix or ""
        Y = self._check_point(Y)
        N = self.point_dim
        ncv = min(int(num_Lanczos_vectors), N)
        rng = np.random.default_rng(seed)
        info = {"converged": False, "lambda_lm": float("nan"), "stage": 1, "time": 0.0}

        t0 = time.perf_counter()
        lm_op = SMinusLambdaOperator(self, Y)
        try:
            w, V = eigsh(lm_op, k=1, which="LM", ncv=ncv, maxiter=max_iterations,
                         tol=1e-4, v0=rng.standard_normal(N))
        except ArpackNoConvergence:
            info["time"] = time.perf_counter() - t0
            if verbose:
                print(f"{pfx}[MinEig] largest-magnitude eigenvalue did not converge "
                      f"(max_iterations={max_iterations}, ncv={ncv})")
            return float("nan"), None, info

        lambda_lm = float(w[0])
        info["lambda_lm"] = lambda_lm
        if verbose:
            print(f"{pfx}[MinEig] lambda_lm={lambda_lm: .6e}  time={time.perf_counter() - t0:.3e}")

        if lambda_lm <= 0:
            v = V[:, 0] / np.linalg.norm(V[:, 0])
            info["converged"] = True
            info["time"] = time.perf_counter() - t0
            return lambda_lm, v, info

        info["stage"] = 2
        min_op = SMinusLambdaOperator(self, Y, sigma=-2.0 * lambda_lm)

        v0 = Y[0].copy()
        perturbation = rng.standard_normal(N)
        perturbation /= np.linalg.norm(perturbation)
        v0_norm = float(np.linalg.norm(v0))
        v0 = v0 + 0.03 * v0_norm * perturbation if v0_norm > 0 else perturbation

        try:
            w, V = eigsh(min_op, k=1, which="LM", ncv=ncv, maxiter=max_iterations,
                         tol=min_eigenvalue_nonnegativity_tolerance / lambda_lm, v0=v0)
        except ArpackNoConvergence:
            info["time"] = time.perf_counter() - t0
            if verbose:
                print(f"{pfx}[MinEig] shifted minimum eigenvalue did not converge "
                      f"(max_iterations={max_iterations}, ncv={ncv})")
            return float("nan"), None, info

        min_eigenvalue = float(w[0]) + 2.0 * lambda_lm
        v = V[:, 0] / np.linalg.norm(V[:, 0])
        info["converged"] = True
        info["time"] = time.perf_counter() - t0
        if verbose:
            print(f"{pfx}[MinEig] lambda_min={min_eigenvalue: .6e}  time={info['time']:.3e}")
        return min_eigenvalue, v, info

    def certify_solution(self, Y, min_eigenvalue_nonnegativity_tolerance=1e-5, **kwargs):
        """
        Second-order certificate for a critical point Y.

        certified is True only when Lanczos converged and
        lambda_min(S - Lambda(Y)) >= -tolerance.
        """
        lam, v, info = self.compute_S_minus_Lambda_min_eig(
            Y,
            min_eigenvalue_nonnegativity_tolerance=min_eigenvalue_nonnegativity_tolerance,
            **kwargs,
        )
        certified = bool(info["converged"] and lam >= -min_eigenvalue_nonnegativity_tolerance)
        return {
            "certified": certified,
            "converged": info["converged"],
            "min_eigenvalue": lam,
            "min_eigenvector": v,
            "info": info,
        }

    def construct_escape_direction(self, Y, min_eigenvector):
        """
        Saddle escape for the Riemannian staircase.

        Returns (Y_plus, Ydot) with Y_plus = [Y; 0] of rank r+1 and
        Ydot = [0; v^T], a tangent direction of second-order descent at Y_plus
        when v is an eigenvector of a negative eigenvalue of S - Lambda(Y).
        The caller sets the relaxation rank to r+1 before retracting.
        """
        Y = self._check_point(Y)
        v = np.asarray(min_eigenvector, dtype=float).ravel()
        if v.size != self.point_dim:
            raise ValueError(f"eigenvector must have length {self.point_dim}, got {v.size}.")
        Y_plus = np.vstack([Y, np.zeros((1, self.point_dim))])
        Ydot = np.zeros_like(Y_plus)
        Ydot[-1] = v
        return Y_plus, Ydot


class SMinusLambdaOperator(LinearOperator):
    """
    Matrix-free y = (S - Lambda(Y) + sigma I) x.

    sigma only shifts the spectrum (every eigenvalue moves by exactly sigma),
    which is used to make the minimum eigenvalue the largest in magnitude.
    """

    def __init__(self, problem, Y, sigma=0.0):
        N = problem.point_dim
        super().__init__(dtype=np.float64, shape=(N, N))
        self.problem = problem
        self.sigma = float(sigma)
        self.Lambda_blocks = problem.compute_Lambda_blocks(Y)
        n, d = problem.n, problem.d
        self._Lambda_stack = self.Lambda_blocks.reshape(d, n, d).transpose(1, 0, 2)
        self._offset = problem.rotation_offset

    def perform_op(self, x):
        x = np.asarray(x, dtype=float).ravel()
        y = np.asarray(self.problem._S_product(x), dtype=float).ravel()
        o = self._offset
        xr = x[o:].reshape(self.problem.n, self.problem.d)
        y[o:] -= np.einsum("iab,ib->ia", self._Lambda_stack, xr).ravel()
        if self.sigma != 0:
            y += self.sigma * x
        return y

    def _matvec(self, x):
        return self.perform_op(x)

    def _rmatvec(self, x):
        return self.perform_op(x)


# =============================================================================
# Tangent-space conjugate gradient
# =============================================================================

def tangent_cg_solve(hessvec, b, x0=None, tol=1e-6, max_iter=200, M_inv=None,
                     verbose=False, log_prefix=""):
    """
    Preconditioned conjugate gradient for Hess[x] = b on a tangent space.

    Args:
      hessvec: callable(V)->Hess[V] (tangent in, tangent out)
      b: tangent RHS (matrix)
      x0: initial guess
      tol: relative tolerance on residual norm ||r|| <= tol*||b||
      max_iter: max CG iterations
      M_inv: optional preconditioner callable(Z)->approx Hess^{-1} Z, tangent valued
      verbose: if True, print progress every 10 iterations

    Stops early on non-positive curvature (the Hessian need not be positive
    definite away from a minimizer).

    Returns:
      x, info dict with keys: iters, converged, rel_res, abs_res, negative_curvature
    """
    pfx = log_prefix or ""
    b = np.asarray(b, dtype=float)
    if x0 is None:
        x = np.zeros_like(b)
        r = b.copy()
    else:
        x = np.asarray(x0, dtype=float).copy()
        r = b - hessvec(x)

    z = M_inv(r) if M_inv is not None else r.copy()
    p = z.copy()
    rz_old = _inner(r, z)

    b_norm = float(np.linalg.norm(b))
    if b_norm == 0.0:
        return x, {"iters": 0, "converged": True, "rel_res": 0.0, "abs_res": 0.0,
                   "negative_curvature": False}

    abs_tol = tol * b_norm
    negative_curvature = False
    it = 0

    for it in range(1, max_iter + 1):
        Hp = hessvec(p)
        denom = _inner(p, Hp)
        if denom <= 0:
            negative_curvature = True
            break

        alpha = rz_old / denom
        x += alpha * p
        r -= alpha * Hp

        abs_res = float(np.linalg.norm(r))

        if verbose and it % 10 == 0:
            print(f"{pfx}[tCG] iter {it} rel_res={abs_res / b_norm:.2e}")

        if abs_res <= abs_tol:
            return x, {"iters": it, "converged": True, "rel_res": abs_res / b_norm,
                       "abs_res": abs_res, "negative_curvature": False}

        z = M_inv(r) if M_inv is not None else r
        rz_new = _inner(r, z)
        beta = rz_new / rz_old
        p = z + beta * p
        rz_old = rz_new

    abs_res = float(np.linalg.norm(r))
    return x, {"iters": it, "converged": False, "rel_res": abs_res / b_norm, "abs_res": abs_res,
               "negative_curvature": negative_curvature}
