"""
Product of Stiefel manifolds used as the domain of the rank-restricted relaxation.

This module contains:
  - StiefelProduct: St(d, r)^n with tangent projection, polar retraction, sampling
  - Rotation helpers (nearest SO(d) matrix for single blocks or stacks)

Points are stored as dense r x (n*d) arrays Y = [Y_1 | ... | Y_n], each block an
r x d matrix with orthonormal columns. All per-block work is done on (n, r, d)
stacks so numpy can batch the SVDs.

It is intentionally free of problem data (measurements, sparse matrices).
"""


import numpy as np


def sym(A):
    """Symmetric part of a square matrix, or of every matrix in a stack."""
    return 0.5 * (A + np.swapaxes(A, -1, -2))


def project_to_SOd(R):
    """
    Nearest rotation (Frobenius norm) to R.

    R can be a single (d,d) matrix or a stack (k,d,d). Uses the SVD
    R = U S V^T and flips the last singular direction when det(U V^T) < 0.
    """
    R = np.asarray(R, dtype=float)
    U, _, Vt = np.linalg.svd(R)
    det = np.linalg.det(U @ Vt)
    # flip last column of U where the polar factor is a reflection
    U = U.copy()
    U[..., :, -1] *= np.where(det < 0, -1.0, 1.0)[..., None]
    return U @ Vt


class StiefelProduct:
    """
    The product manifold St(d, r)^n.

    Parameters
    ----------
    n : int
        Number of factors (poses).
    d : int
        Number of orthonormal columns per block.
    r : int
        Number of rows (relaxation rank), r >= d.
    """

    def __init__(self, n, d, r):
        n, d, r = int(n), int(d), int(r)
        if n < 1:
            raise ValueError("n must be a positive integer")
        if d < 1:
            raise ValueError("d must be a positive integer")
        if r < d:
            raise ValueError(f"Stiefel manifold St({d}, {r}) requires r >= d.")
        self.n = n
        self.d = d
        self.r = r

    @property
    def shape(self):
        return (self.r, self.n * self.d)

    def __repr__(self):
        return f"StiefelProduct(n={self.n}, d={self.d}, r={self.r})"

    # ------------------------------------------------------------------
    # block reshaping
    # ------------------------------------------------------------------
    def _check(self, *mats):
        for M in mats:
            if M.shape != self.shape:
                raise ValueError(f"Expected shape {self.shape} for a point of {self!r}, got {M.shape}.")

    def to_blocks(self, Y):
        """(r, n*d) -> (n, r, d) stack of blocks."""
        return Y.reshape(self.r, self.n, self.d).transpose(1, 0, 2)

    def from_blocks(self, blocks):
        """(n, r, d) stack -> (r, n*d) matrix."""
        return blocks.transpose(1, 0, 2).reshape(self.r, self.n * self.d)

    # ------------------------------------------------------------------
    # geometry
    # ------------------------------------------------------------------
    def project(self, A):
        """Per-block polar factor: the nearest point of the manifold to A."""
        A = np.asarray(A, dtype=float)
        self._check(A)
        U, _, Vt = np.linalg.svd(self.to_blocks(A), full_matrices=False)
        return self.from_blocks(U @ Vt)

    def sym_block_diag_product(self, A, B, C):
        """
        Block-wise A_i * sym(B_i^T C_i).

        This is the building block of both the tangent projection
        (A = B = Y) and the curvature term of the Riemannian Hessian.
        """
        self._check(A, B, C)
        Ab, Bb, Cb = self.to_blocks(A), self.to_blocks(B), self.to_blocks(C)
        P = sym(np.swapaxes(Bb, 1, 2) @ Cb)     # (n, d, d)
        return self.from_blocks(Ab @ P)

    def proj(self, Y, V):
        """Orthogonal projection of V onto the tangent space at Y."""
        Y = np.asarray(Y, dtype=float)
        V = np.asarray(V, dtype=float)
        return V - self.sym_block_diag_product(Y, Y, V)

    def retract(self, Y, V):
        """Polar retraction R_Y(V) = polar(Y + V), taken block by block."""
        Y = np.asarray(Y, dtype=float)
        V = np.asarray(V, dtype=float)
        self._check(Y, V)
        return self.project(Y + V)

    def random_sample(self, rng=None):
        """
        Haar-random point: polar factor of a Gaussian matrix in each block.

        rng may be a seed or a numpy Generator.
        """
        rng = np.random.default_rng(rng)
        G = rng.standard_normal(self.shape)
        return self.project(G)

    def is_feasible(self, Y, tol=1e-8):
        """True if every block of Y has orthonormal columns to within tol."""
        Y = np.asarray(Y, dtype=float)
        self._check(Y)
        Yb = self.to_blocks(Y)
        G = np.swapaxes(Yb, 1, 2) @ Yb
        return float(np.max(np.abs(G - np.eye(self.d)))) < tol
