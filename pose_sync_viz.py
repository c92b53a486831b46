"""
Visualization utilities for pose-synchronization results.

Kept separate so you can add more visualizations without importing matplotlib
into the solver/core modules.
"""


import numpy as np
import matplotlib.pyplot as plt


def align_poses(X, num_poses, anchor=0):
    """
    Express poses X = [t | R] in the frame of pose `anchor`.

    Solutions are only defined up to a global rigid motion, so this is applied
    before comparing or plotting two estimates.
    """
    X = np.asarray(X, dtype=float)
    n = int(num_poses)
    d = X.shape[0]
    t = X[:, :n]
    R = X[:, n:]
    R0 = R[:, anchor * d:(anchor + 1) * d]
    t_al = R0.T @ (t - t[:, [anchor]])
    R_al = R0.T @ R
    return np.hstack([t_al, R_al])


def plot_poses(X, num_poses, measurements=None, X_ref=None, add_title=True, out_file=None, show=False,
               figsize=(6, 6)):
    """
    Plot the (x, y) translations of poses X = [t | R_1 ... R_n].

    - odometry/loop-closure edges from `measurements` (light gray)
    - heading of each pose (first column of R_i) as a short arrow
    - optional reference trajectory X_ref (dashed), aligned to pose 0

    Title includes the RMS translation error w.r.t. X_ref when given.
    """
    n = int(num_poses)
    X = align_poses(X, n)
    d = X.shape[0]
    t = X[:, :n]

    fig, ax = plt.subplots(figsize=figsize)

    if measurements is not None:
        for meas in measurements:
            ax.plot(t[0, [meas.i, meas.j]], t[1, [meas.i, meas.j]], color="0.8", lw=0.8, zorder=1)

    ax.plot(t[0], t[1], "-o", ms=3, lw=1.2, label="estimate", zorder=2)

    heading = X[:, n:].reshape(d, n, d)[:, :, 0]        # first column of each R_i
    span = float(np.max(np.ptp(t[:2], axis=1))) if n > 1 else 1.0
    scale = 0.05 * (span if span > 0 else 1.0)
    ax.quiver(t[0], t[1], heading[0], heading[1], angles="xy", scale_units="xy",
              scale=1.0 / scale, width=0.003, color="C0", zorder=3)

    rms = np.nan
    if X_ref is not None:
        X_ref = align_poses(X_ref, n)
        t_ref = X_ref[:, :n]
        ax.plot(t_ref[0], t_ref[1], "--", color="C1", lw=1.0, label="reference", zorder=2)
        rms = float(np.sqrt(np.mean(np.sum((t - t_ref) ** 2, axis=0))))

    ax.set_aspect("equal", adjustable="datalim")
    ax.set_xlabel("x")
    ax.set_ylabel("y")
    ax.legend(loc="best", fontsize=8)

    if add_title:
        ax.set_title(rf"Pose estimate ($n={n}$, $d={d}$)" + "\n"
                     + rf"RMS translation error $= {rms:.3g}$", fontsize=9)

    plt.tight_layout()

    if out_file is not None:
        fig.savefig(out_file, dpi=150, bbox_inches="tight")
    if show:
        plt.show()
    if out_file is not None and not show:
        plt.close(fig)

    return fig, ax


def plot_convergence(history, out_file=None, show=False, figsize=(8, 3.5)):
    """
    Plot objective value and Riemannian gradient norm per iteration.

    history : dict with lists "f", "grad_norm" and optionally "rank"
              (rank changes are marked with vertical lines).
    """
    f = np.asarray(history["f"], dtype=float)
    g = np.asarray(history["grad_norm"], dtype=float)
    it = np.arange(f.size)

    fig, axes = plt.subplots(1, 2, figsize=figsize)
    axes[0].plot(it, f, "-")
    axes[0].set_title("objective F(Y)", fontsize=9)
    axes[1].semilogy(it, np.maximum(g, np.finfo(float).tiny), "-")
    axes[1].set_title(r"$\|\mathrm{grad}\, F(Y)\|$", fontsize=9)

    ranks = history.get("rank")
    if ranks is not None and len(ranks) == f.size:
        changes = np.flatnonzero(np.diff(np.asarray(ranks))) + 1
        for ax in axes:
            for k in changes:
                ax.axvline(k, color="0.6", ls=":", lw=0.8)

    for ax in axes:
        ax.set_xlabel("iteration")

    plt.tight_layout()

    if out_file is not None:
        fig.savefig(out_file, dpi=150, bbox_inches="tight")
    if show:
        plt.show()
    if out_file is not None and not show:
        plt.close(fig)

    return fig, axes
