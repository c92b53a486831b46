"""
pose_sync_precondition_benchmark.py

Benchmark the preconditioning strategies of PoseSyncProblem on the inner
tangent-space Newton systems a trust-region driver solves:

    Hess F(Y)[eta] = -grad F(Y),   eta in T_Y

Strategies: "none", "jacobi", "incomplete_cholesky".
Metrics:
- build time of the problem (dominated by factorization + preconditioner)
- preconditioned tangent CG iterations / time, median over several points Y
  (retractions of the chordal initialization along random tangent directions)

Run:
    python pose_sync_precondition_benchmark.py --n 200 --d 3

Or import and call benchmark_preconditioners / benchmark_suite.
"""
from __future__ import annotations

import argparse
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from pose_sync_core import PoseSyncProblem, tangent_cg_solve
from pose_sync_matrices import make_synthetic_pose_graph

PRECONDITIONERS = ("none", "jacobi", "incomplete_cholesky")


# -----------------------------
# Results
# -----------------------------
@dataclass
class PCGResult:
    iters: int
    converged: bool
    rel_resid: float
    runtime_sec: float
    negative_curvature: bool = False


@dataclass
class BenchmarkReport:
    preconditioner: str
    n: int
    m: int
    d: int
    formulation: str
    build_time_sec: float
    pcg_iters_median: float
    pcg_time_median: float
    converged_fraction: float
    results: List[PCGResult] = field(default_factory=list)


# -----------------------------
# Newton systems
# -----------------------------
def newton_system_pcg(problem: PoseSyncProblem,
                      Y: np.ndarray,
                      use_preconditioner: bool = True,
                      tol: float = 1e-8,
                      max_iter: Optional[int] = None) -> Tuple[np.ndarray, PCGResult]:
    """
    Solve Hess F(Y)[eta] = -grad F(Y) with tangent PCG.

    Convergence check: ||r||/||b|| <= tol.
    """
    if max_iter is None:
        max_iter = 5 * problem.point_dim

    nablaF = problem.euclidean_gradient(Y)
    b = -problem.riemannian_gradient(Y, nablaF)
    M_inv = (lambda V: problem.precondition(Y, V)) if use_preconditioner else None

    t0 = time.perf_counter()
    eta, info = tangent_cg_solve(
        lambda V: problem.riemannian_hessian_vector_product(Y, V, nablaF),
        b,
        tol=tol,
        max_iter=max_iter,
        M_inv=M_inv,
    )
    t1 = time.perf_counter()
    return eta, PCGResult(
        iters=int(info["iters"]),
        converged=bool(info["converged"]),
        rel_resid=float(info["rel_res"]),
        runtime_sec=float(t1 - t0),
        negative_curvature=bool(info["negative_curvature"]),
    )


def perturbed_points(problem: PoseSyncProblem, num_points: int = 5, scale: float = 0.1,
                     seed: int = 0) -> List[np.ndarray]:
    """Retractions of the chordal initialization along random tangent directions."""
    rng = np.random.default_rng(seed)
    Y0 = problem.chordal_initialization()
    points = []
    for _ in range(num_points):
        V = problem.tangent_space_projection(Y0, rng.standard_normal(Y0.shape))
        V *= scale / max(float(np.linalg.norm(V)), 1e-300)
        points.append(problem.retract(Y0, V))
    return points


# -----------------------------
# Benchmark driver
# -----------------------------
def benchmark_preconditioners(measurements: Sequence[Any],
                              preconditioners: Sequence[str] = PRECONDITIONERS,
                              formulation: str = "implicit",
                              factorization: str = "cholesky",
                              num_points: int = 5,
                              perturbation: float = 0.1,
                              cg_tol: float = 1e-8,
                              cg_max_iter: Optional[int] = None,
                              seed: int = 0,
                              **problem_kwargs: Any) -> List[BenchmarkReport]:
    """
    Build one problem per preconditioner and run tangent PCG at the same points.

    Returns one BenchmarkReport per preconditioner, in the given order.
    """
    reports = []
    points = None
    for name in preconditioners:
        t0 = time.perf_counter()
        problem = PoseSyncProblem(measurements, formulation=formulation, factorization=factorization,
                                  preconditioner=name, **problem_kwargs)
        build_time = time.perf_counter() - t0

        if points is None:
            # the data (and hence chordal init) does not depend on the preconditioner
            points = perturbed_points(problem, num_points=num_points, scale=perturbation, seed=seed)

        results = []
        for Y in points:
            _, res = newton_system_pcg(problem, Y, use_preconditioner=(name != "none"),
                                       tol=cg_tol, max_iter=cg_max_iter)
            results.append(res)

        reports.append(BenchmarkReport(
            preconditioner=name,
            n=problem.num_poses,
            m=problem.num_measurements,
            d=problem.dimension,
            formulation=problem.formulation,
            build_time_sec=float(build_time),
            pcg_iters_median=float(np.median([r.iters for r in results])),
            pcg_time_median=float(np.median([r.runtime_sec for r in results])),
            converged_fraction=float(np.mean([r.converged for r in results])),
            results=results,
        ))
    return reports


def print_report(reports: Sequence[BenchmarkReport]) -> None:
    if not reports:
        return
    rep0 = reports[0]
    print("\n=== Preconditioner Benchmark Report ===")
    print(f"n = {rep0.n}  m = {rep0.m}  d = {rep0.d}  formulation = {rep0.formulation}")
    for rep in reports:
        print(f"\n[{rep.preconditioner}]")
        print(f"  build time                 = {rep.build_time_sec:.3e} sec")
        print(f"  PCG iters (median over Y)  = {rep.pcg_iters_median:.1f}")
        print(f"  PCG time  (median over Y)  = {rep.pcg_time_median:.3e} sec")
        print(f"  converged fraction         = {rep.converged_fraction:.2f}")
        n_neg = sum(r.negative_curvature for r in rep.results)
        if n_neg:
            print(f"  negative curvature hits    = {n_neg}")


def benchmark_suite(cases: Sequence[Dict[str, Any]], verbose: bool = True,
                    **kwargs: Any) -> Dict[str, List[BenchmarkReport]]:
    """
    Run benchmark_preconditioners over several synthetic graphs.

    Each case is a dict of make_synthetic_pose_graph keyword arguments
    (must contain "n").
    """
    out = {}
    for case in cases:
        params = dict(case)
        key = ", ".join(f"{k}={v}" for k, v in params.items())
        measurements, _, _ = make_synthetic_pose_graph(**params)
        if verbose:
            print("\n----------------------------------------------")
            print(f"Case: {key}")
        reports = benchmark_preconditioners(measurements, **kwargs)
        if verbose:
            print_report(reports)
        out[key] = reports
    return out


def main(argv: Optional[Sequence[str]] = None) -> Dict[str, List[BenchmarkReport]]:
    parser = argparse.ArgumentParser(description="Compare preconditioners on tangent Newton systems.")
    parser.add_argument("--n", type=int, nargs="+", default=[50, 200], help="Numbers of poses.")
    parser.add_argument("--d", type=int, default=3, choices=(2, 3))
    parser.add_argument("--rot-noise", type=float, default=0.05)
    parser.add_argument("--trans-noise", type=float, default=0.05)
    parser.add_argument("--formulation", type=str, default="implicit", choices=("implicit", "explicit"))
    parser.add_argument("--points", type=int, default=5, help="Number of points Y per case.")
    parser.add_argument("--cg-tol", type=float, default=1e-8)
    parser.add_argument("--seed", type=int, default=0)
    args = parser.parse_args(argv)

    cases = [dict(n=n, d=args.d, rot_noise=args.rot_noise, trans_noise=args.trans_noise, seed=args.seed)
             for n in args.n]
    return benchmark_suite(cases, formulation=args.formulation, num_points=args.points,
                           cg_tol=args.cg_tol, seed=args.seed)


if __name__ == "__main__":
    main()
