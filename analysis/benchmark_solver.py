#!/usr/bin/env python3
"""
Benchmark the refit operator and block-BiCGSTAB on a synthetic event-sized
problem.

Builds a random SPD noise store (|C| channels, full 1..1024 window), random
wire / light templates and Poisson weights, then for each GEMM backend:
  - times operator applications (noise GEMMs vs. the rest),
  - runs solve_with_retries and records iterations and residual history.

Writes benchmark_solver.txt and benchmark_solver_residuals.png next to this
script.

  cd <repo_root>; python analysis/benchmark_solver.py [--u-wires 30] [--apds 30] [--wires 4]
"""
from __future__ import annotations

import argparse
import logging
import sys
import time
import warnings
from pathlib import Path

BASE = Path(__file__).resolve().parent
REPO_DIR = BASE.parent
if str(REPO_DIR / "src") not in sys.path:
    sys.path.insert(0, str(REPO_DIR / "src"))

import numpy as np

from refit.assemble import initial_guess
from refit.detector import ChannelMap
from refit.errors import ConvergenceFailure
from refit.event import UWireSignal
from refit.gemm import available_backends, get_gemm
from refit.layout import ColumnLayout
from refit.linop import RefitOperator
from refit.noise import NoiseBlockStore, NoiseCorrelations
from refit.solver import solve_with_retries
from refit.templates import WireModel

OUT_TXT = BASE / "benchmark_solver.txt"
OUT_PNG = BASE / "benchmark_solver_residuals.png"

F_MIN = 1
F_MAX = 1024
N_APPLY = 5


def synthetic_problem(n_u: int, n_apd: int, n_wires: int, seed: int):
    rng = np.random.default_rng(seed)
    channels = tuple(range(n_u)) + tuple(152 + k for k in range(n_apd))
    n = len(channels)
    n_f = F_MAX - F_MIN + 1

    rr = np.empty((n_f, n, n))
    ii = np.empty((n_f, n, n))
    ri = np.empty((n_f, n, n))
    for k in range(n_f):
        g = rng.standard_normal((2 * n, 2 * n)) / np.sqrt(2 * n)
        m = np.eye(2 * n) + 0.5 * (g @ g.T)
        m = 0.5 * (m + m.T)
        rr[k], ii[k], ri[k] = m[0::2, 0::2], m[1::2, 1::2], m[0::2, 1::2]
    corr = NoiseCorrelations(
        channels=np.array(channels), frequencies=np.arange(F_MIN, F_MAX + 1), rr=rr, ii=ii, ri=ri
    )
    store = NoiseBlockStore.build(
        channels=channels, correlations=corr, f_min=F_MIN, f_max=F_MAX, channel_map=ChannelMap()
    )

    layout = ColumnLayout(n_channels=n, n_freq=store.n_freq, n_wire_signals=n_wires)
    n_t = layout.template_length
    models = []
    for m in range(n_wires):
        ch = 1 + (m * 3) % max(n_u - 2, 1)
        templates = {c: rng.standard_normal(n_t) for c in (ch - 1, ch, ch + 1) if 0 <= c < n_u}
        models.append(WireModel(signal=UWireSignal(channel=ch, time=0.0), templates=templates))
    light = rng.standard_normal(n_t)
    yields = {152 + k: float(rng.uniform(5.0, 50.0)) for k in range(n_apd)}
    poisson = np.array([1e-3 * yields[g] for g in channels[store.first_apd :]])
    return store, layout, models, light, yields, poisson


def main() -> None:
    ap = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    ap.add_argument("--u-wires", type=int, default=30)
    ap.add_argument("--apds", type=int, default=30)
    ap.add_argument("--wires", type=int, default=4)
    ap.add_argument("--tol", type=float, default=1e-8)
    ap.add_argument("--maxiter", type=int, default=500)
    ap.add_argument("--seed", type=int, default=0)
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    store, layout, models, light, yields, poisson = synthetic_problem(args.u_wires, args.apds, args.wires, args.seed)

    lines = [
        "Refit solver benchmark (synthetic)",
        "=" * 50,
        "",
        f"  channels = {store.n_channels} ({store.n_channels - store.first_apd} APD gangs)",
        f"  window = [{F_MIN}, {F_MAX}], L_col = {layout.column_length}, S = {layout.n_columns}",
        f"  tol = {args.tol}, maxiter = {args.maxiter}",
        "",
    ]
    histories: dict[str, list[float]] = {}

    for name in available_backends():
        try:
            gemm = get_gemm(name)
        except ImportError as err:
            lines.append(f"[{name}] unavailable: {err}")
            continue

        timings: dict[str, float] = {}
        op = RefitOperator(
            layout=layout,
            store=store,
            wire_models=models,
            light=light,
            poisson_factors=poisson,
            gemm=gemm,
            timings=timings,
        )
        x = initial_guess(layout=layout, store=store, wire_models=models, light=light, yields=yields)
        for _ in range(N_APPLY):
            op.apply(x)
        apply_s = timings.get("matrix_mul", 0.0) / N_APPLY
        noise_s = timings.get("matrix_mul_noise", 0.0) / N_APPLY

        t0 = time.perf_counter()
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceFailure)
            res = solve_with_retries(op.apply, x, layout.rhs(), args.tol, max_iterations=args.maxiter, gemm=gemm)
        solve_s = time.perf_counter() - t0
        histories[name] = res.history

        lines += [
            f"[{name}]",
            f"  apply: {apply_s * 1e3:.2f} ms (noise GEMMs {noise_s * 1e3:.2f} ms)",
            f"  solve: {solve_s:.3f} s, converged = {res.converged}, iterations = {res.iterations}"
            f" (wire {res.wire_iterations}, light {res.light_iterations}), attempts = {res.attempts}",
            "",
        ]

    OUT_TXT.write_text("\n".join(lines) + "\n")
    print("\n".join(lines))
    print(f"Wrote {OUT_TXT}")

    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    fig, ax = plt.subplots(figsize=(7, 4.5))
    for name, hist in histories.items():
        ax.semilogy(np.arange(1, len(hist) + 1), hist, label=name)
    ax.axhline(args.tol**2, color="k", ls="--", lw=0.8, label="tol$^2$")
    ax.set_xlabel("iteration")
    ax.set_ylabel("worst column $|r|^2$")
    ax.set_title("block-BiCGSTAB residual history")
    ax.legend()
    fig.tight_layout()
    fig.savefig(OUT_PNG, dpi=150)
    plt.close(fig)
    print(f"Wrote {OUT_PNG}")


if __name__ == "__main__":
    main()
