#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

import numpy as np
import torch

from geotomo.config import ProblemKind, build_config, initialize_config, read_source
from geotomo.errors import ConfigurationError, GeotomoError
from geotomo.inversion import DenseSensitivity, Grid, InversionArrays, WeightEngine
from geotomo.parallel import displacements, fail_fast, gather_full_array, get_communicator
from geotomo.utils.logging import JsonlLogger, configure_console_logging, log_runtime_environment


def _add_problem_flags(sp: argparse.ArgumentParser) -> None:
    grp = sp.add_mutually_exclusive_group()
    for kind in ProblemKind:
        grp.add_argument(
            kind.value,
            dest="kind",
            action="store_const",
            const=kind,
            help=f"{kind.title} problem.",
        )
    sp.set_defaults(kind=ProblemKind.ECT)
    sp.add_argument("--config", required=True, help="YAML or JSON problem configuration.")


def run_plan(args: argparse.Namespace) -> int:
    """Print the per-rank partition for ``--nbproc`` ranks without running them."""
    try:
        raw = read_source(args.config)
        counts = [
            build_config(raw, args.kind, rank=r, nbproc=args.nbproc).nelements
            for r in range(args.nbproc)
        ]
    except GeotomoError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    plan = {
        "problem": args.kind.title,
        "nbproc": args.nbproc,
        "nelements_total": sum(counts),
        "counts": counts,
        "starts": displacements(counts),
    }
    print(json.dumps(plan, indent=2))
    return 0


def _local_rows(path: str, start: int, stop: int) -> DenseSensitivity:
    try:
        full = np.load(path, mmap_mode="r")
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"cannot read sensitivity {path!r}: {exc}") from exc
    if full.ndim != 2 or full.shape[0] < stop:
        raise ConfigurationError(
            f"sensitivity {path!r} must have one row per model element", value=tuple(full.shape)
        )
    return DenseSensitivity(torch.from_numpy(np.array(full[start:stop], dtype=np.float64)))


def run_weights(args: argparse.Namespace) -> int:
    """Compute damping / column weights on every rank and write them from rank 0."""
    comm = get_communicator()
    configure_console_logging(rank=comm.rank)
    out = Path(args.out).expanduser().resolve()
    jsonl = JsonlLogger(out, filename=f"events_rank{comm.rank}.jsonl")

    try:
        with fail_fast(comm, jsonl):
            cfg = initialize_config(args.config if comm.rank == 0 else None, args.kind, comm)
            log_runtime_environment(jsonl, comm=comm, dtype=cfg.dtype)
            if cfg.kind is ProblemKind.ECT:
                raise ConfigurationError("depth weighting applies to gravity / magnetic problems only")

            counts = [int(c) for c in comm.allgather(cfg.nelements)]
            start = displacements(counts)[comm.rank]
            stop = start + cfg.nelements
            base = cfg.problem_parameters()[0].base
            grid = Grid.regular(
                base.nx,
                base.ny,
                base.nz,
                dx=args.dx,
                dy=args.dy,
                dz=args.dz,
                z_offset=args.z_offset,
                element_range=(start, stop),
                dtype=cfg.dtype,
            )

            problems = cfg.problem_parameters()
            sens_paths = list(args.sensitivity or [])
            if sens_paths and len(sens_paths) != len(problems):
                raise ConfigurationError(
                    f"{cfg.kind.title} needs {len(problems)} --sensitivity file(s)", value=len(sens_paths)
                )
            sensitivities = [_local_rows(p, start, stop) for p in sens_paths] or None

            arrays = [
                InversionArrays.allocate(cfg.nelements, p.base.ndata, dtype=cfg.dtype)
                for p in problems
            ]
            engine = WeightEngine(comm, logger=jsonl)
            engine.calculate_for_problems(cfg, arrays, grid, sensitivities)

            for params, arr in zip(problems, arrays):
                damping = gather_full_array(arr.damping_weight, cfg.nelements, comm)
                column = gather_full_array(arr.column_weight, cfg.nelements, comm)
                if comm.rank == 0:
                    np.save(out / f"damping_weight_{params.name}.npy", damping.numpy())
                    np.save(out / f"column_weight_{params.name}.npy", column.numpy())
            if comm.rank == 0:
                jsonl.info("Weights written.", out=str(out), problems=[p.name for p in problems])
    except GeotomoError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    finally:
        jsonl.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Partitioning and depth weighting for distributed tomography.",
    )
    subparsers = parser.add_subparsers(dest="cmd", required=True)

    pp = subparsers.add_parser("plan", help="Show how model elements are split across ranks.")
    _add_problem_flags(pp)
    pp.add_argument("--nbproc", type=int, default=1, help="Number of ranks to plan for.")
    pp.set_defaults(func=run_plan)

    wp = subparsers.add_parser("weights", help="Compute damping and column weights.")
    _add_problem_flags(wp)
    wp.add_argument(
        "--sensitivity",
        action="append",
        help="Dense sensitivity matrix (.npy, nelements_total x ndata); once per problem.",
    )
    wp.add_argument("--dx", type=float, default=1.0, help="Cell size along x.")
    wp.add_argument("--dy", type=float, default=1.0, help="Cell size along y.")
    wp.add_argument("--dz", type=float, default=1.0, help="Cell size along z.")
    wp.add_argument("--z-offset", dest="z_offset", type=float, default=0.0, help="Depth of the grid top.")
    wp.add_argument("--out", default="output", help="Output directory.")
    wp.set_defaults(func=run_weights)

    args = parser.parse_args(argv)
    if args.cmd == "plan" and args.nbproc < 1:
        parser.error("--nbproc must be >= 1")
    return int(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
