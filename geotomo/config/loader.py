"""Build the immutable :class:`InversionConfig` and broadcast it.

Only rank 0 reads the configuration source. It validates it, then the raw
mapping is broadcast and every rank builds the same frozen config and derives
its own partition fields.

Source layout (YAML or JSON)::

    global:    {path_output: out, precision: double}
    ect:       {nr: 8, ntheta: 8, nz: 4, nel: 8, nrings: 1, ...}
    gravity:   {nx: 10, ny: 10, nz: 5, ndata: 100, beta: 2.0, Z0: 0.0, ...}
    magnetic:  {ndata: 100, beta: 3.0, mi: 90.0, ...}
    inversion: {niter: 50, alpha: [1.0, 1.0], ...}

Grid and model-option fields missing from ``magnetic`` are taken from
``gravity``.
"""

from __future__ import annotations

import copy
import dataclasses
import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from geotomo.config.params import (
    ECTParameters,
    GravityParameters,
    GravMagBase,
    InversionConfig,
    InversionParameters,
    MagneticParameters,
    ProblemKind,
)
from geotomo.errors import ConfigurationError, GeotomoError
from geotomo.parallel.comm import Communicator, SerialCommunicator, raise_if_any_failed
from geotomo.parallel.partition import (
    RemainderPolicy,
    ect_layers_for_rank,
    elements_for_rank,
)

logger = logging.getLogger("geotomo.config")

SourceLike = Union[str, Path, Mapping[str, Any]]

_SECTIONS = ("global", "ect", "gravity", "magnetic", "inversion")

# Gravity values the magnetic problem shares unless it overrides them.
_SHARED_FROM_GRAVITY = (
    "nx",
    "ny",
    "nz",
    "depth_weighting_type",
    "calc_data_directly",
    "prior_model_type",
    "number_prior_models",
    "start_model_type",
    "distance_threshold",
    "compression_rate",
)


def read_source(source: SourceLike) -> Dict[str, Any]:
    """Parse a YAML/JSON file, or deep-copy an already parsed mapping."""
    if isinstance(source, Mapping):
        raw = copy.deepcopy(dict(source))
    else:
        path = Path(source)
        if not path.is_file():
            raise ConfigurationError(f"configuration file {str(path)!r} cannot be opened")
        text = path.read_text(encoding="utf-8")
        try:
            if path.suffix.lower() == ".json":
                raw = json.loads(text)
            else:
                raw = yaml.safe_load(text)
        except (json.JSONDecodeError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"cannot parse {str(path)!r}: {exc}") from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError("configuration root must be a mapping")
    unknown = sorted(set(raw) - set(_SECTIONS))
    if unknown:
        raise ConfigurationError(f"unknown configuration section(s): {', '.join(unknown)}")
    return raw


def _section(raw: Mapping[str, Any], name: str) -> Dict[str, Any]:
    sec = raw.get(name) or {}
    if not isinstance(sec, Mapping):
        raise ConfigurationError(f"section {name!r} must be a mapping")
    return dict(sec)


def _build(cls, values: Mapping[str, Any], section: str):
    """Instantiate a frozen dataclass, rejecting unknown keys and coercing tuples."""
    names = {f.name: f for f in dataclasses.fields(cls)}
    unknown = sorted(set(values) - set(names))
    if unknown:
        raise ConfigurationError(f"unknown key(s) in section {section!r}: {', '.join(unknown)}")
    kwargs = {}
    for key, val in values.items():
        if isinstance(val, list):
            val = tuple(val)
        kwargs[key] = val
    try:
        return cls(**kwargs)
    except TypeError as exc:
        raise ConfigurationError(f"invalid section {section!r}: {exc}") from exc


def _split_base(values: Dict[str, Any]) -> tuple[Dict[str, Any], Dict[str, Any]]:
    base_names = {f.name for f in dataclasses.fields(GravMagBase)}
    base = {k: v for k, v in values.items() if k in base_names}
    rest = {k: v for k, v in values.items() if k not in base_names}
    return base, rest


def _gravity(raw: Mapping[str, Any]) -> GravityParameters:
    base, rest = _split_base(_section(raw, "gravity"))
    return _build(GravityParameters, {"base": _build(GravMagBase, base, "gravity"), **rest}, "gravity")


def _magnetic(raw: Mapping[str, Any]) -> MagneticParameters:
    grav_base, _ = _split_base(_section(raw, "gravity"))
    base, rest = _split_base(_section(raw, "magnetic"))
    for key in _SHARED_FROM_GRAVITY:
        if key not in base and key in grav_base:
            base[key] = grav_base[key]
    return _build(MagneticParameters, {"base": _build(GravMagBase, base, "magnetic"), **rest}, "magnetic")


def derive_partition(cfg: InversionConfig, rank: int, nbproc: int) -> InversionConfig:
    """Return ``cfg`` with this rank's partition fields filled in."""
    if cfg.kind is ProblemKind.ECT:
        ect = cfg.ect
        nz_local = ect_layers_for_rank(ect.nz, rank, nbproc)
        return dataclasses.replace(
            cfg,
            rank=rank,
            nbproc=nbproc,
            nelements_total=ect.nelements_total,
            nx=ect.nr,
            ny=ect.ntheta,
            nz_local=nz_local,
            nelements=ect.nr * ect.ntheta * nz_local,
            ndata=(ect.ndata, 0),
        )

    grav = cfg.gravity.base if cfg.kind.uses_gravity else None
    mag = cfg.magnetic.base if cfg.kind.uses_magnetism else None
    if grav is not None and mag is not None and (grav.nx, grav.ny, grav.nz) != (mag.nx, mag.ny, mag.nz):
        raise ConfigurationError(
            "joint inversion needs identical gravity and magnetic grids",
            value=((grav.nx, grav.ny, grav.nz), (mag.nx, mag.ny, mag.nz)),
        )
    gm = mag if mag is not None else grav
    total = gm.nelements_total
    nelements = elements_for_rank(total, rank, nbproc, RemainderPolicy.FIRST_RANKS)
    return dataclasses.replace(
        cfg,
        rank=rank,
        nbproc=nbproc,
        nelements_total=total,
        nx=gm.nx,
        ny=gm.ny,
        nz_local=gm.nz,
        nelements=nelements,
        ndata=(grav.ndata if grav is not None else 0, mag.ndata if mag is not None else 0),
    )


def build_config(
    raw: Mapping[str, Any],
    kind: ProblemKind,
    rank: int = 0,
    nbproc: int = 1,
) -> InversionConfig:
    """Build and partition the config for ``kind`` from a parsed mapping."""
    glob = _section(raw, "global")
    unknown = sorted(set(glob) - {"path_output", "precision"})
    if unknown:
        raise ConfigurationError(f"unknown key(s) in section 'global': {', '.join(unknown)}")

    cfg = InversionConfig(
        kind=kind,
        inversion=_build(InversionParameters, _section(raw, "inversion"), "inversion"),
        ect=_build(ECTParameters, _section(raw, "ect"), "ect") if kind is ProblemKind.ECT else None,
        gravity=_gravity(raw) if kind.uses_gravity else None,
        magnetic=_magnetic(raw) if kind.uses_magnetism else None,
        path_output=str(glob.get("path_output", "output")),
        precision=str(glob.get("precision", "double")),
    )
    return derive_partition(cfg, rank, nbproc)


def load_config(
    source: SourceLike,
    kind: ProblemKind = ProblemKind.ECT,
    rank: int = 0,
    nbproc: int = 1,
) -> InversionConfig:
    return build_config(read_source(source), kind, rank, nbproc)


def initialize_config(
    source: Optional[SourceLike],
    kind: ProblemKind,
    comm: Optional[Communicator] = None,
) -> InversionConfig:
    """
    Read and validate on rank 0, broadcast, build on every rank.

    ``source`` is only consulted on rank 0. A validation failure on rank 0
    raises there and :class:`RemoteRankError` on the other ranks.
    """
    comm = comm or SerialCommunicator()
    raw: Optional[Dict[str, Any]] = None
    error: Optional[GeotomoError] = None
    if comm.rank == 0:
        try:
            raw = read_source(source if source is not None else {})
            # Global sanity checks with the real rank count before broadcasting.
            build_config(raw, kind, rank=comm.size - 1, nbproc=comm.size)
        except GeotomoError as exc:
            error = exc
    raise_if_any_failed(comm, error)

    raw = comm.bcast(raw, root=0)
    cfg = build_config(raw, kind, rank=comm.rank, nbproc=comm.size)

    if comm.rank == 0:
        logger.info("===== START %s PROBLEM =====", kind.title)
    if comm.rank == 0 or comm.rank == comm.size - 1:
        logger.info(
            "rank=%d nbproc=%d nelements_total=%d nelements=%d ndata=%s",
            comm.rank,
            comm.size,
            cfg.nelements_total,
            cfg.nelements,
            cfg.ndata,
        )
    return cfg


__all__ = [
    "read_source",
    "build_config",
    "derive_partition",
    "load_config",
    "initialize_config",
]
