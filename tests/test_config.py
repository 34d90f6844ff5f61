import json

import pytest
import torch

from geotomo.config import (
    ECTParameters,
    GravMagBase,
    ProblemKind,
    build_config,
    initialize_config,
    load_config,
    read_source,
)
from geotomo.errors import ConfigurationError, RemoteRankError
from geotomo.parallel.local import run_ranks
from geotomo.parallel.partition import RemainderPolicy

GRAV_MAG_YAML = """
global:
  path_output: out_dir
  precision: double
gravity:
  nx: 4
  ny: 3
  nz: 2
  ndata: 10
  beta: 2.0
  Z0: 0.5
  model_files: [grid.txt, prior.txt, start.txt]
magnetic:
  ndata: 7
  beta: 3.0
  mi: 90.0
  fi: 75.0
inversion:
  niter: 20
  alpha: [2.0, 3.0]
"""


@pytest.fixture()
def grav_mag_file(tmp_path):
    path = tmp_path / "problem.yaml"
    path.write_text(GRAV_MAG_YAML, encoding="utf-8")
    return path


def test_problem_kind_flags() -> None:
    assert ProblemKind.from_flag(None) is ProblemKind.ECT
    assert ProblemKind.from_flag("-g") is ProblemKind.GRAVITY
    assert ProblemKind.from_flag(" -j ") is ProblemKind.JOINT
    assert ProblemKind.JOINT.uses_gravity and ProblemKind.JOINT.uses_magnetism
    assert ProblemKind.ECT.partition_policy is RemainderPolicy.LAST_RANK
    assert ProblemKind.MAGNETISM.partition_policy is RemainderPolicy.FIRST_RANKS
    with pytest.raises(ConfigurationError):
        ProblemKind.from_flag("-x")


def test_gravity_from_yaml_partitions_first_ranks(grav_mag_file) -> None:
    counts = [
        load_config(grav_mag_file, ProblemKind.GRAVITY, rank=r, nbproc=5).nelements for r in range(5)
    ]
    assert counts == [5, 5, 5, 5, 4]

    cfg = load_config(grav_mag_file, ProblemKind.GRAVITY, rank=4, nbproc=5)
    assert cfg.nelements_total == 24
    assert (cfg.nx, cfg.ny, cfg.nz_local) == (4, 3, 2)
    assert cfg.ndata == (10, 0)
    assert cfg.path_output == "out_dir"
    assert cfg.dtype is torch.float64
    assert cfg.gravity.base.model_files == ("grid.txt", "prior.txt", "start.txt")
    assert cfg.inversion.alpha == (2.0, 3.0)
    assert cfg.magnetic is None and cfg.ect is None


def test_magnetic_inherits_grid_from_gravity(grav_mag_file) -> None:
    cfg = load_config(grav_mag_file, ProblemKind.MAGNETISM)
    base = cfg.magnetic.base
    assert (base.nx, base.ny, base.nz) == (4, 3, 2)
    assert base.beta == 3.0
    # Z0 is not shared
    assert base.Z0 == 0.0
    assert cfg.magnetic.mi == 90.0
    assert cfg.ndata == (0, 7)


def test_joint_problem_order_and_grid_check(grav_mag_file) -> None:
    cfg = load_config(grav_mag_file, ProblemKind.JOINT)
    assert [p.name for p in cfg.problem_parameters()] == ["gravity", "magnetic"]
    assert cfg.ndata == (10, 7)

    raw = read_source(grav_mag_file)
    raw["magnetic"]["nx"] = 5
    with pytest.raises(ConfigurationError, match="identical"):
        build_config(raw, ProblemKind.JOINT)


def test_ect_from_json_puts_extra_layer_on_last_rank(tmp_path) -> None:
    path = tmp_path / "ect.json"
    path.write_text(json.dumps({"ect": {"nr": 4, "nel": 4, "ndata": 12}}), encoding="utf-8")

    first = load_config(path, ProblemKind.ECT, rank=0, nbproc=2)
    last = load_config(path, ProblemKind.ECT, rank=1, nbproc=2)
    assert (first.ect.ntheta, first.ect.nz, first.ect.kguards) == (4, 4, 1)
    assert first.nelements_total == 4 * 4 * 5
    assert (first.nz_local, last.nz_local) == (2, 3)
    assert first.nelements + last.nelements == first.nelements_total
    assert last.ndata == (12, 0)


def test_ect_nz_must_divide_over_ranks() -> None:
    raw = {"ect": {"nr": 4, "nz": 3}}
    build_config(raw, ProblemKind.ECT, rank=0, nbproc=1)
    with pytest.raises(ConfigurationError):
        build_config(raw, ProblemKind.ECT, rank=0, nbproc=2)


@pytest.mark.parametrize(
    "values",
    [
        {"nr": 6, "ntheta": 6, "nel": 4},
        {"nr": 4, "itypenorm": 3},
        {"nr": 4, "nrings": 0},
        {"nr": -1},
    ],
)
def test_ect_sanity_checks(values) -> None:
    with pytest.raises(ConfigurationError):
        ECTParameters(**values)


def test_gravity_sanity_checks() -> None:
    with pytest.raises(ConfigurationError):
        GravMagBase(nx=-1)
    with pytest.raises(ConfigurationError):
        GravMagBase(depth_weighting_type=4)
    with pytest.raises(ConfigurationError):
        GravMagBase(beta=float("nan"))
    with pytest.raises(ConfigurationError):
        GravMagBase(compression_rate=1.5)


def test_unknown_keys_and_sections_are_rejected() -> None:
    with pytest.raises(ConfigurationError, match="colour"):
        build_config({"gravity": {"nx": 1, "colour": "red"}}, ProblemKind.GRAVITY)
    with pytest.raises(ConfigurationError, match="solver"):
        read_source({"solver": {}})
    with pytest.raises(ConfigurationError, match="precision"):
        build_config({"global": {"precision": "half"}, "ect": {"nr": 2}}, ProblemKind.ECT)


def test_missing_file_is_configuration_error(tmp_path) -> None:
    with pytest.raises(ConfigurationError, match="cannot be opened"):
        read_source(tmp_path / "missing.yaml")


def test_single_precision_dtype() -> None:
    cfg = build_config({"global": {"precision": "single"}, "ect": {"nr": 2}}, ProblemKind.ECT)
    assert cfg.dtype is torch.float32


def test_initialize_config_broadcasts_from_rank_zero(grav_mag_file) -> None:
    def body(comm):
        # only rank 0 can see the file
        source = grav_mag_file if comm.rank == 0 else None
        return initialize_config(source, ProblemKind.GRAVITY, comm)

    configs = run_ranks(3, body)
    assert [c.rank for c in configs] == [0, 1, 2]
    assert [c.nelements for c in configs] == [8, 8, 8]
    assert {c.nelements_total for c in configs} == {24}
    assert all(c.gravity == configs[0].gravity for c in configs)


def test_initialize_config_failure_reaches_every_rank() -> None:
    seen = {}

    def body(comm):
        source = {"ect": {"nr": 4, "nz": 3}} if comm.rank == 0 else None
        try:
            return initialize_config(source, ProblemKind.ECT, comm)
        except (ConfigurationError, RemoteRankError) as exc:
            seen[comm.rank] = type(exc)
            raise

    with pytest.raises(ConfigurationError):
        run_ranks(2, body)
    assert seen == {0: ConfigurationError, 1: RemoteRankError}
