import json

import numpy as np
import pytest

from geotomo.cli import main

GRAVITY_YAML = """
gravity:
  nx: 2
  ny: 1
  nz: 2
  ndata: 1
  beta: 2.0
"""


def _write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_plan_prints_counts_and_starts(tmp_path, capsys) -> None:
    cfg = _write(tmp_path, "ect.yaml", "ect:\n  nr: 4\n  nel: 4\n")
    assert main(["plan", "--config", cfg, "--nbproc", "2"]) == 0
    plan = json.loads(capsys.readouterr().out)
    assert plan["problem"] == "ECT"
    assert plan["counts"] == [32, 48]
    assert plan["starts"] == [0, 32]
    assert plan["nelements_total"] == 80


def test_plan_reports_bad_layout(tmp_path, capsys) -> None:
    cfg = _write(tmp_path, "ect.yaml", "ect:\n  nr: 4\n  nz: 3\n")
    assert main(["plan", "-e", "--config", cfg, "--nbproc", "2"]) == 1
    assert "ERROR" in capsys.readouterr().err


def test_weights_empirical_written(tmp_path) -> None:
    cfg = _write(tmp_path, "grav.yaml", GRAVITY_YAML)
    out = tmp_path / "out"
    rc = main(["weights", "-g", "--config", cfg, "--dz", "2", "--out", str(out)])
    assert rc == 0

    damping = np.load(out / "damping_weight_gravity.npy")
    column = np.load(out / "column_weight_gravity.npy")
    # layer centres at depth 1 and 3
    np.testing.assert_allclose(damping, [1.0, 1.0, 1.0 / 3.0, 1.0 / 3.0])
    np.testing.assert_allclose(damping * column, np.ones(4))
    assert (out / "events_rank0.jsonl").is_file()


def test_weights_from_sensitivity_file(tmp_path) -> None:
    cfg = _write(tmp_path, "grav.yaml", GRAVITY_YAML + "  depth_weighting_type: 3\n")
    sens = tmp_path / "sens.npy"
    np.save(sens, np.array([[4.0], [9.0], [16.0], [1.0]]))
    out = tmp_path / "out"
    rc = main(["weights", "-g", "--config", cfg, "--sensitivity", str(sens), "--out", str(out)])
    assert rc == 0
    np.testing.assert_allclose(np.load(out / "damping_weight_gravity.npy"), [0.5, 0.75, 1.0, 0.25])


def test_weights_rejects_ect(tmp_path, capsys) -> None:
    cfg = _write(tmp_path, "ect.yaml", "ect:\n  nr: 2\n")
    assert main(["weights", "--config", cfg, "--out", str(tmp_path / "out")]) == 1
    assert "gravity / magnetic" in capsys.readouterr().err


def test_problem_flags_are_exclusive(tmp_path) -> None:
    cfg = _write(tmp_path, "grav.yaml", GRAVITY_YAML)
    with pytest.raises(SystemExit):
        main(["plan", "-g", "-m", "--config", cfg])


def test_weights_unreadable_sensitivity_is_reported(tmp_path, capsys) -> None:
    cfg = _write(tmp_path, "grav.yaml", GRAVITY_YAML + "  depth_weighting_type: 3\n")
    missing = str(tmp_path / "missing.npy")
    rc = main(["weights", "-g", "--config", cfg, "--sensitivity", missing, "--out", str(tmp_path / "out")])
    assert rc == 1
    assert "cannot read sensitivity" in capsys.readouterr().err
