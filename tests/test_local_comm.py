import pytest
import torch

from geotomo.errors import (
    CollectiveAbortedError,
    ConfigurationError,
    NumericalError,
    RemoteRankError,
)
from geotomo.parallel.comm import SerialCommunicator, displacements, raise_if_any_failed
from geotomo.parallel.local import LocalCommGroup, run_ranks


def test_displacements_prefix_sum() -> None:
    assert displacements([1, 2, 3, 4]) == [0, 1, 3, 6]
    assert displacements([]) == []


def test_collectives_agree_on_every_rank() -> None:
    def body(comm):
        return (
            comm.allreduce_sum(comm.rank + 1),
            comm.allreduce_max(float(comm.rank)),
            comm.allgather(comm.rank * 10),
            comm.bcast("hello" if comm.rank == 2 else None, root=2),
        )

    results = run_ranks(4, body)
    for res in results:
        assert res == (10, 3.0, [0, 10, 20, 30], "hello")


def test_allgatherv_keeps_rank_order() -> None:
    counts = [2, 0, 1]

    def body(comm):
        local = torch.full((counts[comm.rank],), float(comm.rank), dtype=torch.float64)
        return comm.allgatherv(local, counts)

    for out in run_ranks(3, body):
        assert out.tolist() == [0.0, 0.0, 2.0]


def test_allgatherv_rejects_wrong_contribution_size() -> None:
    def body(comm):
        return comm.allgatherv(torch.zeros(2), [1, 1])

    with pytest.raises(ConfigurationError):
        run_ranks(2, body)


def test_abort_releases_blocked_ranks() -> None:
    group = LocalCommGroup(2, timeout=5.0)
    comm = group.communicator(0)
    group.abort(3)
    with pytest.raises(CollectiveAbortedError):
        comm.barrier()
    assert group.aborted


def test_collective_times_out_when_a_rank_never_arrives() -> None:
    group = LocalCommGroup(2, timeout=0.05)
    with pytest.raises(CollectiveAbortedError):
        group.communicator(0).allreduce_sum(1)


def test_rank_failure_outside_collective_does_not_deadlock() -> None:
    def body(comm):
        if comm.rank == 1:
            raise NumericalError("boom", rank=1)
        return comm.allreduce_sum(1)

    with pytest.raises(NumericalError):
        run_ranks(3, body, timeout=10.0)


def test_raise_if_any_failed_reports_origin_and_remote() -> None:
    seen = {}

    def body(comm):
        err = NumericalError("bad value", rank=comm.rank) if comm.rank == 2 else None
        try:
            raise_if_any_failed(comm, err)
        except (NumericalError, RemoteRankError) as exc:
            seen[comm.rank] = type(exc)
            raise

    with pytest.raises(NumericalError):
        run_ranks(3, body)
    assert seen == {0: RemoteRankError, 1: RemoteRankError, 2: NumericalError}


def test_serial_communicator_is_identity() -> None:
    comm = SerialCommunicator()
    assert comm.allreduce_sum(5) == 5
    assert comm.allreduce_max(2.5) == 2.5
    assert comm.allgather("x") == ["x"]
    buf = torch.arange(3.0)
    assert comm.allgatherv_inplace(buf, [3]) is buf
    raise_if_any_failed(comm, None)
