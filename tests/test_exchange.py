import pytest
import torch

from geotomo.errors import ConfigurationError, RemoteRankError
from geotomo.inversion.arrays import InversionArrays
from geotomo.parallel.comm import SerialCommunicator
from geotomo.parallel.exchange import (
    broadcast_array,
    counts_on_all_ranks,
    gather_full_array,
    place_local_slice,
    scatter_full_array,
    total_count,
)
from geotomo.parallel.local import run_ranks


def _consecutive_slice(rank: int) -> torch.Tensor:
    # rank k holds k + 1 values continuing the global numbering 1, 2, 3, ...
    start = rank * (rank + 1) // 2
    return torch.arange(start + 1, start + rank + 2, dtype=torch.float64)


def test_counts_on_all_ranks_matches_local_counts() -> None:
    results = run_ranks(3, lambda comm: counts_on_all_ranks(5 * (comm.rank + 1) + 3, comm))
    for counts in results:
        assert counts == [8, 13, 18]


def test_total_count_four_ranks() -> None:
    assert run_ranks(4, lambda comm: total_count(comm.rank + 1, comm)) == [10, 10, 10, 10]


@pytest.mark.parametrize("nbproc", [1, 2, 5])
def test_total_count_triangular(nbproc) -> None:
    expected = (nbproc + 1) * nbproc // 2
    assert run_ranks(nbproc, lambda comm: total_count(comm.rank + 1, comm)) == [expected] * nbproc


def test_gather_full_array_four_ranks() -> None:
    def body(comm):
        local = _consecutive_slice(comm.rank)
        return gather_full_array(local, int(local.numel()), comm)

    expected = torch.arange(1, 11, dtype=torch.float64)
    for out in run_ranks(4, body):
        assert torch.equal(out, expected)


@pytest.mark.parametrize("nbproc", [1, 3, 6])
def test_gather_in_place_matches_copying_gather(nbproc) -> None:
    def body(comm):
        local = _consecutive_slice(comm.rank)
        copied = gather_full_array(local, int(local.numel()), comm)
        buffer = place_local_slice(local, comm)
        inplace = gather_full_array(buffer, int(local.numel()), comm, in_place=True)
        return copied, inplace, inplace is buffer

    total = nbproc * (nbproc + 1) // 2
    expected = torch.arange(1, total + 1, dtype=torch.float64)
    for copied, inplace, same_buffer in run_ranks(nbproc, body):
        assert same_buffer
        assert torch.equal(copied, expected)
        assert torch.equal(inplace, expected)


def test_gather_in_place_overwrites_only_other_slices() -> None:
    def body(comm):
        counts = [2, 3]
        local = torch.tensor([10.0, 11.0]) if comm.rank == 0 else torch.tensor([20.0, 21.0, 22.0])
        buffer = torch.full((5,), float("nan"))
        start = 0 if comm.rank == 0 else 2
        buffer[start:start + counts[comm.rank]] = local
        gather_full_array(buffer, counts[comm.rank], comm, in_place=True)
        return buffer

    for buffer in run_ranks(2, body):
        assert buffer.tolist() == [10.0, 11.0, 20.0, 21.0, 22.0]


def test_gather_with_empty_rank() -> None:
    counts = [2, 0, 1]

    def body(comm):
        local = torch.full((counts[comm.rank],), float(comm.rank + 1))
        return gather_full_array(local, counts[comm.rank], comm)

    for out in run_ranks(3, body):
        assert out.tolist() == [1.0, 1.0, 3.0]


def test_gather_size_mismatch_fails_on_every_rank() -> None:
    errors = {}

    def body(comm):
        local = torch.zeros(2)
        claimed = 3 if comm.rank == 1 else 2
        try:
            return gather_full_array(local, claimed, comm)
        except (ConfigurationError, RemoteRankError) as exc:
            errors[comm.rank] = type(exc)
            raise

    with pytest.raises(ConfigurationError):
        run_ranks(3, body)
    assert errors == {0: RemoteRankError, 1: ConfigurationError, 2: RemoteRankError}


def test_gather_serial_returns_copy() -> None:
    comm = SerialCommunicator()
    local = torch.tensor([1.0, 2.0])
    out = gather_full_array(local, 2, comm)
    assert torch.equal(out, local)
    out[0] = 99.0
    assert local[0] == 1.0


def test_broadcast_and_scatter_invert_gather() -> None:
    def body(comm):
        full = torch.arange(1.0, 11.0) if comm.rank == 0 else None
        mine = scatter_full_array(full, comm.rank + 1, comm)
        again = gather_full_array(mine, comm.rank + 1, comm)
        seen = broadcast_array(full if comm.rank == 0 else torch.empty(0), comm)
        return mine, again, seen

    results = run_ranks(4, body)
    assert results[2][0].tolist() == [4.0, 5.0, 6.0]
    for mine, again, seen in results:
        assert torch.equal(again, torch.arange(1.0, 11.0))
        assert torch.equal(seen, torch.arange(1.0, 11.0))


def test_full_model_from_inversion_arrays() -> None:
    def body(comm):
        arrays = InversionArrays.allocate(comm.rank + 1, ndata=4)
        arrays.model.copy_(_consecutive_slice(comm.rank))
        return arrays.full_model(comm)

    for out in run_ranks(3, body):
        assert out.tolist() == [1.0, 2.0, 3.0, 4.0, 5.0, 6.0]


def test_in_place_gather_short_buffer_fails_on_every_rank() -> None:
    errors = {}

    def body(comm):
        local = _consecutive_slice(comm.rank)
        buffer = place_local_slice(local, comm)
        if comm.rank == 0:
            buffer = buffer[:-1]
        try:
            return gather_full_array(buffer, int(local.numel()), comm, in_place=True)
        except (ConfigurationError, RemoteRankError) as exc:
            errors[comm.rank] = type(exc)
            raise

    with pytest.raises(ConfigurationError, match="global size"):
        run_ranks(3, body)
    assert errors == {0: ConfigurationError, 1: RemoteRankError, 2: RemoteRankError}


def test_in_place_gather_needs_tensor_buffer_on_every_rank() -> None:
    errors = {}

    def body(comm):
        buffer = [0.0, 0.0] if comm.rank == 1 else torch.zeros(2)
        try:
            return gather_full_array(buffer, 1, comm, in_place=True)
        except (ConfigurationError, RemoteRankError) as exc:
            errors[comm.rank] = type(exc)
            raise

    with pytest.raises(ConfigurationError, match="torch.Tensor"):
        run_ranks(2, body)
    assert errors == {0: RemoteRankError, 1: ConfigurationError}
