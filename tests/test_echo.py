import threading

import pytest

from gs_usb_core.gs_usb_echo import EchoCorrelator


def test_ids_are_distinct_while_outstanding():
    correlator = EchoCorrelator()

    ids = [correlator.allocate() for _ in range(100)]

    assert len(set(ids)) == 100
    assert len(correlator) == 100


def test_rx_echo_id_is_never_allocated():
    correlator = EchoCorrelator()
    correlator._next_id = 0xFFFFFFFE

    assert correlator.allocate() == 0xFFFFFFFE
    assert correlator.allocate() == 0


def test_resolve_completes_pending_handle():
    correlator = EchoCorrelator()
    echo_id = correlator.allocate()
    pending = correlator.pending(echo_id)

    assert correlator.resolve(echo_id, "echo")

    assert pending.done
    assert pending.wait(0)
    assert pending.outcome == "echo"
    assert echo_id not in correlator


def test_stale_resolve_is_ignored():
    correlator = EchoCorrelator()

    assert not correlator.resolve(42, "echo")
    assert len(correlator) == 0


def test_duplicate_resolve_is_ignored():
    correlator = EchoCorrelator()
    echo_id = correlator.allocate()
    pending = correlator.pending(echo_id)

    assert correlator.resolve(echo_id, "first")
    assert not correlator.resolve(echo_id, "second")
    assert pending.outcome == "first"


def test_cancelled_id_becomes_stale():
    correlator = EchoCorrelator()
    echo_id = correlator.allocate()
    pending = correlator.pending(echo_id)

    assert correlator.cancel(echo_id)

    assert not correlator.resolve(echo_id, "late echo")
    assert not pending.done
    assert correlator.pending(echo_id) is None
    assert not correlator.cancel(echo_id)


def test_wraparound_skips_outstanding_ids():
    correlator = EchoCorrelator(id_space=4)
    assert [correlator.allocate() for _ in range(3)] == [0, 1, 2]
    correlator.resolve(1, None)

    assert correlator.allocate() == 3
    assert correlator.allocate() == 1


def test_exhausted_id_space():
    correlator = EchoCorrelator(id_space=2)
    correlator.allocate()
    correlator.allocate()

    with pytest.raises(RuntimeError):
        correlator.allocate()


def test_cancel_all():
    correlator = EchoCorrelator()
    ids = [correlator.allocate() for _ in range(3)]

    correlator.cancel_all()

    assert len(correlator) == 0
    assert all(correlator.pending(echo_id) is None for echo_id in ids)


@pytest.mark.parametrize("id_space", [0, 0x100000000])
def test_id_space_bounds(id_space):
    with pytest.raises(ValueError):
        EchoCorrelator(id_space=id_space)


def test_waiter_is_woken_from_other_thread():
    correlator = EchoCorrelator()
    echo_id = correlator.allocate()
    pending = correlator.pending(echo_id)

    timer = threading.Timer(0.01, correlator.resolve, args=(echo_id, "echo"))
    timer.start()
    try:
        assert pending.wait(2.0)
    finally:
        timer.join()
    assert pending.outcome == "echo"
