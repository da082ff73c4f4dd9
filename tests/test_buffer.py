from __future__ import annotations

from datetime import timedelta

import pytest

from walkforward.buffer import CandleBuffer


def test_push_rejects_repeated_timestamp(make_bar, t0) -> None:
    buf = CandleBuffer("M5", capacity=5)
    assert buf.push(make_bar(t0, 1, 1, 1, 1)) is True
    assert buf.push(make_bar(t0, 2, 2, 2, 2)) is False
    assert len(buf) == 1
    assert buf.last.close == 1


def test_push_rejects_older_timestamp(make_bar, t0) -> None:
    buf = CandleBuffer("M5", capacity=5)
    buf.push(make_bar(t0 + timedelta(minutes=5), 1, 1, 1, 1))
    assert buf.push(make_bar(t0, 1, 1, 1, 1)) is False


def test_capacity_evicts_oldest(make_bar, t0) -> None:
    buf = CandleBuffer("M5", capacity=3)
    for i in range(5):
        buf.push(make_bar(t0 + timedelta(minutes=5 * i), i, i, i, i))
    window = buf.window()
    assert len(window) == 3
    assert [c.close for c in window] == [2, 3, 4]


def test_is_ready(make_bar, t0) -> None:
    buf = CandleBuffer("M5", capacity=200)
    for i in range(59):
        buf.push(make_bar(t0 + timedelta(minutes=5 * i), 1, 1, 1, 1))
    assert not buf.is_ready()
    buf.push(make_bar(t0 + timedelta(minutes=5 * 59), 1, 1, 1, 1))
    assert buf.is_ready()
    assert buf.is_ready(60)
    assert not buf.is_ready(61)


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        CandleBuffer("M5", capacity=0)
