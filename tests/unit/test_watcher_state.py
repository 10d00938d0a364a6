"""
Unit tests for watcher reconnect backoff and leader status mapping.
"""
import pytest

from copytrader.domain.models import LeaderTradeStatus, advance_leader_status, leader_status_from_exchange
from copytrader.live.leader_watcher import next_backoff


def test_backoff_sequence_doubles_to_ceiling():
    delays = []
    current = None
    for _ in range(6):
        current = next_backoff(current, floor=5.0, ceiling=60.0)
        delays.append(current)
    assert delays == [5.0, 10.0, 20.0, 40.0, 60.0, 60.0]


def test_backoff_restarts_at_floor_after_reset():
    assert next_backoff(None, floor=5.0, ceiling=60.0) == 5.0


@pytest.mark.parametrize("exchange_status,track_open,expected", [
    ("closed", False, LeaderTradeStatus.CLOSED),
    ("open", False, LeaderTradeStatus.DETECTED),
    ("open", True, LeaderTradeStatus.OPEN),
    ("canceled", True, LeaderTradeStatus.DETECTED),
])
def test_status_from_exchange(exchange_status, track_open, expected):
    assert leader_status_from_exchange(exchange_status, track_open=track_open) == expected


def test_status_never_regresses():
    assert advance_leader_status(LeaderTradeStatus.CLOSED, LeaderTradeStatus.OPEN) == LeaderTradeStatus.CLOSED
    assert advance_leader_status(LeaderTradeStatus.DETECTED, LeaderTradeStatus.CLOSED) == LeaderTradeStatus.CLOSED
    assert advance_leader_status(LeaderTradeStatus.OPEN, LeaderTradeStatus.DETECTED) == LeaderTradeStatus.OPEN
