"""
Logging setup: Decimal rendering and repeated configuration.
"""
import logging
from decimal import Decimal
from logging.handlers import RotatingFileHandler

from copytrader.monitoring.logger import _decimals_to_str, setup_logging


def test_decimals_render_as_exact_strings():
    event = {"event": "ORDER_PLACED", "qty": Decimal("0.00200000"), "follower_id": 7}
    out = _decimals_to_str(None, "info", event)
    assert out == {"event": "ORDER_PLACED", "qty": "0.00200000", "follower_id": 7}


def test_setup_twice_does_not_duplicate_handlers(tmp_path):
    log_file = tmp_path / "logs" / "worker.log"

    setup_logging("INFO", "json", str(log_file))
    setup_logging("DEBUG", "text", str(log_file))

    handlers = logging.getLogger().handlers
    assert len(handlers) == 2
    assert sum(isinstance(h, RotatingFileHandler) for h in handlers) == 1
    assert log_file.exists()
    assert logging.getLogger("ccxt").level == logging.WARNING
