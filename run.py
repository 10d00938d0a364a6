#!/usr/bin/env python3
"""
Entry point for the copy-trading worker from a source checkout.

    python run.py run
    python run.py generate-invoices --quarter 2026-Q1

Same commands as the installed `copytrader` script.
"""
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from copytrader.cli import app

if __name__ == "__main__":
    app(prog_name="copytrader")
