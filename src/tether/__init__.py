"""Tether - orchestration core for EV charging fleets."""

__version__ = "0.1.0"
