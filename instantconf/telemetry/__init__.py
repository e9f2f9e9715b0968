"""
InstantConf — Telemetry
"""

from instantconf.telemetry.logging import setup_logging

__all__ = ["setup_logging"]
