"""
InstantConf — Instant Confirmations verifier

Submits signed transactions through the synchronous submission extension,
listens on the inclusion and preconfirmation push channels, correlates
every observation by transaction hash and produces a verdict per
transaction.
"""

__version__ = "0.1.0"
