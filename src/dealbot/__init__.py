"""
Deal evaluation orchestration core.

Runs a business case through evidence gathering, parallel analyst review,
associate synthesis and partner scoring, recording every step in an
append-only event log from which canonical state is derived.
"""

__version__ = "0.1.0"
