"""Reconciliation loop driving an external coding agent until a goal converges."""

__version__ = "0.3.0"
