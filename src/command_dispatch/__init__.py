"""Durable command queue with polling agents and crash reconciliation."""

__version__ = "0.1.0"
