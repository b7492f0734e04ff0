"""Coordinator side: command store, lifecycle transitions, and crash reconciliation."""
