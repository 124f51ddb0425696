"""Reconciliation domain: model, ports and services (adapter-free)."""
