"""Operational HTTP surface."""
