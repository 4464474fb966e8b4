"""Inbound notification dispatch."""
