"""Subscription lifecycle: tracking, renewal and reconciliation."""
