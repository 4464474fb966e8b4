"""Graph REST API adapters."""
