"""Frontend transport."""
