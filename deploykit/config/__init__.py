"""Backend configuration."""
