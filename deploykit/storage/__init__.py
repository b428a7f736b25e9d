"""Disk engine: probing, planning, partitioning, formatting, mounts and loops."""
