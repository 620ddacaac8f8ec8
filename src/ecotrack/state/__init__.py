"""State layer.

This package is the single source of truth for how bus messages and store
snapshots are merged into one deterministic per-device view.
"""
