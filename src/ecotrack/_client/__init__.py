"""Internal coordination helpers for :class:`ecotrack.monitor.EcotrackMonitor`."""
