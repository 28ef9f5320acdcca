"""Device sharing helpers: core masks, sysfs parsing, shared regions, feedback, metrics and DCU plugin state."""

__version__ = "0.1.0"