"""Historical backfill and daily rank computation for tracked crypto tokens."""

__version__ = "0.1.0"
