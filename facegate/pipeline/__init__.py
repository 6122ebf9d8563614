"""Capture scheduling and the per-tick recognition pipeline."""
