"""Geometry kernels, image helpers and visualization."""
