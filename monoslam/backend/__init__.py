"""Keyframe mapping and local refinement."""
