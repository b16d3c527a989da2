"""Measurement pipeline stages."""
