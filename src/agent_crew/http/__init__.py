"""Shared HTTP utilities."""
