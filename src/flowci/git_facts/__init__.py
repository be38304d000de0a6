"""Thin wrappers around the git CLI."""
