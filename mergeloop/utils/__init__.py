"""Shared utilities: logging, subprocess execution, durations, slugs."""
