"""Shared utilities: logging, configuration, recurring tasks."""
