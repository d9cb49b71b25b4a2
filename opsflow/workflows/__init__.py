"""Workflow definitions and their repository."""
