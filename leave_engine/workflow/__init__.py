"""Workflow module — approval definitions and the step engine."""
