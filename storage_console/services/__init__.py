"""Orchestration services: lifecycle, polling, refresh, distribution and operator commands."""
