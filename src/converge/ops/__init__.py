"""Idempotent operations dispatched by the scheduler."""
