"""Synexa gateway: request admission and provider resilience for generation APIs."""

__version__ = "1.0.0"
