"""Shared models, configuration and helpers for TimeBar."""

__VERSION__ = "1.0.0"
__API_VERSION__ = "1"
