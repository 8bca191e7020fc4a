"""
Load test harness for the HSM encryption service.

This package ramps simulated users against the encrypt/decrypt/health API,
aggregates latency and error metrics while they run, and judges the run
against configured thresholds so CI can gate on the exit code.
"""

from .main import main

__all__ = ["main"]
