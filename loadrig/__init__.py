"""
loadrig: a load-generation harness for HTTP APIs.

Workloads are plain async Python functions; loadrig runs them under
virtual-user concurrency that follows a ramp profile, aggregates request
metrics and checks, and evaluates pass/fail thresholds.
"""

__version__ = "0.1.0"
