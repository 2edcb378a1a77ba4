"""Allocation and usage tracking for study access roles.

Boundary ("application") roles are bin-packed per data source bucket, and
per-study ("filesystem") roles are allocated, trust-edited and reclaimed as
environments in member accounts start and stop using studies.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
