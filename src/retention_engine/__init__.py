"""Retention Engine - retention-law enforcement for multi-tenant record platforms.

Finds records whose legally mandated retention period has elapsed, checks
legal holds, disposes of them with a policy-selected method and produces
verifiable disposal certificates backed by a hash-chained audit trail.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
