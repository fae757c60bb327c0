"""
Background jobs module.
"""

from src.jobs.check_access import run_access_check

__all__ = ["run_access_check"]
