"""
Library backend API integration module.
"""

from src.integrations.library_api.account_client import (
    AccountProfile,
    LibraryAPIClient,
    get_library_api_client,
)

__all__ = ["AccountProfile", "LibraryAPIClient", "get_library_api_client"]
