"""
Supabase client construction and query execution.

This module contains *only* the database connection setup and the shared
query-execution helper. There is no import-time client: the application
factory builds one client and passes it to every repository call.

Environment variables required (see services/settings.py):
- SUPABASE_URL: Your Supabase project URL
- SUPABASE_KEY: Your Supabase API key (use a server-side key only on the backend)
"""

from __future__ import annotations

from typing import Any, List, Optional

from postgrest.exceptions import APIError
from supabase import Client, create_client  # type: ignore[import-not-found]

from domain.errors import ConflictError, StorageError

# Postgres unique_violation.
UNIQUE_VIOLATION: str = "23505"


def create_supabase_client(url: Optional[str], key: Optional[str]) -> Client:
    """
    Create the Supabase client used by every repository.

    Raises:
        RuntimeError: if credentials are missing.
    """

    if not url:
        raise RuntimeError(
            "Missing environment variable: SUPABASE_URL. "
            "Set SUPABASE_URL to your Supabase project URL."
        )
    if not key:
        raise RuntimeError(
            "Missing environment variable: SUPABASE_KEY. "
            "Set SUPABASE_KEY to your Supabase API key."
        )
    return create_client(url, key)


def run_query(query: Any, action: str) -> Any:
    """
    Execute a PostgREST query builder and normalize failures.

    supabase-py raises APIError for most failures; older clients set
    `response.error` instead. Both become StorageError, except a unique
    violation, which is a ConflictError.
    """

    try:
        response = query.execute()
    except APIError as exc:
        if exc.code == UNIQUE_VIOLATION:
            raise ConflictError(f"Failed to {action}: {exc.message}") from exc
        raise StorageError(f"Failed to {action}: {exc.message}") from exc

    error = getattr(response, "error", None)
    if error:
        raise StorageError(f"Failed to {action}: {error}")
    return response


def rows_of(response: Any) -> List[dict]:
    return getattr(response, "data", None) or []


__all__ = ["Client", "create_supabase_client", "run_query", "rows_of", "UNIQUE_VIOLATION"]
