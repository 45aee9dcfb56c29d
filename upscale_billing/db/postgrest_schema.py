from collections.abc import Iterable

from upscale_billing.utils.security_validators import sanitize_for_logging

_SCHEMA_CACHE_ERROR_CODES: Iterable[str] = ("PGRST204", "PGRST205")


def is_schema_cache_error(error: Exception) -> bool:
    """Return True when the Supabase/PostgREST error looks like a schema cache miss."""
    code = getattr(error, "code", None)
    if code in _SCHEMA_CACHE_ERROR_CODES:
        return True
    message = sanitize_for_logging(str(error))
    if any(code in message for code in _SCHEMA_CACHE_ERROR_CODES):
        return True
    return "schema cache" in message.lower()


def is_missing_column_error(error: Exception) -> bool:
    """Schema cache misses plus plain 'column ... does not exist' failures from older databases."""
    if is_schema_cache_error(error):
        return True
    message = str(error).lower()
    return "column" in message and ("does not exist" in message or "could not find" in message)


def is_unique_violation(error: Exception) -> bool:
    """Postgres 23505, surfaced by postgrest as APIError.code."""
    if getattr(error, "code", None) == "23505":
        return True
    return "23505" in str(error) or "duplicate key value" in str(error).lower()
