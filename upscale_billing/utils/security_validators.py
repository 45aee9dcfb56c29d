def sanitize_for_logging(value) -> str:
    """Sanitize user-controlled strings for safe logging.

    Prevents log injection by removing newlines and other control characters
    that could be used to forge log entries.

    Args:
        value: Value to sanitize (can be None)

    Returns:
        Sanitized string with newlines replaced by spaces
    """
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    return value.replace("\n", " ").replace("\r", " ").replace("\x00", "")
