import re

_TRUE = {"1", "true", "yes", "on"}

def clean_str(val: str | None, max_len: int = 255) -> str | None:
    """
    Collapse whitespace, trim, enforce max length. Returns None if empty after cleaning.
    """
    if val is None:
        return None
    s = re.sub(r"\s+", " ", str(val)).strip()
    if not s:
        return None
    return s[:max_len]

def parse_bool(val) -> bool:
    """Query-string/JSON flag: true for 1/true/yes/on (any case) or a real True."""
    if isinstance(val, bool):
        return val
    if val is None:
        return False
    return str(val).strip().lower() in _TRUE

def parse_optional_int(val) -> int | None:
    """Positive int from JSON/form input; None when blank or not a whole number."""
    if val is None or isinstance(val, bool):
        return None
    try:
        n = int(str(val).strip())
    except (TypeError, ValueError):
        return None
    return n if n > 0 else None

def first_present(data: dict, *keys):
    """First non-None value among ``keys`` (accepts snake_case and camelCase aliases)."""
    for k in keys:
        if data.get(k) is not None:
            return data.get(k)
    return None
