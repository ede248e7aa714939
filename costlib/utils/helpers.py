from flask import request


def wants_json() -> bool:
    """True when the current request should get a JSON error body instead of an HTML page."""
    return (
        "application/json" in (request.headers.get("Accept") or "").lower()
        or request.is_json
        or request.path.endswith(".json")
        or "/api/" in request.path
    )
