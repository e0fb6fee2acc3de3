import httpx

EXCERPT_LIMIT = 200


def excerpt(text: str, limit: int = EXCERPT_LIMIT) -> str:
    """Shorten an upstream body for error messages and logs."""
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def display_url(url: httpx.URL) -> str:
    """URL without query string or credentials, safe to log (link URLs carry signatures)."""
    port = f":{url.port}" if url.port is not None else ""
    return f"{url.scheme}://{url.host}{port}{url.path}"
