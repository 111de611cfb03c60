"""Helpers for destination URLs that carry embedded credentials."""

from typing import Optional, Tuple
from urllib.parse import urlsplit, urlunsplit, unquote


def _host_netloc(parts) -> str:
    netloc = parts.hostname or ""
    if ":" in netloc:
        netloc = f"[{netloc}]"
    if parts.port:
        netloc += f":{parts.port}"
    return netloc


def displaysafe_url(url: str) -> str:
    """Return ``url`` with username and password replaced by ``***``.

    Safe for logs and API responses.
    """
    parts = urlsplit(url)
    netloc = _host_netloc(parts)
    if parts.username is not None or parts.password is not None:
        netloc = f"***:***@{netloc}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def split_basic_auth(url: str) -> Tuple[str, Optional[Tuple[str, str]]]:
    """Strip ``user:pass@`` from an HTTP URL.

    Returns:
        Tuple of (url without credentials, (username, password) or None).
    """
    parts = urlsplit(url)
    if parts.username is None and parts.password is None:
        return url, None
    bare = urlunsplit((parts.scheme, _host_netloc(parts), parts.path, parts.query, parts.fragment))
    auth = (unquote(parts.username or ""), unquote(parts.password or ""))
    return bare, auth


# Schemes users give us that SQLAlchemy spells differently.
SQLALCHEMY_SCHEME_ALIASES = {
    "postgres": "postgresql",
}


def sqlalchemy_url(url: str) -> str:
    """Rewrite a destination URL into one ``create_engine`` accepts."""
    scheme, sep, rest = url.partition("://")
    if not sep:
        return url
    return f"{SQLALCHEMY_SCHEME_ALIASES.get(scheme.lower(), scheme)}://{rest}"


def url_scheme(url: str) -> str:
    """Lowercased scheme of ``url``, or an empty string."""
    return urlsplit(url).scheme.lower()
