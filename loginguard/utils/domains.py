"""Domain and URL helpers."""

from __future__ import annotations

import re
from typing import Iterable, Optional
from urllib.parse import parse_qs, urlparse

import tldextract

# Offline extractor: use the bundled public-suffix snapshot, never the network
_extract = tldextract.TLDExtract(suffix_list_urls=())


def canonicalize_domain(value: str) -> str:
    """
    Normalize a domain/URL to a canonical host key.

    - Lowercase
    - Strip leading "www."
    - Preserve port (if present)
    - Ignore path/query/fragment
    """
    raw = (value or "").strip()
    if not raw:
        return ""

    candidate = raw if "://" in raw else f"https://{raw}"
    try:
        parsed = urlparse(candidate)
        port = parsed.port
    except ValueError:
        return ""
    host = (parsed.hostname or "").strip().lower().strip(".")
    if not host:
        return ""

    if host.startswith("www.") and len(host) > 4:
        host = host[4:]
    if port:
        host = f"{host}:{port}"
    return host


def _strip_port(host: str) -> str:
    if host.count(":") == 1:
        return host.split(":", 1)[0]
    return host


def registered_domain(value: str) -> str:
    """Return the registrable domain for a host or URL (best-effort)."""
    host = _strip_port(canonicalize_domain(value))
    if not host:
        return ""
    extracted = _extract(host)
    if extracted.domain and extracted.suffix:
        return f"{extracted.domain}.{extracted.suffix}".lower()
    return host


def allowlist_contains(url_or_domain: str, allowlist: Iterable[str]) -> bool:
    """Check a host against allowlisted registrable domains (subdomains included)."""
    entries = set(allowlist or ())
    if not entries:
        return False
    host = _strip_port(canonicalize_domain(url_or_domain))
    if not host:
        return False
    if host in entries:
        return True
    return registered_domain(host) in entries


def origin_of(url: str) -> str:
    """``scheme://host[:port]`` of a URL, or an empty string."""
    try:
        parsed = urlparse(url or "")
    except ValueError:
        return ""
    if not parsed.scheme or not parsed.netloc:
        return ""
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"


def hostname_of(url: str) -> str:
    try:
        return (urlparse(url or "").hostname or "").lower()
    except ValueError:
        return ""


def query_param(url: str, name: str) -> Optional[str]:
    """First value of a query parameter."""
    try:
        values = parse_qs(urlparse(url or "").query).get(name)
    except ValueError:
        return None
    return values[0] if values else None


def redirect_host(url: str) -> str:
    """Hostname of the ``redirect_uri`` parameter of an OAuth URL."""
    target = query_param(url, "redirect_uri")
    return hostname_of(target) if target else ""


def url_pattern_to_regex(pattern: str) -> re.Pattern:
    """Convert a wildcard URL pattern (``*.example.com/*``) into an anchored regex.

    Patterns already wrapped in ``/.../`` are treated as raw regexes.
    """
    pattern = (pattern or "").strip()
    if len(pattern) > 2 and pattern.startswith("/") and pattern.endswith("/"):
        return re.compile(pattern[1:-1], re.IGNORECASE)
    scheme, sep, rest = pattern.partition("://")
    if not sep:
        scheme, rest = "*", pattern
    host, slash, path = rest.partition("/")

    scheme_re = r"[a-z][a-z0-9+.-]*" if scheme == "*" else re.escape(scheme)
    # Host wildcards never cross into the path
    host_re = re.escape(host).replace(r"\*", r"[^/?#]*")
    if slash:
        path_re = "/" + re.escape(path).replace(r"\*", ".*")
    else:
        path_re = r"(?:[/?#].*)?"
    return re.compile(f"^{scheme_re}://{host_re}{path_re}$", re.IGNORECASE)


def url_matches_allowlist(url: str, patterns: Iterable[str]) -> bool:
    for pattern in patterns or ():
        try:
            if url_pattern_to_regex(pattern).match(url or ""):
                return True
        except re.error:
            continue
    return False
