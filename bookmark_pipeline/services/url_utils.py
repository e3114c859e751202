"""URL normalization for duplicate detection."""

from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import structlog

logger = structlog.get_logger(__name__)

TRACKING_PARAMS = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "fbclid",
        "gclid",
        "msclkid",
        "mc_cid",
        "mc_eid",
        "_ga",
        "ref",
        "source",
    }
)


def is_tracking_param(name: str) -> bool:
    name = name.lower()
    return name in TRACKING_PARAMS or name.startswith("utm_")


def normalize_url(url: str) -> str:
    """Normalize a URL so that trivially different links compare equal.

    - Strip the fragment
    - Drop tracking query params (utm_*, fbclid, gclid, ...)
    - Sort the remaining query params by name (stable for repeated names)
    - Empty path becomes "/"
    - Lowercase the whole result

    Unparseable input falls back to the lowercased string; this never raises.
    """
    raw = url.strip()
    try:
        p = urlparse(raw)
        if not p.scheme or not p.netloc:
            raise ValueError(f"not an absolute URL: {raw!r}")

        params = [
            (key, value)
            for key, value in parse_qsl(p.query, keep_blank_values=True)
            if not is_tracking_param(key)
        ]
        params.sort(key=lambda kv: kv[0])

        normalized = urlunparse(
            (p.scheme, p.netloc, p.path or "/", p.params, urlencode(params), "")
        )
    except ValueError as e:
        logger.debug("url_normalize_fallback", url=raw, error=str(e))
        return raw.lower()

    return normalized.lower()
