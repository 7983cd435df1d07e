import re
from typing import List
from urllib.parse import urlsplit

URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)
TRAILING_PUNCTUATION = ".,;:!?)"
MAX_URL_LENGTH = 2048
ALLOWED_SCHEMES = ("http", "https")


def is_valid_url(url: str) -> bool:
    """True for an absolute http(s) URL with a host, at most MAX_URL_LENGTH long."""
    if not url or not url.strip() or len(url) > MAX_URL_LENGTH:
        return False
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme.lower() in ALLOWED_SCHEMES and bool(parts.hostname)


def extract_urls(text: str) -> List[str]:
    """
    Return the valid http(s) URLs found in `text`, in order of appearance,
    deduplicated case-insensitively (the first spelling wins).
    """
    if not text or not text.strip():
        return []

    seen = set()
    urls = []
    for match in URL_RE.finditer(text):
        url = match.group(0).rstrip(TRAILING_PUNCTUATION)
        if not is_valid_url(url):
            continue
        key = url.lower()
        if key in seen:
            continue
        seen.add(key)
        urls.append(url)
    return urls
