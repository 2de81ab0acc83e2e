import mimetypes
from urllib.parse import urlsplit


def guess_kind(path: str) -> str:
    """Return 'image' | 'video' | 'other' based on mimetype/extension (query strings ignored)."""
    mime, _ = mimetypes.guess_type(urlsplit(str(path)).path)
    if not mime:
        return "other"
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("video/"):
        return "video"
    return "other"


def dedupe(values) -> list:
    """De-duplicate while preserving order."""
    seen = set()
    deduped = []
    for v in values:
        if v not in seen:
            seen.add(v)
            deduped.append(v)
    return deduped


def chunked(items, size: int):
    size = max(1, int(size))
    for i in range(0, len(items), size):
        yield items[i:i + size]
