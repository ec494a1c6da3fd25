import hashlib
import hmac
import json
from typing import Any, Mapping

DEVICE_FIELDS = (
    ('user_agent', ''),
    ('screen_resolution', ''),
    ('timezone', ''),
    ('language', ''),
    ('platform', ''),
    ('browser_version', ''),
    ('canvas_fingerprint', ''),
    ('webgl_fingerprint', ''),
    ('audio_fingerprint', ''),
    ('fonts_available', ''),
    ('plugins_installed', ''),
    ('touch_support', False),
    ('cpu_cores', 0),
    ('memory_size', 0),
)


def continuity_hash(headers: Mapping[str, str], remote_addr: str | None) -> str:
    """Hash of the request attributes that must not change between pause and resume."""
    components = [
        headers.get('User-Agent', ''),
        headers.get('Accept-Language', ''),
        headers.get('Accept-Encoding', ''),
        remote_addr or '',
    ]
    return hashlib.sha256('|'.join(components).encode('utf-8')).hexdigest()


def continuity_matches(expected: str, actual: str) -> bool:
    return hmac.compare_digest(expected or '', actual or '')


def device_fingerprint(client_data: Mapping[str, Any]) -> str:
    """Stable hash over the client-reported device attributes."""
    data = {name: client_data.get(name, default) for name, default in DEVICE_FIELDS}
    payload = json.dumps(data, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()
