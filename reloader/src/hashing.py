from __future__ import annotations

import base64
import binascii
from collections.abc import Mapping
from hashlib import sha256
from typing import Any


def fingerprint(data: Mapping[str, str | bytes]) -> str:
    """Return a stable hex digest over ``key=value`` pairs of *data*.

    Pairs are sorted before hashing so map iteration order never matters.
    Labels and annotations of the owning object are never part of the input.
    """
    pairs = []
    for key, value in data.items():
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        pairs.append(f"{key}={'' if value is None else value}")
    pairs.sort()
    return sha256(";".join(pairs).encode("utf-8")).hexdigest()


EMPTY_DATA_FINGERPRINT = fingerprint({})


def _field(obj: Any, *names: str) -> Any:
    """Read the first present attribute or key out of a typed model or a dict."""
    for name in names:
        if isinstance(obj, Mapping):
            if name in obj:
                return obj[name]
        elif hasattr(obj, name):
            return getattr(obj, name)
    return None


def config_map_data(config_map: Any) -> dict[str, str]:
    """Flatten ConfigMap ``data`` and ``binaryData`` into one string map.

    Binary values are base64 encoded, matching how the API server serves them.
    """
    merged: dict[str, str] = {}
    for key, value in (_field(config_map, "data") or {}).items():
        merged[key] = "" if value is None else str(value)
    for key, value in (_field(config_map, "binary_data", "binaryData") or {}).items():
        if isinstance(value, bytes):
            value = base64.b64encode(value).decode("ascii")
        merged[key] = "" if value is None else str(value)
    return merged


def secret_data(secret: Any) -> dict[str, bytes]:
    """Decode Secret ``data`` (base64 on the wire) into raw bytes.

    ``stringData`` entries, only present on objects that were never round
    tripped through the API server, win over ``data`` for the same key.
    """
    decoded: dict[str, bytes] = {}
    for key, value in (_field(secret, "data") or {}).items():
        if value is None:
            decoded[key] = b""
        elif isinstance(value, bytes):
            decoded[key] = value
        else:
            try:
                decoded[key] = base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError):
                decoded[key] = str(value).encode("utf-8")
    for key, value in (_field(secret, "string_data", "stringData") or {}).items():
        decoded[key] = ("" if value is None else str(value)).encode("utf-8")
    return decoded


def config_map_fingerprint(config_map: Any) -> str:
    return fingerprint(config_map_data(config_map))


def secret_fingerprint(secret: Any) -> str:
    return fingerprint(secret_data(secret))
