"""
Local Mirror: durable on-device copy of the session, kept outside process memory.

Values are JSON, percent-encoded behind a fixed marker and then Base64 encoded.
This is obfuscation plus a format marker, NOT encryption: the marker only tells
us whether a key holds something this version wrote. Anything else degrades to
"absent" so a corrupt cache can never take the app down.
"""
import base64
import binascii
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote, unquote

logger = logging.getLogger(__name__)

STORAGE_PREFIX = "CALORYIA_SECURE_SALT_v1_"

SESSION_KEY = "caloryia_local_cache"
GUEST_FLAG_KEY = "caloryia_guest_mode"
AUTH_TOKEN_KEY = "caloryia_auth_token"

# Characters encodeURIComponent leaves alone, so older web-client blobs decode identically
_URI_SAFE = "!~*'()"
_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def encode_value(value: Any) -> str:
    """Serialize ``value`` into the marked, Base64 storage format."""
    payload = STORAGE_PREFIX + quote(json.dumps(value), safe=_URI_SAFE)
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")


def decode_value(stored: str) -> Any:
    """
    Reverse :func:`encode_value`.
    Raises ValueError when the text is not ours (bad Base64, missing marker, bad JSON).
    """
    try:
        decoded = unquote(base64.b64decode(stored, validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ValueError(f"not a mirror blob: {exc}") from exc

    if not decoded.startswith(STORAGE_PREFIX):
        raise ValueError("storage marker missing (tampered or legacy data)")

    return json.loads(decoded[len(STORAGE_PREFIX):])


class LocalMirror:
    """Key/value mirror backed by one file per key inside ``directory``."""

    def __init__(self, directory):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid mirror key: {key!r}")
        return self.directory / f"{key}.blob"

    def save(self, key: str, snapshot: Any) -> bool:
        """Write ``snapshot`` under ``key``. Returns False instead of raising when nothing could be written."""
        path = self._path(key)
        try:
            blob = encode_value(snapshot)
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="ascii") as fh:
                    fh.write(blob)
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except (TypeError, ValueError, OSError) as exc:
            logger.error("Mirror save failed for %s: %s", key, exc)
            return False
        return True

    def load(self, key: str) -> Optional[Any]:
        """Read the value under ``key``; None when absent, foreign or corrupt."""
        path = self._path(key)
        try:
            stored = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            logger.error("Mirror read failed for %s: %s", key, exc)
            return None

        if not stored.strip():
            return None

        try:
            return decode_value(stored.strip())
        except ValueError as exc:
            logger.warning("Mirror value for %s rejected: %s", key, exc)

        # Pre-migration clients stored plain JSON
        try:
            return json.loads(stored)
        except ValueError:
            return None

    def clear(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)
