import hashlib
from typing import Mapping

from novelctx.services.strategy import SECTION_NAMES

# NUL is stripped by the sanitizer, so it never appears inside a section.
_SECTION_SEPARATOR = "\x00"


def compute_context_hash(sections: Mapping[str, str]) -> str:
    """Hex SHA-256 over the five rendered sections in fixed order."""
    payload = _SECTION_SEPARATOR.join(str(sections.get(name) or "") for name in SECTION_NAMES)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
