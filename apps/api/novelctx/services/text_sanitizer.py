"""Allow-list filter applied to text before it enters a budgeted context section."""

_PUNCTUATION = frozenset(".,!?;:\"'()[]{}「」『』，。！？；：（）【】《》〈〉")
_SYMBOLS = frozenset("-_/\\=+*&%$#@")


def is_allowed_char(ch: str) -> bool:
    return ch.isalnum() or ch.isspace() or ch in _PUNCTUATION or ch in _SYMBOLS


def sanitize(text: str | None) -> str:
    """Return the subsequence of ``text`` made only of allowed characters.

    Alphanumerics of any script and whitespace are kept, together with ASCII and
    CJK quotation/bracket punctuation and a small symbol set. The filter never
    fails and is idempotent: ``sanitize(sanitize(x)) == sanitize(x)``.
    """
    if not text:
        return ""
    return "".join(ch for ch in str(text) if is_allowed_char(ch))
