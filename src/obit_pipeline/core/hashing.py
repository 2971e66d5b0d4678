"""
Content hashing for rewritten text.

The rewrite stage stores ``content_hash(rewritten_text)`` next to the text;
the audit stage compares it with the hash it last audited to detect
divergence and to skip re-auditing unchanged text.

Tags:
    hashing, change-detection
"""

import hashlib


def compute_hash(*values, length: int = 64) -> str:
    """
    Compute a deterministic SHA-256 hash from values.

    Values are joined with ``|`` before hashing, so order matters.

    Examples:
        >>> compute_hash("a", "b") != compute_hash("b", "a")
        True
        >>> len(compute_hash("test", length=16))
        16
    """
    content = "|".join(str(v) for v in values)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:length]


def content_hash(text: str) -> str:
    """Full 64-char SHA-256 of a rewritten text.

    Line endings are normalized and surrounding whitespace stripped so a
    re-save through a different editor does not count as a content change.
    """
    normalized = text.replace("\r\n", "\n").strip()
    return compute_hash(normalized)
