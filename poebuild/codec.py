"""
poebuild/codec.py
-----------------------------------------------------------------------------
Path of Building share-code codec.

A share code is a Path of Building XML document, zlib-compressed and then
base64-encoded with the URL-safe alphabet (``-`` and ``_`` instead of ``+``
and ``/``), usually without padding.  Because the zlib header bytes are
``0x78 0x9C`` (default level) or ``0x78 0xDA`` (best compression), real codes
start with ``eJ`` or ``eN`` once base64-encoded.

Decode pipeline
---------------
1. Strip all whitespace (codes are often pasted with line breaks).
2. Translate the URL-safe alphabet to the standard one.
3. Right-pad with ``=`` to a multiple of 4.
4. Strict base64 decode.
5. Decompress, trying each framing in ``_DECOMPRESSORS`` in order.  Not every
   producer writes the same framing, so the first one that succeeds wins.

Errors never carry the payload: a ``CodecError`` names the input length and
its first few characters only.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import zlib

from poebuild.errors import CodecError

logger = logging.getLogger(__name__)

SHARE_CODE_PREFIXES: tuple[str, ...] = ("eJ", "eN")

# Canonical root marker of a decoded BuildDocument.
DOCUMENT_ROOT_MARKER = "<PathOfBuilding"

_WHITESPACE = re.compile(r"\s+")

# (label, wbits) pairs for zlib.decompress, tried in order.
#   15  → zlib-wrapped stream, 32 KiB window (the normal case)
#   47  → automatic zlib / gzip header detection
#   31  → gzip-wrapped stream
#   -15 → raw deflate, no header or checksum
_DECOMPRESSORS: tuple[tuple[str, int], ...] = (
    ("zlib", zlib.MAX_WBITS),
    ("auto", zlib.MAX_WBITS | 32),
    ("gzip", zlib.MAX_WBITS | 16),
    ("raw", -zlib.MAX_WBITS),
)

# Number of leading characters a CodecError may show.
_PREVIEW_CHARS = 8


def _strip_whitespace(text: str) -> str:
    return _WHITESPACE.sub("", text)


def is_share_code(text: str) -> bool:
    """Return True if *text* looks like a share code rather than document text."""
    sanitized = _strip_whitespace(text)
    return sanitized.startswith(SHARE_CODE_PREFIXES) and not sanitized.startswith("<")


def _codec_error(code: str) -> CodecError:
    return CodecError(
        f"could not decode share code (length {len(code)}, "
        f"starts with {code[:_PREVIEW_CHARS]!r})"
    )


def _decompress(data: bytes) -> str | None:
    for label, wbits in _DECOMPRESSORS:
        try:
            text = zlib.decompress(data, wbits).decode("utf-8")
        except (zlib.error, UnicodeDecodeError):
            continue
        logger.debug("Share code decompressed using %s framing", label)
        return text
    return None


def decode(code: str) -> str:
    """
    Decode a share code into its BuildDocument text.

    Parameters
    ----------
    code : The share code, possibly containing whitespace and URL-safe
           base64 characters.

    Returns
    -------
    str : The decompressed document text (Path of Building XML).

    Raises
    ------
    CodecError : If base64 decoding or every decompression framing fails.
    """
    sanitized = _strip_whitespace(code)
    standard = sanitized.replace("-", "+").replace("_", "/")
    standard += "=" * (-len(standard) % 4)

    try:
        data = base64.b64decode(standard, validate=True)
    except (binascii.Error, ValueError):
        raise _codec_error(sanitized) from None

    text = _decompress(data)
    if text is None:
        raise _codec_error(sanitized)
    return text


def encode(document: str) -> str:
    """
    Encode BuildDocument text into a share code.

    Mirror of :func:`decode`: UTF-8 → zlib (best compression) → URL-safe
    base64.  ``decode(encode(x)) == x`` for any string ``x``.
    """
    compressed = zlib.compress(document.encode("utf-8"), 9)
    return base64.urlsafe_b64encode(compressed).decode("ascii")
