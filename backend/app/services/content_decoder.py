"""
Content decoder for quoted-printable-ish email text.

Providers are inconsistent about what they hand over: some fields arrive
already decoded, some still carry =XX escapes and soft line breaks, some mix
both.  decode() is written so that running it over plain text is a no-op,
which lets every extraction strategy call it unconditionally.
"""

import re

from bs4 import BeautifulSoup


# "=" at the end of a line is a soft line break.
_SOFT_BREAK_RE = re.compile(r"=(?:\r\n|\n|\r)")

# One or more consecutive =XX escapes.  Runs are decoded together so that
# multi-byte UTF-8 sequences (=C3=A9) come out as a single character.
_ESCAPE_RUN_RE = re.compile(r"(?:=[0-9A-Fa-f]{2})+")

_EXCESS_BLANK_LINES_RE = re.compile(r"\n{3,}")

_BLOCK_TAGS = ["p", "div", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6"]


def _decode_escape_run(match: re.Match) -> str:
    run = match.group(0)
    raw = bytes(int(run[i + 1:i + 3], 16) for i in range(0, len(run), 3))
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        # Not UTF-8; most legacy mailers meant Latin-1.
        return raw.decode("latin-1")


def normalize_newlines(text: str) -> str:
    """Convert \\r\\n and bare \\r to \\n and collapse runs of blank lines."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return _EXCESS_BLANK_LINES_RE.sub("\n\n", text)


def decode(raw: str) -> str:
    """
    Decode quoted-printable escapes and normalize line endings.

    - "=" followed by a line break is removed (soft line break)
    - =XX hex escapes become the byte they name
    - \\r\\n and \\r become \\n; three or more newlines collapse to one
      blank line

    Malformed escapes (e.g. "=ZZ", a trailing "=") are left as they are.
    Never raises.
    """
    if not raw:
        return ""

    text = _SOFT_BREAK_RE.sub("", raw)
    text = _ESCAPE_RUN_RE.sub(_decode_escape_run, text)
    return normalize_newlines(text)


def html_to_text(html: str) -> str:
    """
    Convert an HTML body to plain text.

    Block-level breaks become newlines.  Script, style and quoted
    (blockquote) content is dropped.
    """
    if not html or not html.strip():
        return ""

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head", "blockquote"]):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(_BLOCK_TAGS):
        block.append("\n")

    text = soup.get_text()
    lines = [line.strip() for line in text.splitlines()]
    return normalize_newlines("\n".join(lines)).strip()
