import re

from constants import ABI_MARKER_NAME
from errors import ParseError

# Only the grammar's own declaration counts; tags and release notes are not
# guaranteed to track it.
ABI_MARKER_RE = re.compile(
    r"^[ \t]*#[ \t]*define[ \t]+" + re.escape(ABI_MARKER_NAME) + r"[ \t]+(\S+)",
    re.MULTILINE,
)


def extract_abi(content: str) -> int:
    m = ABI_MARKER_RE.search(content)
    if m is None:
        raise ParseError(f"no `#define {ABI_MARKER_NAME}` declaration found")
    value = m.group(1)
    if not (value.isascii() and value.isdigit()):
        raise ParseError(f"{ABI_MARKER_NAME} is not a number: {value!r}")
    return int(value)
