"""Repair passes for malformed reasoner JSON.

Every pass is a pure ``str -> str`` function. ``REPAIR_PASSES`` fixes the
order the decoder applies them in; a pass with nothing to repair returns
its input unchanged. The passes run only after a strict parse has failed,
so they favour recall over precision.
"""

import re


_FENCE_RE = re.compile(r"```[ \t]*(?:json|JSON|javascript|js)?[ \t]*\r?\n?(.*?)```", re.DOTALL)
_OPEN_FENCE_RE = re.compile(r"^```[A-Za-z]*")


def strip_code_fences(text: str) -> str:
    """Keep the body of the first fenced block, or drop a lone opening fence."""
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    stripped = text.strip()
    if stripped.startswith("```"):
        return _OPEN_FENCE_RE.sub("", stripped, count=1).strip()
    return stripped


def _span(text: str, opener: str, closer: str) -> tuple[int, int] | None:
    start = text.find(opener)
    if start == -1:
        return None
    end = text.rfind(closer)
    if end < start:
        return start, len(text) - 1
    return start, end


def extract_envelope(text: str) -> str:
    """Cut the text down to the outermost JSON object or array.

    Prose before the first bracket and after the last one is discarded. When
    both an object and an array span exist, the array wins only if it encloses
    the object (a list of records); otherwise the object wins.
    """
    obj = _span(text, "{", "}")
    arr = _span(text, "[", "]")
    if obj is None and arr is None:
        return text
    if obj is None:
        chosen = arr
    elif arr is None:
        chosen = obj
    elif arr[0] < obj[0] and arr[1] > obj[1]:
        chosen = arr
    else:
        chosen = obj
    start, end = chosen
    return text[start:end + 1]


_STRUCTURE_RULES = (
    # Sibling objects / arrays with no separator: "} {" and "] ["
    (re.compile(r"\}(\s*)\{"), r"},\1{"),
    (re.compile(r"\](\s*)\["), r"],\1["),
    # A value followed directly by the next field name
    (
        re.compile(r'("|\d|\btrue|\bfalse|\bnull|\}|\])([ \t]*\r?\n\s*|[ \t]+)("[^"\n]{1,80}"\s*:)'),
        r"\1,\2\3",
    ),
    # Trailing commas before a closer
    (re.compile(r",(\s*[}\]])"), r"\1"),
)


def normalize_structure(text: str) -> str:
    """Insert missing separators and drop trailing commas."""
    for pattern, replacement in _STRUCTURE_RULES:
        text = pattern.sub(replacement, text)
    return text


_ESCAPE_RULES = (
    # Line-continuation backslashes inside long strings
    (re.compile(r"\\[ \t]*\r?\n[ \t]*"), " "),
    # Stray backslash before a closing quote: "hybrid\",
    (re.compile(r'(?<!\\)\\"(\s*[,}\]])'), r'"\1'),
    # Doubled backslashes around quoted identifiers in query text: \\"Name\\"
    (re.compile(r'(?<!\\)\\\\"'), r'\\"'),
)

_ESCAPE_TOKEN_RE = re.compile(r"\\(u[0-9a-fA-F]{4}|.)", re.DOTALL)
_VALID_ESCAPES = set('"\\/bfnrt')


def _double_invalid_escape(match: re.Match) -> str:
    token = match.group(1)
    if len(token) == 5 or token in _VALID_ESCAPES:
        return match.group(0)
    return "\\\\" + token


def normalize_escaping(text: str) -> str:
    """Repair over- and under-escaped backslash sequences."""
    for pattern, replacement in _ESCAPE_RULES:
        text = pattern.sub(replacement, text)
    return _ESCAPE_TOKEN_RE.sub(_double_invalid_escape, text)


_AFTER_COMMA_RE = re.compile(r'\s*(?:"|\{|\[|-?\d|true\b|false\b|null\b|\}|\]|$)')


def _closes_string(text: str, pos: int) -> bool:
    rest = text[pos:].lstrip(" \t\r")
    if not rest:
        return True
    head = rest[0]
    if head in ":}]\n":
        return True
    if head == ",":
        return bool(_AFTER_COMMA_RE.match(rest[1:]))
    return False


def escape_inner_quotes(text: str) -> str:
    """Escape double quotes that sit inside a string value.

    A quote closes the current string only when what follows it looks like
    JSON structure (a colon, a closer, a newline, or a comma followed by a
    value). Every other quote inside a string is escaped.
    """
    out: list[str] = []
    in_string = False
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if not in_string:
            out.append(ch)
            if ch == '"':
                in_string = True
            i += 1
            continue
        if ch == "\\":
            out.append(text[i:i + 2])
            i += 2
            continue
        if ch == '"':
            if _closes_string(text, i + 1):
                in_string = False
                out.append(ch)
            else:
                out.append('\\"')
            i += 1
            continue
        out.append(ch)
        i += 1
    return "".join(out)


REPAIR_PASSES = (
    strip_code_fences,
    extract_envelope,
    normalize_structure,
    normalize_escaping,
    escape_inner_quotes,
)
