"""Low-level LaTeX scanning helpers shared by the processing stages."""

import re
from typing import Dict, List, Optional, Tuple

CONTROL_WORD_RE = re.compile(r"\\([A-Za-z@]+)(\*?)")
BEGIN_ENV_RE = re.compile(r"\\begin\s*\{([^}]+)\}")
INLINE_VERBATIM_RE = re.compile(r"\\(verb|lstinline)\*?(?![A-Za-z@])")
VERBATIM_START_RE = re.compile(
    r"\\(?:begin\s*\{(?P<env>[^}]+)\}|(?P<macro>verb|lstinline)\*?(?![A-Za-z@]))"
)

VERBATIM_ENVIRONMENTS = frozenset({
    "verbatim", "verbatim*", "Verbatim", "Verbatim*", "BVerbatim", "LVerbatim",
    "lstlisting", "minted", "alltt", "code", "codeblock", "pycode", "filecontents",
    "filecontents*",
})

MATH_ENVIRONMENTS = frozenset(
    name + star
    for name in ("equation", "align", "gather", "multline", "eqnarray", "displaymath",
                 "math", "flalign", "alignat", "dmath", "IEEEeqnarray")
    for star in ("", "*")
)

FLOAT_ENVIRONMENTS = frozenset({
    "figure", "figure*", "table", "table*", "wrapfigure", "wraptable", "subfigure",
    "sidewaysfigure", "sidewaystable", "SCfigure",
})

# Macros whose arguments carry readable text; the macro itself is dropped.
UNWRAP_MACROS = frozenset({
    "textbf", "textit", "emph", "texttt", "textsc", "textsf", "textrm", "textup",
    "textsl", "textnormal", "underline", "uline", "mbox", "hbox", "text", "footnote",
    "footnotetext", "textcolor", "url", "mathrm", "mathbf", "mathit", "boldsymbol",
    "small", "large", "Large", "LARGE", "huge", "Huge", "tiny", "scriptsize",
    "footnotesize", "normalsize", "bf", "it", "em", "rm", "sf", "tt", "sc",
})

# Layout, reference and front-matter macros dropped along with their arguments.
# The value is the number of mandatory brace groups consumed.
DROP_MACROS: Dict[str, int] = {
    "label": 1, "ref": 1, "eqref": 1, "autoref": 1, "cref": 1, "Cref": 1, "pageref": 1,
    "vspace": 1, "hspace": 1, "vskip": 0, "hskip": 0, "usepackage": 1, "documentclass": 1,
    "documentstyle": 1, "pagestyle": 1, "thispagestyle": 1, "geometry": 1, "hypersetup": 1,
    "maketitle": 0, "newpage": 0, "clearpage": 0, "cleardoublepage": 0, "tableofcontents": 0,
    "centering": 0, "noindent": 0, "indent": 0, "par": 0, "medskip": 0, "smallskip": 0,
    "bigskip": 0, "linebreak": 0, "pagebreak": 0, "nopagebreak": 0, "newline": 0,
    "hfill": 0, "vfill": 0, "protect": 0, "relax": 0, "raggedright": 0, "raggedleft": 0,
    "setlength": 2, "addtolength": 2, "setcounter": 2, "addtocounter": 2,
    "includegraphics": 1, "bibliographystyle": 1, "nocite": 1,
    "author": 1, "affiliation": 1, "affil": 1, "address": 1, "email": 1, "date": 1,
    "thanks": 1, "footnotemark": 0, "inst": 1, "institute": 1, "keywords": 1, "orcid": 1,
    "newcommand": 2, "renewcommand": 2, "providecommand": 2, "def": 0,
    "definecolor": 3, "graphicspath": 1, "input": 1, "include": 1,
    "begin": 1, "end": 1, "appendix": 0, "acknowledgments": 0, "acknowledgements": 0,
}

CONTROL_SYMBOLS = {
    "\\": " ", ",": " ", ";": " ", ":": " ", "!": "", " ": " ", "&": "&", "%": "%",
    "$": "$", "_": "_", "#": "#", "{": "{", "}": "}", "-": "", "/": "", "\n": " ",
}

_WHITESPACE_RE = re.compile(r"[ \t\r\f\v]*\n[ \t\r\f\v]*\n\s*")
_INLINE_SPACE_RE = re.compile(r"\s+")


def is_escaped(text: str, pos: int) -> bool:
    """Return True if the character at ``pos`` is preceded by an odd number of backslashes."""
    count = 0
    i = pos - 1
    while i >= 0 and text[i] == "\\":
        count += 1
        i -= 1
    return count % 2 == 1


def in_comment(text: str, pos: int) -> bool:
    """Return True if ``pos`` sits after an unescaped ``%`` on its line."""
    line_start = text.rfind("\n", 0, pos) + 1
    i = line_start
    while i < pos:
        if text[i] == "%" and not is_escaped(text, i):
            return True
        i += 1
    return False


def skip_spaces(text: str, pos: int) -> int:
    while pos < len(text) and text[pos] in " \t\r\n":
        pos += 1
    return pos


def read_group(text: str, pos: int, open_char: str = "{", close_char: str = "}") -> Optional[Tuple[str, int]]:
    """
    Read a balanced group starting at ``pos`` (leading whitespace allowed).

    Returns:
        (inner content, index just past the closing delimiter), or None when no
        group starts there or it is never closed.
    """
    pos = skip_spaces(text, pos)
    if pos >= len(text) or text[pos] != open_char:
        return None
    depth = 0
    i = pos
    while i < len(text):
        char = text[i]
        if char == "\\":
            i += 2
            continue
        if char == open_char:
            depth += 1
        elif char == close_char:
            depth -= 1
            if depth == 0:
                return text[pos + 1:i], i + 1
        i += 1
    return None


def read_optional(text: str, pos: int) -> Tuple[Optional[str], int]:
    """Read an optional ``[...]`` argument; returns (content or None, new position)."""
    group = read_group(text, pos, "[", "]")
    if group is None:
        return None, pos
    return group


def read_macro_arguments(text: str, pos: int, count: int = 1) -> Tuple[List[str], int]:
    """Skip any optional arguments and read up to ``count`` brace groups."""
    args = []
    _, pos = read_optional(text, pos)
    for _ in range(count):
        group = read_group(text, pos)
        if group is None:
            break
        args.append(group[0])
        pos = group[1]
        _, pos = read_optional(text, pos)
    return args, pos


def find_environment_end(text: str, name: str, pos: int) -> Optional[Tuple[int, int]]:
    """
    Find the ``\\end{name}`` matching an environment whose body starts at ``pos``.

    Nested environments with the same name are counted. Returns the start and
    end offsets of the closing ``\\end{name}`` or None if it is missing.
    """
    pattern = re.compile(r"\\(begin|end)\s*\{" + re.escape(name) + r"\}")
    depth = 1
    for match in pattern.finditer(text, pos):
        if is_escaped(text, match.start()):
            continue
        depth += 1 if match.group(1) == "begin" else -1
        if depth == 0:
            return match.start(), match.end()
    return None


def is_verbatim_environment(name: str) -> bool:
    lowered = name.rstrip("*").lower()
    return (
        name in VERBATIM_ENVIRONMENTS
        or lowered.endswith("verbatim")
        or lowered.endswith("listing")
    )


def inline_verbatim_end(text: str, pos: int, macro: str = "verb") -> Optional[int]:
    """
    Find the end of an inline ``\\verb`` or ``\\lstinline`` whose delimiter sits at ``pos``.

    Returns the offset just past the closing delimiter, or None when the
    delimiter is not closed on the same line.
    """
    if pos >= len(text):
        return None
    delimiter = text[pos]
    if delimiter == "{" and macro == "lstinline":
        delimiter = "}"
    close = text.find(delimiter, pos + 1)
    newline = text.find("\n", pos + 1)
    if close == -1 or (newline != -1 and newline < close):
        return None
    return close + 1


def verbatim_regions(text: str) -> List[Tuple[int, int]]:
    """Return the (start, end) offsets of every verbatim environment and inline \\verb in ``text``."""
    regions = []
    pos = 0
    while True:
        match = VERBATIM_START_RE.search(text, pos)
        if match is None:
            return regions
        start = match.start()
        pos = match.end()
        if is_escaped(text, start) or in_comment(text, start):
            continue
        name = match.group("env")
        if name is not None:
            name = name.strip()
            if not is_verbatim_environment(name):
                continue
            closing = find_environment_end(text, name, match.end())
            end = closing[1] if closing else len(text)
        else:
            end = inline_verbatim_end(text, match.end(), match.group("macro"))
            if end is None:
                continue
        regions.append((start, end))
        pos = end


def in_regions(regions: List[Tuple[int, int]], pos: int) -> bool:
    return any(start <= pos < end for start, end in regions)


def collapse_whitespace(text: str) -> str:
    """Collapse runs of whitespace while keeping blank-line paragraph breaks."""
    paragraphs = _WHITESPACE_RE.split(text)
    cleaned = [_INLINE_SPACE_RE.sub(" ", p).strip() for p in paragraphs]
    return "\n\n".join(p for p in cleaned if p)


def to_plain_text(text: str) -> str:
    """
    Reduce a LaTeX fragment to readable text.

    Formatting macros are unwrapped, layout and reference macros are dropped
    together with their arguments, and any other control word is removed
    while its brace groups stay as text. Math delimiters are removed but
    their content is kept.
    """
    out = []
    i = 0
    n = len(text)
    while i < n:
        char = text[i]
        if char == "\\":
            match = CONTROL_WORD_RE.match(text, i)
            if match is None:
                symbol = text[i + 1:i + 2]
                out.append(CONTROL_SYMBOLS.get(symbol, symbol))
                i += 2
                continue
            name = match.group(1)
            i = match.end()
            if name in DROP_MACROS:
                _, i = read_macro_arguments(text, i, DROP_MACROS[name])
            elif name in UNWRAP_MACROS:
                if name == "textcolor":
                    _, i = read_macro_arguments(text, i, 1)
                else:
                    _, i = read_optional(text, i)
            else:
                # Unknown control word: keep a separating space if it ends a word.
                if i < n and text[i] in " \t\n":
                    out.append(" ")
        elif char in "{}$":
            i += 1
        elif char == "~":
            out.append(" ")
            i += 1
        else:
            out.append(char)
            i += 1
    return collapse_whitespace("".join(out))
