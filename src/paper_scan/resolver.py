import logging
import posixpath
import re
from typing import List, Optional, Tuple

from .errors import CyclicInclude, ErrorKind, SizeBudgetExceeded
from .latex import in_comment, in_regions, is_escaped, read_group, verbatim_regions
from .models import Diagnostic, FlattenedDocument, Result, SourceTree, Span

DEFAULT_MAX_FLATTENED_BYTES = 8 * 1024 * 1024
DEFAULT_MAX_INCLUDE_DEPTH = 32

DIRECTIVE_RE = re.compile(r'\\(input|include|subfile|import|subimport|bibliography)(?![A-Za-z@])')
BARE_INPUT_RE = re.compile(r'[ \t]+([^\s{}\\%]+)')


def _parse_directive(content: str, match: 're.Match') -> Optional[Tuple[str, List[str], int]]:
    """Return (command, arguments, end offset) for a directive, or None if malformed."""
    command = match.group(1)
    pos = match.end()
    if command in ('import', 'subimport'):
        first = read_group(content, pos)
        second = read_group(content, first[1]) if first else None
        if second is None:
            return None
        return command, [posixpath.join(first[0].strip(), second[0].strip())], second[1]

    group = read_group(content, pos)
    if group is not None:
        if command == 'bibliography':
            names = [name.strip() for name in group[0].split(',') if name.strip()]
            return command, names, group[1]
        return command, [group[0].strip()], group[1]
    if command == 'input':
        # Plain TeX form: \input filename
        bare = BARE_INPUT_RE.match(content, pos)
        if bare:
            return command, [bare.group(1)], bare.end()
    return None


def _lookup(tree: SourceTree, name: str, current: str, extension: str = '.tex') -> Optional[str]:
    """Resolve a directive argument against the tree root, then the including file's directory."""
    if not name or name.startswith('/'):
        return None
    bases = ['']
    current_dir = posixpath.dirname(current)
    if current_dir:
        bases.append(current_dir)
    for base in bases:
        path = posixpath.normpath(posixpath.join(base, name))
        if path.startswith('../') or path == '..':
            continue
        for candidate in (path, path + extension):
            if candidate in tree:
                return candidate
    return None


class _Budget:
    """Running UTF-8 size of the flattened output."""

    def __init__(self, limit: int):
        self.limit = limit
        self.used = 0

    def charge(self, text: str, file: str, offset: int):
        self.used += len(text.encode('utf-8'))
        if self.used > self.limit:
            raise SizeBudgetExceeded(self.limit, self.used, 'bytes', file=file, offset=offset)


def resolve(tree: SourceTree,
            max_bytes: int = DEFAULT_MAX_FLATTENED_BYTES,
            max_depth: int = DEFAULT_MAX_INCLUDE_DEPTH,
            inline_bibliography: bool = True) -> Result[FlattenedDocument]:
    """
    Inline every \\input, \\include, \\subfile and \\import starting from the entry file.

    Args:
        tree: Loaded source tree
        max_bytes: Upper bound on the UTF-8 size of the flattened document
        max_depth: Upper bound on include nesting
        inline_bibliography: Replace \\bibliography{...} with the bundled .bbl file

    Returns:
        Result holding the FlattenedDocument and one diagnostic per unresolved include

    Raises:
        CyclicInclude: if a file (transitively) includes itself
        SizeBudgetExceeded: if the output or the nesting grows past its budget
    """
    spans = []
    diagnostics = []
    budget = _Budget(max_bytes)
    entry_stem = posixpath.splitext(tree.entry)[0]

    def emit(origin: str, offset: int, text: str):
        if not text:
            return
        budget.charge(text, origin, offset)
        spans.append(Span(origin=origin, offset=offset, text=text))

    def expand(path: str, stack: Tuple[str, ...]):
        if len(stack) > max_depth:
            raise SizeBudgetExceeded(max_depth, len(stack), 'depth', file=path)
        content = tree.read(path)
        verbatim = verbatim_regions(content)
        last = 0
        for match in DIRECTIVE_RE.finditer(content):
            start = match.start()
            if start < last or is_escaped(content, start) or in_comment(content, start):
                continue
            if in_regions(verbatim, start):
                continue
            parsed = _parse_directive(content, match)
            if parsed is None:
                continue
            command, names, end = parsed

            if command == 'bibliography':
                if not inline_bibliography:
                    continue
                found = (_lookup(tree, name, path, extension='.bbl') for name in [entry_stem] + names)
                bbl = next((p for p in found if p is not None and p.endswith('.bbl')), None)
                if bbl is None:
                    continue
                emit(path, last, content[last:start])
                emit(bbl, 0, tree.read(bbl))
                last = end
                continue

            emit(path, last, content[last:start])
            target = _lookup(tree, names[0], path)
            if target is None:
                logging.warning(f"Unresolved \\{command}{{{names[0]}}} in {path}")
                diagnostics.append(Diagnostic(
                    kind=ErrorKind.UNRESOLVED_INCLUDE,
                    message=f"unresolved \\{command}{{{names[0]}}}",
                    file=path,
                    offset=start,
                ))
            elif target in stack:
                raise CyclicInclude(stack + (target,), offset=start)
            else:
                expand(target, stack + (target,))
            last = end
        emit(path, last, content[last:])

    expand(tree.entry, (tree.entry,))
    return Result(FlattenedDocument(spans=tuple(spans)), tuple(diagnostics))
