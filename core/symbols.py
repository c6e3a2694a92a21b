"""Symbol extraction: locate functions, classes and blocks in source text.

Two strategies share one contract, extract(text, language) -> [Symbol]:

    GrammarExtractor  - tree-sitter concrete syntax trees (precise)
    PatternExtractor  - line regexes plus brace/indent scanning (always works)

FallbackExtractor chains them; a strategy that raises or finds nothing
hands over to the next one. The editing step uses extract_chunk() to send
the model only the target symbol and a few lines around it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from core.errors import SymbolExtractionError

logger = logging.getLogger(__name__)

SYMBOL_KINDS = (
    "function", "class", "interface", "type", "variable",
    "resource", "block", "method",
)


@dataclass
class Symbol:
    name: str
    kind: str
    start_line: int             # 1-indexed
    end_line: int               # 1-indexed, inclusive
    indent: int = 0
    signature: str = ""         # declaration line
    children: list[Symbol] = field(default_factory=list)


@dataclass
class Chunk:
    symbol: Symbol
    code: str
    context_before: str
    context_after: str
    start_line: int
    end_line: int

    @property
    def text_with_context(self) -> str:
        return "\n".join(p for p in (self.context_before, self.code, self.context_after) if p)


def _signature(line: str) -> str:
    return re.sub(r"\s*[{:]\s*$", "", line.strip())


def iter_symbols(symbols):
    """Depth-first walk over symbols and their children."""
    for sym in symbols:
        yield sym
        yield from iter_symbols(sym.children)


# ---------------------------------------------------------------------------
# Grammar strategy (tree-sitter)
# ---------------------------------------------------------------------------

GRAMMARS = {
    "typescript": "typescript",
    "tsx": "tsx",
    "javascript": "javascript",
    "python": "python",
    "go": "go",
    "rust": "rust",
}

_JS_NODES = {
    "function_declaration": "function",
    "generator_function_declaration": "function",
    "class_declaration": "class",
    "abstract_class_declaration": "class",
    "interface_declaration": "interface",
    "type_alias_declaration": "type",
    "lexical_declaration": "variable",
    "variable_declaration": "variable",
    "export_statement": None,          # unwrapped
    "method_definition": "method",
}

NODE_KINDS = {
    "typescript": _JS_NODES,
    "tsx": _JS_NODES,
    "javascript": _JS_NODES,
    "python": {
        "function_definition": "function",
        "class_definition": "class",
        "decorated_definition": None,  # unwrapped
    },
    "go": {
        "function_declaration": "function",
        "method_declaration": "method",
        "type_declaration": "class",
    },
    "rust": {
        "function_item": "function",
        "impl_item": "class",
        "struct_item": "class",
        "enum_item": "class",
        "trait_item": "interface",
    },
}

_METHOD_NODES = {"method_definition", "function_definition", "function_item", "method_declaration"}
_BODY_NODES = {"class_body", "block", "declaration_list", "field_declaration_list"}
_FUNCTION_VALUES = {"arrow_function", "function_expression", "function", "generator_function"}


def _text(node) -> str:
    return node.text.decode("utf-8", errors="replace")


class GrammarExtractor:
    """tree-sitter backed extraction via tree_sitter_languages."""

    name = "grammar"

    def supports(self, language) -> bool:
        return language in GRAMMARS

    def _parse(self, text, language):
        try:
            from tree_sitter_languages import get_parser
        except ImportError as e:
            raise SymbolExtractionError("tree-sitter-languages is not installed") from e
        try:
            parser = get_parser(GRAMMARS[language])
            return parser.parse(text.encode("utf-8"))
        except Exception as e:
            raise SymbolExtractionError(f"{language} grammar failed: {e}") from e

    def extract(self, text, language):
        if not self.supports(language):
            raise SymbolExtractionError(f"No grammar for {language!r}")
        tree = self._parse(text, language)
        lines = text.split("\n")
        kinds = NODE_KINDS[language]
        symbols = []

        def visit(node):
            if node.type not in kinds:
                for child in node.children:
                    visit(child)
                return

            if node.type == "decorated_definition":
                inner = node.child_by_field_name("definition")
                if inner is not None and inner.type in kinds:
                    # range covers the decorators too
                    symbols.append(self._symbol(inner, kinds[inner.type], lines, outer=node))
                return

            if node.type == "export_statement":
                decl = node.child_by_field_name("declaration")
                if decl is None:
                    decl = next((c for c in node.children if c.type in kinds), None)
                if decl is not None:
                    visit(decl)
                return

            kind = kinds[node.type]
            if node.type in ("lexical_declaration", "variable_declaration") and _holds_function(node):
                kind = "function"
            symbols.append(self._symbol(node, kind, lines))

        visit(tree.root_node)
        return symbols

    def _symbol(self, node, kind, lines, outer=None):
        outer = outer or node
        row = outer.start_point[0]
        sym = Symbol(
            name=_node_name(node),
            kind=kind,
            start_line=row + 1,
            end_line=outer.end_point[0] + 1,
            indent=outer.start_point[1],
            signature=_signature(lines[node.start_point[0]] if node.start_point[0] < len(lines) else ""),
        )
        if kind in ("class", "interface"):
            sym.children = self._methods(node, lines)
        return sym

    def _methods(self, node, lines):
        body = node.child_by_field_name("body")
        if body is None:
            body = next((c for c in node.children if c.type in _BODY_NODES), None)
        if body is None:
            return []
        methods = []

        def walk(n):
            if n.type in _METHOD_NODES:
                methods.append(Symbol(
                    name=_node_name(n),
                    kind="method",
                    start_line=n.start_point[0] + 1,
                    end_line=n.end_point[0] + 1,
                    indent=n.start_point[1],
                    signature=_signature(lines[n.start_point[0]]),
                ))
                return
            for child in n.children:
                walk(child)

        walk(body)
        return methods


def _node_name(node) -> str:
    name = node.child_by_field_name("name")
    if name is not None:
        return _text(name)
    if node.type == "impl_item":
        target = node.child_by_field_name("type")
        if target is not None:
            return _text(target)
    for child in node.children:
        if child.type in ("variable_declarator", "lexical_binding", "type_spec"):
            inner = child.child_by_field_name("name")
            if inner is not None:
                return _text(inner)
    return node.type


def _holds_function(node) -> bool:
    for child in node.children:
        if child.type in ("variable_declarator", "lexical_binding"):
            value = child.child_by_field_name("value")
            if value is not None and value.type in _FUNCTION_VALUES:
                return True
    return False


# ---------------------------------------------------------------------------
# Pattern strategy (regex fallback)
# ---------------------------------------------------------------------------

_JS_KEYWORDS = {
    "if", "for", "while", "switch", "catch", "return", "function", "new",
    "else", "do", "try", "with", "typeof", "await", "super",
}

_TS_PATTERNS = [
    (re.compile(r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?function\*?\s+(\w+)"), "function"),
    (re.compile(r"^(?:export\s+)?(?:const|let|var)\s+(\w+)\s*(?::[^=]+)?=\s*(?:async\s+)?(?:\([^)]*\)\s*(?::[^=]+)?=>|\w+\s*=>|function\b)"), "function"),
    (re.compile(r"^(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+(\w+)"), "class"),
    (re.compile(r"^(?:export\s+)?interface\s+(\w+)"), "interface"),
    (re.compile(r"^(?:export\s+)?type\s+(\w+)"), "type"),
    (re.compile(r"^(?:export\s+)?(?:const|let|var)\s+(\w+)\s*(?::[^=]+)?="), "variable"),
]
_TS_STATEMENT = re.compile(r"^(?:export\s+)?(?:declare\s+)?(?:const|let|var|type)\s")
_TS_METHOD = re.compile(
    r"^\s+(?:(?:public|private|protected|static|readonly|async|get|set)\s+)*(\w+)\s*\([^;]*$"
)

_GO_FUNC = re.compile(r"^func\s+(\([^)]*\)\s*)?(\w+)\s*[\[(]")
_GO_TYPE = re.compile(r"^type\s+(\w+)\s+(struct|interface)\b")

_RUST_FN = re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?(?:unsafe\s+)?fn\s+(\w+)")
_RUST_TYPE = re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?(struct|enum|trait)\s+(\w+)")
_RUST_IMPL = re.compile(r"^impl(?:<[^>]*>)?\s+(?:\w+(?:<[^>]*>)?\s+for\s+)?(\w+)")

_HCL_RESOURCE = re.compile(r'^resource\s+"([\w-]+)"\s+"([\w-]+)"')
_HCL_BLOCK = re.compile(r'^(variable|output|data|module|provider)\s+"?([\w-]+)"?')

_GENERIC = re.compile(r"^(function|def|fn|func|class|struct|interface|type|resource)\s+(\w+)")
_GENERIC_KINDS = {
    "function": "function", "def": "function", "fn": "function", "func": "function",
    "class": "class", "struct": "class", "interface": "interface",
    "type": "type", "resource": "resource",
}


def find_block_end(lines, start, open_ch="{", close_ch="}"):
    """Index of the line closing the block opened at or after `start`."""
    depth = 0
    opened = False
    for i in range(start, len(lines)):
        for ch in lines[i]:
            if ch == open_ch:
                depth += 1
                opened = True
            elif ch == close_ch:
                depth -= 1
                if opened and depth == 0:
                    return i
        if not opened and lines[i].rstrip().endswith(";"):
            return i
    return len(lines) - 1 if opened else start


_CONTINUES_LINE = ("=", "=>", "(", "[", "{", ",", "+", "-", "*", "/", "?", ":", "&", "|", ".")
_CONTINUES_NEXT = (".", "?.", "|", "&")
_QUOTED = re.compile(r"""(["'`])(?:\\.|(?!\1).)*\1""")


def _code(line):
    """The line with string literals and a trailing // comment removed."""
    return _QUOTED.sub('""', line).split("//")[0].rstrip()


def find_statement_end(lines, start):
    """Index of the last line of a declaration whose semicolon is optional.

    The statement runs until its brackets balance. A line ending in an
    operator or comma, or followed by a line starting with ".", carries it on.
    """
    depth = 0
    for i in range(start, len(lines)):
        code = _code(lines[i])
        for ch in code:
            if ch in "([{":
                depth += 1
            elif ch in ")]}":
                depth -= 1
        if depth > 0 or not code or code.endswith(_CONTINUES_LINE):
            continue
        following = lines[i + 1].lstrip() if i + 1 < len(lines) else ""
        if not following.startswith(_CONTINUES_NEXT):
            return i
    return len(lines) - 1


def find_indent_block_end(lines, start, base_indent):
    """Index of the last line of an indentation-delimited block."""
    end = start
    for i in range(start + 1, len(lines)):
        line = lines[i]
        if not line.strip():
            continue
        if len(line) - len(line.lstrip()) <= base_indent:
            break
        end = i
    return end


def deduplicate(symbols):
    """Drop symbols nested in an earlier one, keeping methods."""
    result = []
    last_end = 0
    for sym in sorted(symbols, key=lambda s: s.start_line):
        if sym.start_line > last_end or sym.kind == "method":
            result.append(sym)
            last_end = max(last_end, sym.end_line)
    return result


def _attach_methods(symbols):
    for container in symbols:
        if container.kind not in ("class", "interface"):
            continue
        container.children = [
            s for s in symbols
            if s.kind == "method" and container.start_line < s.start_line <= container.end_line
        ]
    return symbols


class PatternExtractor:
    """Line-by-line regex matching; the fallback when no grammar works."""

    name = "pattern"

    def supports(self, language) -> bool:
        return True

    def extract(self, text, language):
        lines = text.split("\n")
        if language in ("typescript", "tsx", "javascript"):
            found = self._typescript(lines)
        elif language == "python":
            found = self._python(lines)
        elif language == "hcl":
            found = self._terraform(lines)
        elif language == "go":
            found = self._go(lines)
        elif language == "rust":
            found = self._rust(lines)
        else:
            found = self._generic(lines)
        return _attach_methods(deduplicate(found))

    def _braced(self, lines, i, name, kind, end=None):
        trimmed = lines[i].strip()
        if end is None:
            end = find_block_end(lines, i)
        return Symbol(
            name=name,
            kind=kind,
            start_line=i + 1,
            end_line=end + 1,
            indent=len(lines[i]) - len(lines[i].lstrip()),
            signature=_signature(trimmed.split("{")[0]),
        )

    def _typescript(self, lines):
        found = []
        for i, line in enumerate(lines):
            trimmed = line.lstrip()
            indent = len(line) - len(trimmed)
            for regex, kind in _TS_PATTERNS:
                m = regex.match(trimmed) if indent == 0 else None
                if m:
                    end = find_statement_end(lines, i) if _TS_STATEMENT.match(trimmed) else None
                    found.append(self._braced(lines, i, m.group(1), kind, end))
                    break
            else:
                m = _TS_METHOD.match(line)
                if m and m.group(1) not in _JS_KEYWORDS and line.rstrip().endswith("{"):
                    found.append(self._braced(lines, i, m.group(1), "method"))
        return found

    def _python(self, lines):
        found = []
        classes = []
        for i, line in enumerate(lines):
            trimmed = line.lstrip()
            indent = len(line) - len(trimmed)
            m = re.match(r"(?:async\s+)?def\s+(\w+)\s*\(", trimmed)
            kind = None
            if m:
                owner = next(
                    (c for c in reversed(classes)
                     if c.start_line <= i < c.end_line and c.indent < indent),
                    None,
                )
                kind = "method" if owner is not None else "function"
            else:
                m = re.match(r"class\s+(\w+)", trimmed)
                if m:
                    kind = "class"
            if not kind:
                continue
            sym = Symbol(
                name=m.group(1),
                kind=kind,
                start_line=i + 1,
                end_line=find_indent_block_end(lines, i, indent) + 1,
                indent=indent,
                signature=_signature(trimmed),
            )
            if kind == "class":
                classes.append(sym)
            found.append(sym)
        return found

    def _terraform(self, lines):
        found = []
        for i, line in enumerate(lines):
            trimmed = line.strip()
            m = _HCL_RESOURCE.match(trimmed)
            if m:
                found.append(self._braced(lines, i, f"{m.group(1)}.{m.group(2)}", "resource"))
                continue
            m = _HCL_BLOCK.match(trimmed)
            if m:
                found.append(self._braced(lines, i, f"{m.group(1)}.{m.group(2)}", "block"))
        return found

    def _go(self, lines):
        found = []
        for i, line in enumerate(lines):
            trimmed = line.strip()
            m = _GO_FUNC.match(trimmed)
            if m:
                kind = "method" if m.group(1) else "function"
                found.append(self._braced(lines, i, m.group(2), kind))
                continue
            m = _GO_TYPE.match(trimmed)
            if m:
                kind = "interface" if m.group(2) == "interface" else "class"
                found.append(self._braced(lines, i, m.group(1), kind))
        return found

    def _rust(self, lines):
        found = []
        impl_end = -1
        for i, line in enumerate(lines):
            trimmed = line.strip()
            m = _RUST_IMPL.match(trimmed)
            if m:
                sym = self._braced(lines, i, m.group(1), "class")
                impl_end = sym.end_line - 1
                found.append(sym)
                continue
            m = _RUST_FN.match(trimmed)
            if m:
                kind = "method" if i <= impl_end else "function"
                found.append(self._braced(lines, i, m.group(1), kind))
                continue
            m = _RUST_TYPE.match(trimmed)
            if m:
                kind = "interface" if m.group(1) == "trait" else "class"
                found.append(self._braced(lines, i, m.group(2), kind))
        return found

    def _generic(self, lines):
        found = []
        for i, line in enumerate(lines):
            m = _GENERIC.match(line.strip())
            if not m:
                continue
            end = None
            following = lines[i + 1].strip() if i + 1 < len(lines) else ""
            if "{" not in line and not following.startswith("{"):
                end = find_statement_end(lines, i)
            found.append(self._braced(lines, i, m.group(2), _GENERIC_KINDS[m.group(1)], end))
        return found


# ---------------------------------------------------------------------------
# Fallback chain and public helpers
# ---------------------------------------------------------------------------

class FallbackExtractor:
    """Try strategies in order until one returns symbols."""

    name = "fallback"

    def __init__(self, strategies):
        self.strategies = list(strategies)

    def extract(self, text, language):
        for strategy in self.strategies:
            if not strategy.supports(language):
                continue
            try:
                symbols = strategy.extract(text, language)
            except Exception as e:
                logger.info("%s extraction failed for %s, falling back: %s", strategy.name, language, e)
                continue
            if symbols:
                return symbols
            logger.debug("%s extraction found no symbols for %s", strategy.name, language)
        return []

    def supports(self, language) -> bool:
        return any(s.supports(language) for s in self.strategies)


default_extractor = FallbackExtractor([GrammarExtractor(), PatternExtractor()])


def extract_symbols(text, language, extractor=None):
    return (extractor or default_extractor).extract(text, language)


def find_symbol(symbols, name):
    """First symbol whose name equals or contains `name`."""
    for sym in iter_symbols(symbols):
        if sym.name == name or name in sym.name:
            return sym
    return None


def build_chunk(text, symbol, context_lines=5) -> Chunk:
    lines = text.split("\n")
    start = symbol.start_line - 1
    end = min(symbol.end_line - 1, len(lines) - 1)
    ctx_start = max(0, start - context_lines)
    ctx_end = min(len(lines) - 1, end + context_lines)
    return Chunk(
        symbol=symbol,
        code="\n".join(lines[start:end + 1]),
        context_before="\n".join(lines[ctx_start:start]),
        context_after="\n".join(lines[end + 1:ctx_end + 1]),
        start_line=symbol.start_line,
        end_line=symbol.end_line,
    )


def extract_chunk(text, symbol_name, language, context_lines=5, extractor=None):
    """Code block for `symbol_name` plus up to `context_lines` on each side.

    Returns None when no symbol matches.
    """
    symbol = find_symbol(extract_symbols(text, language, extractor), symbol_name)
    if symbol is None:
        return None
    return build_chunk(text, symbol, context_lines)


def symbol_at_line(text, line, language, extractor=None):
    """Innermost symbol whose range contains `line`."""
    best = None
    for sym in iter_symbols(extract_symbols(text, language, extractor)):
        if sym.start_line <= line <= sym.end_line:
            if best is None or sym.start_line >= best.start_line:
                best = sym
    return best


# ---------------------------------------------------------------------------
# Import graph (TS/JS)
# ---------------------------------------------------------------------------

@dataclass
class ImportInfo:
    source: str
    specifiers: list[str]
    is_default: bool
    line: int


_IMPORT_PATTERNS = [
    (re.compile(r"""^import\s*\{([^}]+)\}\s*from\s*["']([^"']+)["']"""), False),
    (re.compile(r"""^import\s+(\w+)\s+from\s*["']([^"']+)["']"""), True),
    (re.compile(r"""^import\s*\*\s*as\s+(\w+)\s+from\s*["']([^"']+)["']"""), False),
    (re.compile(r"""(?:const|let|var)\s+(\w+)\s*=\s*require\s*\(\s*["']([^"']+)["']\s*\)"""), True),
]


def extract_imports(text):
    imports = []
    for i, line in enumerate(text.split("\n")):
        trimmed = line.strip()
        for regex, is_default in _IMPORT_PATTERNS:
            m = regex.search(trimmed) if not trimmed.startswith("import") else regex.match(trimmed)
            if m:
                names = [s.strip() for s in m.group(1).split(",") if s.strip()]
                imports.append(ImportInfo(source=m.group(2), specifiers=names,
                                          is_default=is_default, line=i + 1))
                break
    return imports


def build_dependency_map(files):
    """Map each path to the local modules it imports ("./x", "@/x")."""
    return {
        path: [
            imp.source for imp in extract_imports(content)
            if imp.source.startswith(".") or imp.source.startswith("@/")
        ]
        for path, content in files.items()
    }
