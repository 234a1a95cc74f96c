"""
PHP Token Stream (Tree-sitter)
==============================
Flattens the tree-sitter concrete syntax tree of a PHP file into the linear
token stream consumed by the variable analysis engine, and provides the
cursor used to walk it.

Token model:
- Every leaf of the syntax tree becomes one token, tagged with a closed
  TokenKind.
- Variables ($name) and whole string literals (single-quoted, double-quoted,
  heredoc, nowdoc, backtick) are kept as single tokens, the same shape the
  PHP tokenizer produces. Braces inside strings therefore never take part in
  bracket matching.
- Comments, inline HTML and open/close tags are dropped.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

import tree_sitter_php as tsphp
from tree_sitter import Language, Node, Parser

PHP_LANG = Language(tsphp.language_php())


# ============================================================================
# Errors
# ============================================================================

class AnalysisError(Exception):
    """Internal fault that aborts the analysis of the current file."""


class BracketMismatchError(AnalysisError):
    """An opening or closing bracket has no counterpart."""


class CursorError(AnalysisError):
    """The cursor was asked to move backwards or out of range."""


# ============================================================================
# Tokens
# ============================================================================

class TokenKind(Enum):
    VARIABLE = "variable"
    DOLLAR = "dollar"
    IDENTIFIER = "identifier"
    CONSTANT_STRING = "constant_string"
    DOUBLE_QUOTED_STRING = "double_quoted_string"
    HEREDOC = "heredoc"
    NOWDOC = "nowdoc"
    OPEN_PAREN = "open_paren"
    CLOSE_PAREN = "close_paren"
    OPEN_BRACKET = "open_bracket"
    CLOSE_BRACKET = "close_bracket"
    OPEN_BRACE = "open_brace"
    CLOSE_BRACE = "close_brace"
    COMMA = "comma"
    SEMICOLON = "semicolon"
    EQUAL = "equal"
    AMPERSAND = "ampersand"
    ELLIPSIS = "ellipsis"
    DOUBLE_ARROW = "double_arrow"
    OBJECT_OPERATOR = "object_operator"
    DOUBLE_COLON = "double_colon"
    FUNCTION = "function"
    FN = "fn"
    USE = "use"
    GLOBAL = "global"
    STATIC = "static"
    FOREACH = "foreach"
    AS = "as"
    CATCH = "catch"
    CLASS = "class"
    INTERFACE = "interface"
    TRAIT = "trait"
    ENUM = "enum"
    NEW = "new"
    LIST = "list"
    ARRAY = "array"
    SELF = "self"
    PARENT = "parent"
    PUBLIC = "public"
    PROTECTED = "protected"
    PRIVATE = "private"
    OTHER = "other"


OPENERS = {
    TokenKind.OPEN_PAREN: TokenKind.CLOSE_PAREN,
    TokenKind.OPEN_BRACKET: TokenKind.CLOSE_BRACKET,
    TokenKind.OPEN_BRACE: TokenKind.CLOSE_BRACE,
}
CLOSERS = {close: open_ for open_, close in OPENERS.items()}

STRING_KINDS = {
    TokenKind.CONSTANT_STRING,
    TokenKind.DOUBLE_QUOTED_STRING,
    TokenKind.HEREDOC,
    TokenKind.NOWDOC,
}

# Syntax nodes emitted as one token, text and all.
ATOMIC_NODES = {
    "variable_name": TokenKind.VARIABLE,
    "string": TokenKind.CONSTANT_STRING,
    "encapsed_string": TokenKind.DOUBLE_QUOTED_STRING,
    "shell_command_expression": TokenKind.DOUBLE_QUOTED_STRING,
    "heredoc": TokenKind.HEREDOC,
    "nowdoc": TokenKind.NOWDOC,
}

SKIPPED_NODES = {"comment", "text", "php_tag"}

PUNCTUATION = {
    "(": TokenKind.OPEN_PAREN,
    ")": TokenKind.CLOSE_PAREN,
    "[": TokenKind.OPEN_BRACKET,
    "#[": TokenKind.OPEN_BRACKET,
    "]": TokenKind.CLOSE_BRACKET,
    "{": TokenKind.OPEN_BRACE,
    "}": TokenKind.CLOSE_BRACE,
    ",": TokenKind.COMMA,
    ";": TokenKind.SEMICOLON,
    "?>": TokenKind.SEMICOLON,  # closing tag ends the statement
    "=": TokenKind.EQUAL,
    "&": TokenKind.AMPERSAND,
    "...": TokenKind.ELLIPSIS,
    "=>": TokenKind.DOUBLE_ARROW,
    "->": TokenKind.OBJECT_OPERATOR,
    "?->": TokenKind.OBJECT_OPERATOR,
    "::": TokenKind.DOUBLE_COLON,
    "$": TokenKind.DOLLAR,
}

KEYWORDS = {
    "function": TokenKind.FUNCTION,
    "fn": TokenKind.FN,
    "use": TokenKind.USE,
    "global": TokenKind.GLOBAL,
    "static": TokenKind.STATIC,
    "foreach": TokenKind.FOREACH,
    "as": TokenKind.AS,
    "catch": TokenKind.CATCH,
    "class": TokenKind.CLASS,
    "interface": TokenKind.INTERFACE,
    "trait": TokenKind.TRAIT,
    "enum": TokenKind.ENUM,
    "new": TokenKind.NEW,
    "list": TokenKind.LIST,
    "array": TokenKind.ARRAY,
    "self": TokenKind.SELF,
    "parent": TokenKind.PARENT,
    "public": TokenKind.PUBLIC,
    "protected": TokenKind.PROTECTED,
    "private": TokenKind.PRIVATE,
}

# Identifiers that name a class scope rather than a symbol.
RELATIVE_SCOPES = {
    "self": TokenKind.SELF,
    "parent": TokenKind.PARENT,
    "static": TokenKind.STATIC,
}

NOWDOC_RE = re.compile(r"^[bB]?<<<[ \t]*'")


@dataclass
class Token:
    kind: TokenKind
    text: str
    line: int
    column: int

    def __repr__(self) -> str:
        return f"Token({self.kind.name}, {self.text!r}, {self.line}:{self.column})"


# ============================================================================
# Tokenizer
# ============================================================================

def _line_starts(src: bytes) -> List[int]:
    """Byte offset of the start of every line (0-based rows)."""
    starts = [0]
    idx = src.find(b"\n")
    while idx != -1:
        starts.append(idx + 1)
        idx = src.find(b"\n", idx + 1)
    return starts


def _leaf_kind(node: Node, text: str) -> Optional[TokenKind]:
    """Classify a syntax-tree leaf. None means the leaf is dropped."""
    if node.type in SKIPPED_NODES:
        return None
    if node.type == "name":
        return RELATIVE_SCOPES.get(text.lower(), TokenKind.IDENTIFIER)
    kind = PUNCTUATION.get(text)
    if kind is not None:
        return kind
    return KEYWORDS.get(text.lower(), TokenKind.OTHER)


def tokenize(source: str) -> List[Token]:
    """Parse PHP source with tree-sitter and flatten it into tokens."""
    src = source.encode("utf-8")
    parser = Parser(PHP_LANG)
    tree = parser.parse(src)
    line_starts = _line_starts(src)

    tokens: List[Token] = []
    stack: List[Node] = [tree.root_node]
    while stack:
        node = stack.pop()
        if node.type in SKIPPED_NODES:
            continue
        kind = ATOMIC_NODES.get(node.type)
        if kind is None and node.child_count:
            stack.extend(reversed(node.children))
            continue
        # Zero-width MISSING nodes inserted by error recovery
        if node.start_byte == node.end_byte:
            continue

        text = src[node.start_byte:node.end_byte].decode("utf-8", errors="replace")
        if kind is None:
            kind = _leaf_kind(node, text)
            if kind is None:
                continue
        elif kind is TokenKind.HEREDOC and NOWDOC_RE.match(text):
            kind = TokenKind.NOWDOC

        row = node.start_point[0]
        prefix = src[line_starts[row]:node.start_byte]
        column = len(prefix.decode("utf-8", errors="replace")) + 1
        tokens.append(Token(kind, text, row + 1, column))
    return tokens


# ============================================================================
# TokenCursor
# ============================================================================

class TokenCursor:
    """
    Forward-only view over a token list.

    Bracket links and the innermost enclosing bracket of every token are
    computed once up front, so matching-bracket and containing-bracket
    queries are O(1). Lookahead and lookbehind by index are unrestricted;
    only the walk position is forward-only.
    """

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.position = 0
        self._links: List[Optional[int]] = [None] * len(tokens)
        self._enclosing: List[Optional[int]] = [None] * len(tokens)
        self._link_brackets()

    def _link_brackets(self):
        open_stack: List[int] = []
        for idx, tok in enumerate(self.tokens):
            if tok.kind in CLOSERS:
                if not open_stack:
                    raise BracketMismatchError(
                        f"Unmatched {tok.text!r} at line {tok.line}, column {tok.column}")
                opener = open_stack.pop()
                if self.tokens[opener].kind is not CLOSERS[tok.kind]:
                    other = self.tokens[opener]
                    raise BracketMismatchError(
                        f"{tok.text!r} at line {tok.line}, column {tok.column} closes "
                        f"{other.text!r} from line {other.line}, column {other.column}")
                self._links[opener] = idx
                self._links[idx] = opener
            self._enclosing[idx] = open_stack[-1] if open_stack else None
            if tok.kind in OPENERS:
                open_stack.append(idx)
        if open_stack:
            tok = self.tokens[open_stack[-1]]
            raise BracketMismatchError(
                f"Unclosed {tok.text!r} at line {tok.line}, column {tok.column}")

    def __len__(self) -> int:
        return len(self.tokens)

    def __getitem__(self, idx: int) -> Token:
        return self.tokens[idx]

    def peek(self, idx: int) -> Optional[Token]:
        """Token at idx, or None when idx is outside the stream."""
        if 0 <= idx < len(self.tokens):
            return self.tokens[idx]
        return None

    def kind_at(self, idx: int) -> Optional[TokenKind]:
        tok = self.peek(idx)
        return tok.kind if tok is not None else None

    def seek(self, idx: int):
        """Move the walk position forward to idx."""
        if idx < self.position:
            raise CursorError(f"Cursor cannot move back from {self.position} to {idx}")
        self.position = idx

    def link(self, idx: int) -> int:
        """Index of the bracket matching the one at idx."""
        other = self._links[idx]
        if other is None:
            tok = self.tokens[idx]
            raise BracketMismatchError(
                f"{tok.text!r} at line {tok.line}, column {tok.column} is not a bracket")
        return other

    def enclosing(self, idx: int) -> Optional[int]:
        """Index of the innermost opening bracket containing idx."""
        return self._enclosing[idx]

    def find(self, start: int, *kinds: TokenKind) -> Optional[int]:
        """First index >= start, at the nesting level of start, with one of kinds.

        Bracket groups are skipped whole. Stops at an unmatched closing
        bracket, which ends the level.
        """
        idx = start
        while idx < len(self.tokens):
            kind = self.tokens[idx].kind
            if kind in kinds:
                return idx
            if kind in OPENERS:
                idx = self.link(idx) + 1
                continue
            if kind in CLOSERS:
                return None
            idx += 1
        return None

    def top_level(self, start: int, stop: int) -> Iterator[int]:
        """Indexes in [start, stop) that are not nested inside brackets opened there."""
        idx = start
        while idx < stop:
            yield idx
            if self.tokens[idx].kind in OPENERS:
                idx = self.link(idx) + 1
            else:
                idx += 1

    def split(self, start: int, stop: int,
              separator: TokenKind = TokenKind.COMMA) -> List[Tuple[int, int]]:
        """Split [start, stop) on top-level separators; empty pieces are dropped."""
        pieces: List[Tuple[int, int]] = []
        piece_start = start
        for idx in self.top_level(start, stop):
            if self.tokens[idx].kind is separator:
                if idx > piece_start:
                    pieces.append((piece_start, idx))
                piece_start = idx + 1
        if stop > piece_start:
            pieces.append((piece_start, stop))
        return pieces


def count_kinds(tokens: List[Token]) -> Dict[TokenKind, int]:
    """Token kind histogram, used by the scanner's verbose output."""
    counts: Dict[TokenKind, int] = {}
    for tok in tokens:
        counts[tok.kind] = counts.get(tok.kind, 0) + 1
    return counts
