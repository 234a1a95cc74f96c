"""
PHP Variable Usage Analysis
===========================
Single forward pass over the token stream of one PHP file that tracks every
variable occurrence per scope and reports:

- Unused variables (declared, never read)
- Undefined variables (read before any declaration)
- Redeclarations through `global` / `static` / `catch`
- `$this`, `self::$x` and `static::$x` used outside a class context

Scoping follows PHP: function bodies do not see enclosing locals, closures
only see what their `use (...)` clause imports, arrow functions capture the
enclosing scope by value, and `global $x` binds a function-local name to the
one shared file-level record.
"""

import re
from collections import defaultdict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple, Union

from php_tokens import (
    AnalysisError, CLOSERS, OPENERS, Token, TokenCursor, TokenKind, tokenize,
)


# ============================================================================
# Errors
# ============================================================================

class ScopeStackUnderflow(AnalysisError):
    """A scope was popped without a matching push."""


class UnhandledTokenError(AnalysisError):
    """A classifier was handed a token kind it has no rule for."""


# ============================================================================
# Enums & Data Classes
# ============================================================================

class ScopeType(Enum):
    LOCAL = "local"
    PARAM = "param"
    STATIC = "static"
    GLOBAL = "global"
    BOUND = "bound"
    INSTANCE = "instance"


SCOPE_TYPE_DESCRIPTIONS = {
    ScopeType.LOCAL: "variable",
    ScopeType.PARAM: "function parameter",
    ScopeType.STATIC: "static variable",
    ScopeType.GLOBAL: "global variable",
    ScopeType.BOUND: "bound variable",
    ScopeType.INSTANCE: "instance variable",
}


class ScopeKind(Enum):
    FILE = "file"
    FUNCTION = "function"
    METHOD = "method"
    CLOSURE = "closure"
    ARROW = "arrow"


class Severity(Enum):
    ERROR = "ERROR"
    WARNING = "WARNING"


# Stable source codes, one per finding class
SOURCE_UNUSED = "VariableAnalysis.UnusedVariable"
SOURCE_UNDEFINED = "VariableAnalysis.UndefinedVariable"
SOURCE_REDECLARATION = "VariableAnalysis.VariableRedeclaration"
SOURCE_SELF_OUTSIDE_CLASS = "VariableAnalysis.SelfOutsideClass"
SOURCE_STATIC_OUTSIDE_CLASS = "VariableAnalysis.StaticOutsideClass"

DEFAULT_SEVERITY_LEVEL = 5

SUPERGLOBALS = {
    "GLOBALS", "_SERVER", "_GET", "_POST", "_FILES",
    "_COOKIE", "_SESSION", "_REQUEST", "_ENV",
}

# Standard-library functions taking arguments by reference.
# Positions are 1-based; "...N" means argument N and every one after it.
PASS_BY_REFERENCE_FUNCTIONS: Dict[str, Tuple[Union[int, str], ...]] = {
    # arrays
    "array_multisort": ("...1",),
    "array_pop": (1,),
    "array_push": (1,),
    "array_shift": (1,),
    "array_splice": (1,),
    "array_unshift": (1,),
    "array_walk": (1,),
    "array_walk_recursive": (1,),
    "arsort": (1,),
    "asort": (1,),
    "krsort": (1,),
    "ksort": (1,),
    "natcasesort": (1,),
    "natsort": (1,),
    "rsort": (1,),
    "shuffle": (1,),
    "sort": (1,),
    "uasort": (1,),
    "uksort": (1,),
    "usort": (1,),
    "each": (1,),
    "end": (1,),
    "next": (1,),
    "prev": (1,),
    "reset": (1,),
    # strings and regular expressions
    "preg_match": (3,),
    "preg_match_all": (3,),
    "preg_replace": (5,),
    "preg_replace_callback": (5,),
    "preg_replace_callback_array": (4,),
    "str_replace": (4,),
    "str_ireplace": (4,),
    "similar_text": (3,),
    "parse_str": (2,),
    "mb_parse_str": (2,),
    "mb_convert_variables": ("...3",),
    "mb_ereg": (3,),
    "mb_eregi": (3,),
    "sscanf": ("...3",),
    "fscanf": ("...3",),
    "settype": (1,),
    # processes and system
    "exec": (2, 3),
    "passthru": (2,),
    "system": (2,),
    "proc_open": (3,),
    "pcntl_wait": (1,),
    "pcntl_waitpid": (2,),
    "getopt": (3,),
    "is_callable": (3,),
    "headers_sent": (1, 2),
    "flock": (3,),
    # network and streams
    "fsockopen": (3, 4),
    "pfsockopen": (3, 4),
    "stream_socket_client": (2, 3),
    "stream_socket_server": (2, 3),
    "stream_socket_accept": (3,),
    "stream_socket_recvfrom": (4,),
    "stream_select": (1, 2, 3),
    "socket_select": (1, 2, 3),
    "socket_recv": (2,),
    "socket_recvfrom": (2, 5, 6),
    "socket_getpeername": (2, 3),
    "socket_getsockname": (2, 3),
    "socket_create_pair": (4,),
    "getmxrr": (2, 3),
    "dns_get_record": (3, 4),
    "curl_multi_exec": (2,),
    "curl_multi_info_read": (2,),
    "msg_receive": (3, 5, 6),
    "msg_send": (6,),
    # images and xml
    "getimagesize": (2,),
    "getimagesizefromstring": (2,),
    "xml_parse_into_struct": (3, 4),
    # caches
    "apc_fetch": (2,),
    "apcu_fetch": (2,),
    # crypto
    "openssl_csr_export": (2,),
    "openssl_pkcs12_export": (2,),
    "openssl_pkcs12_read": (2,),
    "openssl_pkey_export": (2,),
    "openssl_private_decrypt": (2,),
    "openssl_private_encrypt": (2,),
    "openssl_public_decrypt": (2,),
    "openssl_public_encrypt": (2,),
    "openssl_random_pseudo_bytes": (2,),
    "openssl_seal": (2, 3),
    "openssl_open": (2,),
    "openssl_sign": (2,),
    "openssl_x509_export": (2,),
    # databases
    "maxdb_stmt_bind_param": ("...3",),
    "maxdb_stmt_bind_result": ("...2",),
    "mysqli_stmt_bind_param": ("...3",),
    "mysqli_stmt_bind_result": ("...2",),
    "oci_bind_by_name": (3,),
    "oci_fetch_all": (2,),
}

# $name or ${name} inside an interpolating string, with any run of
# backslashes in front of the sigil
INTERPOLATION_RE = re.compile(r"(\\*)\$\{?([A-Za-z_\x80-\uffff][A-Za-z0-9_\x80-\uffff]*)")
IDENTIFIER_RE = re.compile(r"^[A-Za-z_\x80-\uffff][A-Za-z0-9_\x80-\uffff]*$")

# Token kinds after which `[` indexes a value instead of opening an array
VALUE_END_KINDS = {
    TokenKind.VARIABLE, TokenKind.IDENTIFIER,
    TokenKind.CLOSE_PAREN, TokenKind.CLOSE_BRACKET, TokenKind.CLOSE_BRACE,
    TokenKind.CONSTANT_STRING, TokenKind.DOUBLE_QUOTED_STRING,
    TokenKind.HEREDOC, TokenKind.NOWDOC,
    TokenKind.SELF, TokenKind.PARENT, TokenKind.STATIC,
}

# Tokens that make a following identifier/`function` a member name
MEMBER_ACCESS_KINDS = {TokenKind.OBJECT_OPERATOR, TokenKind.DOUBLE_COLON}

VISIBILITY_KINDS = {TokenKind.PUBLIC, TokenKind.PROTECTED, TokenKind.PRIVATE}


@dataclass(frozen=True, order=True)
class Position:
    line: int
    column: int


@dataclass
class VariableInfo:
    name: str
    scope_type: ScopeType = ScopeType.LOCAL
    type_hint: Optional[str] = None
    pass_by_reference: bool = False
    first_declared: Optional[Position] = None
    first_initialized: Optional[Position] = None
    first_read: Optional[Position] = None
    ignore_unused: bool = False
    visibility: Optional[str] = None

    def is_ignore_unused(self) -> bool:
        return self.ignore_unused or self.visibility in ("public", "protected")

    @property
    def description(self) -> str:
        return SCOPE_TYPE_DESCRIPTIONS[self.scope_type]


@dataclass
class Message:
    """One diagnostic as handed to the host sink."""
    message: str
    source: str
    severity: int = DEFAULT_SEVERITY_LEVEL
    fixable: bool = False


@dataclass
class Finding:
    line: int
    column: int
    message: str
    source: str
    severity: Severity
    level: int = DEFAULT_SEVERITY_LEVEL
    fixable: bool = False


MessageMap = Dict[int, Dict[int, List[Message]]]


@dataclass
class AnalysisReport:
    """Warnings and errors keyed line -> column -> messages, plus emission order."""
    warnings: MessageMap = field(default_factory=lambda: defaultdict(lambda: defaultdict(list)))
    errors: MessageMap = field(default_factory=lambda: defaultdict(lambda: defaultdict(list)))
    findings: List[Finding] = field(default_factory=list)

    def messages(self, severity: Severity) -> List[Tuple[int, int, str]]:
        """Sorted (line, column, message) triples of one severity."""
        table = self.errors if severity is Severity.ERROR else self.warnings
        return sorted(
            (line, column, msg.message)
            for line, columns in table.items()
            for column, msgs in columns.items()
            for msg in msgs
        )

    @property
    def warning_count(self) -> int:
        return sum(1 for f in self.findings if f.severity is Severity.WARNING)

    @property
    def error_count(self) -> int:
        return sum(1 for f in self.findings if f.severity is Severity.ERROR)


@dataclass
class AnalyzerConfig:
    """Caller-supplied policy for the engine."""
    # Extra "never report as unused" rule
    ignore_unused: Optional[Callable[[VariableInfo], bool]] = None
    # Names matching this regex are never reported as unused
    ignore_unused_names: Optional[str] = None
    # Treat public/protected records as used
    treat_visibility_as_used: bool = True
    # Additional by-reference slots, same format as PASS_BY_REFERENCE_FUNCTIONS
    by_reference_functions: Dict[str, Sequence[Union[int, str]]] = field(default_factory=dict)

    def __post_init__(self):
        self._ignore_re = re.compile(self.ignore_unused_names) if self.ignore_unused_names else None
        self._by_reference = dict(PASS_BY_REFERENCE_FUNCTIONS)
        for name, slots in self.by_reference_functions.items():
            self._by_reference[name.lower()] = tuple(slots)

    def is_ignored(self, info: VariableInfo) -> bool:
        if info.ignore_unused:
            return True
        if self.treat_visibility_as_used and info.is_ignore_unused():
            return True
        if self._ignore_re is not None and self._ignore_re.search(info.name):
            return True
        if self.ignore_unused is not None and self.ignore_unused(info):
            return True
        return False

    def takes_reference(self, function_name: str, position: int) -> bool:
        """Whether argument `position` (1-based) of the call is by reference."""
        slots = self._by_reference.get(function_name.lower().lstrip("\\"))
        if not slots:
            return False
        for slot in slots:
            if isinstance(slot, str) and slot.startswith("..."):
                if position >= int(slot[3:]):
                    return True
            elif int(slot) == position:
                return True
        return False


# ============================================================================
# Variable Registry & Scopes
# ============================================================================

class VariableRegistry:
    """Per-scope mapping from variable name (no sigil) to its record."""

    def __init__(self):
        self._variables: Dict[str, VariableInfo] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._variables

    def __iter__(self) -> Iterator[VariableInfo]:
        return iter(list(self._variables.values()))

    def __len__(self) -> int:
        return len(self._variables)

    def resolve(self, name: str) -> Optional[VariableInfo]:
        return self._variables.get(name)

    def declare(self, name: str, scope_type: ScopeType, pos: Position,
                pass_by_ref: bool = False, type_hint: Optional[str] = None) -> VariableInfo:
        info = self._variables.get(name)
        if info is None:
            info = VariableInfo(name)
            self._variables[name] = info
        info.scope_type = scope_type
        if info.first_declared is None:
            info.first_declared = pos
        if pass_by_ref:
            info.pass_by_reference = True
        if type_hint is not None and info.type_hint is None:
            info.type_hint = type_hint
        return info

    def initialize(self, name: str, pos: Position, pass_by_ref: bool = False) -> VariableInfo:
        """Record an assignment; an unknown name becomes a local declared here."""
        info = self._variables.get(name)
        if info is None:
            info = self.declare(name, ScopeType.LOCAL, pos)
        if info.first_initialized is None:
            info.first_initialized = pos
        if pass_by_ref:
            info.pass_by_reference = True
        return info

    def read(self, name: str, pos: Position) -> Optional[VariableInfo]:
        info = self._variables.get(name)
        if info is not None and info.first_read is None:
            info.first_read = pos
        return info

    def alias(self, info: VariableInfo):
        """Install a record owned elsewhere (shared global)."""
        self._variables[info.name] = info


@dataclass(eq=False)
class Scope:
    kind: ScopeKind
    opener: int
    closer: Optional[int]
    parent: Optional["Scope"] = None
    in_class: bool = False
    registry: VariableRegistry = field(default_factory=VariableRegistry)
    bound_names: Set[str] = field(default_factory=set)


class ScopeStack:
    """Frames from the file scope (bottom) to the innermost function-like body."""

    def __init__(self, file_scope: Scope):
        self._frames: List[Scope] = [file_scope]

    def __len__(self) -> int:
        return len(self._frames)

    def __iter__(self) -> Iterator[Scope]:
        return iter(self._frames)

    @property
    def file_scope(self) -> Scope:
        return self._frames[0]

    @property
    def current(self) -> Scope:
        return self._frames[-1]

    def push(self, scope: Scope):
        self._frames.append(scope)

    def pop(self) -> Scope:
        if len(self._frames) <= 1:
            raise ScopeStackUnderflow("Cannot pop the file scope")
        return self._frames.pop()


@dataclass
class ClassRegion:
    opener: int
    closer: int


# ============================================================================
# Diagnostic Emitter
# ============================================================================

class DiagnosticEmitter:
    """Formats findings and files them into the report."""

    def __init__(self):
        self.report = AnalysisReport()

    def _emit(self, severity: Severity, pos: Position, message: str, source: str):
        table = self.report.errors if severity is Severity.ERROR else self.report.warnings
        table[pos.line][pos.column].append(Message(message, source))
        self.report.findings.append(Finding(
            line=pos.line,
            column=pos.column,
            message=message,
            source=source,
            severity=severity,
        ))

    def warning(self, pos: Position, message: str, source: str):
        self._emit(Severity.WARNING, pos, message, source)

    def error(self, pos: Position, message: str, source: str):
        self._emit(Severity.ERROR, pos, message, source)


# ============================================================================
# AnalysisRun — per-file state
# ============================================================================

class AnalysisRun:
    """Everything one analysis of one file mutates."""

    def __init__(self, cursor: TokenCursor):
        self.cursor = cursor
        self.file_scope = Scope(ScopeKind.FILE, opener=-1, closer=None)
        self.scopes = ScopeStack(self.file_scope)
        self.class_regions: List[ClassRegion] = []
        self.emitter = DiagnosticEmitter()


# ============================================================================
# VariableAnalyzer — scope tracking & occurrence classification
# ============================================================================

def position_of(token: Token) -> Position:
    return Position(token.line, token.column)


def interpolated_variables(text: str) -> Iterator[Tuple[str, int]]:
    """(name, line offset) of every variable interpolated in a string literal."""
    for m in INTERPOLATION_RE.finditer(text):
        if len(m.group(1)) % 2:
            continue  # escaped \$
        yield m.group(2), text.count("\n", 0, m.start())


def string_literal_value(token: Token) -> Optional[str]:
    """Content of a quoted string token without interpolation, else None."""
    text = token.text
    if text[:1] in ("b", "B"):
        text = text[1:]
    if len(text) < 2 or text[0] != text[-1] or text[0] not in ("'", '"'):
        return None
    if token.kind is TokenKind.DOUBLE_QUOTED_STRING:
        if any(True for _ in interpolated_variables(text)):
            return None
    elif token.kind is not TokenKind.CONSTANT_STRING:
        return None
    return text[1:-1]


@dataclass
class Parameter:
    name: str
    position: Position
    by_reference: bool = False
    type_hint: Optional[str] = None
    visibility: Optional[str] = None


class VariableAnalyzer:
    """
    Variable usage analysis for one PHP token stream.

    The analyzer itself is stateless between runs; every call to analyze()
    builds a fresh AnalysisRun, so one instance can serve any number of files.
    """

    def __init__(self, config: Optional[AnalyzerConfig] = None):
        self.config = config or AnalyzerConfig()
        self._dispatch: Dict[TokenKind, Callable[[AnalysisRun, int], int]] = {
            TokenKind.VARIABLE: self._classify_variable,
            TokenKind.DOUBLE_QUOTED_STRING: self._classify_interpolated_string,
            TokenKind.HEREDOC: self._classify_interpolated_string,
            TokenKind.IDENTIFIER: self._classify_identifier,
            TokenKind.FUNCTION: self._classify_function,
            TokenKind.FN: self._classify_function,
            TokenKind.CLASS: self._classify_class,
            TokenKind.INTERFACE: self._classify_class,
            TokenKind.TRAIT: self._classify_class,
            TokenKind.ENUM: self._classify_class,
            TokenKind.GLOBAL: self._classify_global,
            TokenKind.STATIC: self._classify_static,
        }
        # Kinds that never start an occurrence on their own
        for kind in (
            TokenKind.DOLLAR, TokenKind.CONSTANT_STRING, TokenKind.NOWDOC,
            TokenKind.OPEN_PAREN, TokenKind.CLOSE_PAREN,
            TokenKind.OPEN_BRACKET, TokenKind.CLOSE_BRACKET,
            TokenKind.OPEN_BRACE, TokenKind.CLOSE_BRACE,
            TokenKind.COMMA, TokenKind.SEMICOLON, TokenKind.EQUAL,
            TokenKind.AMPERSAND, TokenKind.ELLIPSIS, TokenKind.DOUBLE_ARROW,
            TokenKind.OBJECT_OPERATOR, TokenKind.DOUBLE_COLON,
            TokenKind.USE, TokenKind.FOREACH, TokenKind.AS, TokenKind.CATCH,
            TokenKind.NEW, TokenKind.LIST, TokenKind.ARRAY,
            TokenKind.SELF, TokenKind.PARENT,
            TokenKind.PUBLIC, TokenKind.PROTECTED, TokenKind.PRIVATE,
            TokenKind.OTHER,
        ):
            self._dispatch[kind] = self._skip
        missing = [kind.name for kind in TokenKind if kind not in self._dispatch]
        if missing:
            raise UnhandledTokenError(f"No classifier for token kinds: {', '.join(missing)}")

    # ------------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------------

    def analyze_source(self, source: str) -> AnalysisReport:
        return self.analyze(tokenize(source))

    def analyze(self, tokens: List[Token]) -> AnalysisReport:
        cursor = TokenCursor(tokens)
        run = AnalysisRun(cursor)
        self._walk(run, 0, len(cursor))
        self._close_scopes(run, len(cursor))
        while len(run.scopes) > 1:
            self._finalize(run, run.scopes.pop())
        self._finalize(run, run.file_scope)
        return run.emitter.report

    # ------------------------------------------------------------------------
    # Walk & scope stack
    # ------------------------------------------------------------------------

    def _walk(self, run: AnalysisRun, start: int, stop: int):
        idx = start
        while idx < stop:
            self._close_scopes(run, idx)
            run.cursor.seek(idx)
            token = run.cursor[idx]
            handler = self._dispatch.get(token.kind)
            if handler is None:
                raise UnhandledTokenError(f"No classifier for {token!r}")
            idx = handler(run, idx)

    def _close_scopes(self, run: AnalysisRun, idx: int):
        while True:
            scope = run.scopes.current
            if scope.closer is None or idx < scope.closer:
                break
            self._finalize(run, run.scopes.pop())
        while run.class_regions and idx >= run.class_regions[-1].closer:
            run.class_regions.pop()

    def _skip(self, run: AnalysisRun, idx: int) -> int:
        return idx + 1

    def _in_class(self, run: AnalysisRun, idx: int) -> bool:
        return any(region.opener < idx for region in run.class_regions)

    def _in_class_body(self, run: AnalysisRun, idx: int) -> bool:
        """Directly inside a class body, outside any method."""
        for region in reversed(run.class_regions):
            if region.opener < idx:
                return run.scopes.current.opener < region.opener
        return False

    def _this_allowed(self, run: AnalysisRun) -> bool:
        # Closures and arrow functions can be bound to an object at runtime
        return run.scopes.current.kind in (ScopeKind.METHOD, ScopeKind.CLOSURE, ScopeKind.ARROW)

    def _lookup(self, run: AnalysisRun, name: str) -> Tuple[Scope, Optional[VariableInfo]]:
        """Resolve a name; arrow functions fall back to their enclosing scope."""
        scope = run.scopes.current
        while True:
            info = scope.registry.resolve(name)
            if info is not None or scope.kind is not ScopeKind.ARROW or scope.parent is None:
                return scope, info
            scope = scope.parent

    # ------------------------------------------------------------------------
    # Registry operations with diagnostics
    # ------------------------------------------------------------------------

    def _read(self, run: AnalysisRun, name: str, pos: Position):
        if name == "this":
            self._check_this(run, pos)
            return
        if name in SUPERGLOBALS:
            self._touch_superglobal(run, name, pos)
            return
        scope, info = self._lookup(run, name)
        if info is None:
            run.emitter.error(pos, f"Variable ${name} is undefined.", SOURCE_UNDEFINED)
            return
        scope.registry.read(name, pos)

    def _assign(self, run: AnalysisRun, name: str, pos: Position, pass_by_ref: bool = False):
        if name == "this" or name in SUPERGLOBALS:
            return
        run.scopes.current.registry.initialize(name, pos, pass_by_ref)

    def _check_this(self, run: AnalysisRun, pos: Position):
        if not self._this_allowed(run):
            run.emitter.error(pos, "Variable $this is undefined.", SOURCE_UNDEFINED)

    def _touch_superglobal(self, run: AnalysisRun, name: str, pos: Position):
        registry = run.scopes.current.registry
        info = registry.resolve(name)
        if info is None:
            info = registry.declare(name, ScopeType.GLOBAL, pos)
            info.ignore_unused = True
        registry.read(name, pos)

    def _redeclare(self, run: AnalysisRun, scope: Scope, info: VariableInfo,
                   scope_type: ScopeType, pos: Position) -> VariableInfo:
        """Warn about a kind change and return the record to update."""
        run.emitter.warning(
            pos,
            f"Redeclaration of {info.description} ${info.name} as "
            f"{SCOPE_TYPE_DESCRIPTIONS[scope_type]}.",
            SOURCE_REDECLARATION,
        )
        if scope is not run.file_scope and run.file_scope.registry.resolve(info.name) is info:
            # Leaving a shared global: the frame gets its own copy
            info = replace(info)
            scope.registry.alias(info)
        info.scope_type = scope_type
        return info

    # ------------------------------------------------------------------------
    # Classifier: plain variables
    # ------------------------------------------------------------------------

    def _classify_variable(self, run: AnalysisRun, idx: int) -> int:
        cursor = run.cursor
        token = cursor[idx]
        name = token.text[1:]
        pos = position_of(token)
        prev_kind = cursor.kind_at(idx - 1)

        if prev_kind is TokenKind.DOUBLE_COLON:
            self._classify_static_member(run, idx, name, pos)
        elif prev_kind is TokenKind.OBJECT_OPERATOR or prev_kind is TokenKind.DOLLAR:
            # $obj->$name / $$name: the value of $name is used
            self._read(run, name, pos)
        elif name == "this":
            self._check_this(run, pos)
        elif name in SUPERGLOBALS:
            self._touch_superglobal(run, name, pos)
        elif self._in_class_body(run, idx):
            pass  # property declaration, members are not tracked
        elif (self._classify_catch(run, idx, name, pos)
              or self._classify_foreach_target(run, idx, name, pos)
              or self._classify_list_target(run, idx, name, pos)
              or self._classify_assignment(run, idx, name, pos)
              or self._classify_reference_assignment(run, idx, name, pos)
              or self._classify_by_reference_argument(run, idx, name, pos)):
            pass
        else:
            self._read(run, name, pos)
        return idx + 1

    def _classify_static_member(self, run: AnalysisRun, idx: int, name: str, pos: Position):
        """Class::$member; only self/static outside a class are reported."""
        scope_token = run.cursor.peek(idx - 2)
        if scope_token is None or scope_token.kind not in (TokenKind.SELF, TokenKind.STATIC):
            return
        if run.scopes.current.in_class or self._in_class(run, idx):
            return
        keyword = scope_token.text.lower()
        source = SOURCE_SELF_OUTSIDE_CLASS if keyword == "self" else SOURCE_STATIC_OUTSIDE_CLASS
        run.emitter.error(pos, f"Use of {keyword}::${name} outside class definition.", source)

    def _classify_catch(self, run: AnalysisRun, idx: int, name: str, pos: Position) -> bool:
        cursor = run.cursor
        opener = cursor.enclosing(idx)
        if opener is None or cursor.kind_at(opener - 1) is not TokenKind.CATCH:
            return False
        scope = run.scopes.current
        info = scope.registry.resolve(name)
        if info is not None and info.scope_type is not ScopeType.LOCAL:
            self._redeclare(run, scope, info, ScopeType.LOCAL, pos)
        scope.registry.declare(name, ScopeType.LOCAL, pos)
        scope.registry.initialize(name, pos)
        return True

    def _is_destructuring_opener(self, cursor: TokenCursor, opener: int) -> bool:
        kind = cursor[opener].kind
        prev_kind = cursor.kind_at(opener - 1)
        if kind is TokenKind.OPEN_PAREN:
            return prev_kind is TokenKind.LIST
        if kind is TokenKind.OPEN_BRACKET and cursor[opener].text == "[":
            return prev_kind not in VALUE_END_KINDS
        return False

    def _classify_foreach_target(self, run: AnalysisRun, idx: int, name: str, pos: Position) -> bool:
        cursor = run.cursor
        child = idx
        opener = cursor.enclosing(idx)
        while opener is not None:
            if (cursor[opener].kind is TokenKind.OPEN_PAREN
                    and cursor.kind_at(opener - 1) is TokenKind.FOREACH):
                break
            if not self._is_destructuring_opener(cursor, opener):
                return False
            child = opener
            opener = cursor.enclosing(opener)
        if opener is None:
            return False
        after_as = any(cursor[i].kind is TokenKind.AS for i in cursor.top_level(opener + 1, child))
        if not after_as:
            return False
        if cursor.kind_at(idx + 1) is TokenKind.DOUBLE_ARROW and child != idx:
            # key expression inside a keyed destructuring pattern
            return False
        by_ref = cursor.kind_at(idx - 1) is TokenKind.AMPERSAND
        self._assign(run, name, pos, by_ref)
        return True

    def _classify_list_target(self, run: AnalysisRun, idx: int, name: str, pos: Position) -> bool:
        cursor = run.cursor
        if cursor.kind_at(idx + 1) not in (TokenKind.COMMA, TokenKind.CLOSE_BRACKET,
                                           TokenKind.CLOSE_PAREN):
            return False
        outermost = None
        opener = cursor.enclosing(idx)
        while opener is not None and self._is_destructuring_opener(cursor, opener):
            outermost = opener
            opener = cursor.enclosing(opener)
        if outermost is None:
            return False
        if cursor.kind_at(cursor.link(outermost) + 1) is not TokenKind.EQUAL:
            return False
        by_ref = cursor.kind_at(idx - 1) is TokenKind.AMPERSAND
        self._assign(run, name, pos, by_ref)
        return True

    def _classify_assignment(self, run: AnalysisRun, idx: int, name: str, pos: Position) -> bool:
        """$name = ... and $name[...] = ... (plain `=` only)."""
        cursor = run.cursor
        nxt = idx + 1
        while cursor.kind_at(nxt) is TokenKind.OPEN_BRACKET and cursor[nxt].text == "[":
            nxt = cursor.link(nxt) + 1
        if cursor.kind_at(nxt) is not TokenKind.EQUAL:
            return False
        self._assign(run, name, pos)
        return True

    def _classify_reference_assignment(self, run: AnalysisRun, idx: int, name: str,
                                       pos: Position) -> bool:
        """... = &$name creates $name when it does not exist yet."""
        cursor = run.cursor
        if (cursor.kind_at(idx - 1) is not TokenKind.AMPERSAND
                or cursor.kind_at(idx - 2) is not TokenKind.EQUAL):
            return False
        scope, info = self._lookup(run, name)
        if info is None:
            self._assign(run, name, pos, pass_by_ref=True)
        else:
            info.pass_by_reference = True
            scope.registry.read(name, pos)
        return True

    def _classify_by_reference_argument(self, run: AnalysisRun, idx: int, name: str,
                                        pos: Position) -> bool:
        cursor = run.cursor
        if cursor.kind_at(idx - 1) not in (TokenKind.OPEN_PAREN, TokenKind.COMMA):
            return False
        if cursor.kind_at(idx + 1) not in (TokenKind.COMMA, TokenKind.CLOSE_PAREN):
            return False
        opener = cursor.enclosing(idx)
        if opener is None or cursor[opener].kind is not TokenKind.OPEN_PAREN:
            return False
        function_token = cursor.peek(opener - 1)
        if function_token is None or function_token.kind is not TokenKind.IDENTIFIER:
            return False
        if cursor.kind_at(opener - 2) in (TokenKind.OBJECT_OPERATOR, TokenKind.DOUBLE_COLON,
                                          TokenKind.FUNCTION, TokenKind.NEW):
            return False
        argument = 1 + sum(1 for i in cursor.top_level(opener + 1, idx)
                           if cursor[i].kind is TokenKind.COMMA)
        if not self.config.takes_reference(function_token.text, argument):
            return False
        scope, info = self._lookup(run, name)
        if info is None:
            self._assign(run, name, pos, pass_by_ref=True)
        else:
            scope.registry.initialize(name, pos)
        return True

    # ------------------------------------------------------------------------
    # Classifier: interpolated strings
    # ------------------------------------------------------------------------

    def _classify_interpolated_string(self, run: AnalysisRun, idx: int) -> int:
        token = run.cursor[idx]
        for name, line_offset in interpolated_variables(token.text):
            # Findings sit where the PHP tokenizer starts the string's line
            if line_offset == 0:
                pos = position_of(token)
            else:
                pos = Position(token.line + line_offset, 1)
            self._read(run, name, pos)
        return idx + 1

    # ------------------------------------------------------------------------
    # Classifier: compact()
    # ------------------------------------------------------------------------

    def _classify_identifier(self, run: AnalysisRun, idx: int) -> int:
        cursor = run.cursor
        token = cursor[idx]
        if (token.text.lower() == "compact"
                and cursor.kind_at(idx + 1) is TokenKind.OPEN_PAREN
                and cursor.kind_at(idx - 1) not in (TokenKind.OBJECT_OPERATOR,
                                                    TokenKind.DOUBLE_COLON,
                                                    TokenKind.FUNCTION, TokenKind.NEW)):
            self._read_compact_arguments(run, idx + 1)
        return idx + 1

    def _read_compact_arguments(self, run: AnalysisRun, opener: int):
        cursor = run.cursor
        for start, stop in cursor.split(opener + 1, cursor.link(opener)):
            first = cursor[start]
            if stop - start == 1 and first.kind in (TokenKind.CONSTANT_STRING,
                                                    TokenKind.DOUBLE_QUOTED_STRING):
                value = string_literal_value(first)
                if value is not None and IDENTIFIER_RE.match(value):
                    self._read(run, value, position_of(first))
            elif (first.kind is TokenKind.ARRAY
                  and cursor.kind_at(start + 1) is TokenKind.OPEN_PAREN
                  and cursor.link(start + 1) == stop - 1):
                self._read_compact_arguments(run, start + 1)
            elif first.kind is TokenKind.OPEN_BRACKET and cursor.link(start) == stop - 1:
                self._read_compact_arguments(run, start)

    # ------------------------------------------------------------------------
    # Classifier: global / static statements
    # ------------------------------------------------------------------------

    def _statement_end(self, cursor: TokenCursor, start: int) -> int:
        """Index of the `;` (or block end) terminating the statement at start."""
        for idx in cursor.top_level(start, len(cursor)):
            kind = cursor[idx].kind
            if kind is TokenKind.SEMICOLON or kind in CLOSERS:
                return idx
        return len(cursor)

    def _classify_global(self, run: AnalysisRun, idx: int) -> int:
        cursor = run.cursor
        end = self._statement_end(cursor, idx + 1)
        for i in range(idx + 1, end):
            token = cursor[i]
            if token.kind is TokenKind.VARIABLE and cursor.kind_at(i - 1) is not TokenKind.DOLLAR:
                self._declare_global(run, token.text[1:], position_of(token))
        return end

    def _declare_global(self, run: AnalysisRun, name: str, pos: Position):
        scope = run.scopes.current
        shared_registry = run.file_scope.registry
        info = scope.registry.resolve(name)
        if info is not None:
            if info.scope_type is not ScopeType.GLOBAL:
                info = self._redeclare(run, scope, info, ScopeType.GLOBAL, pos)
                if shared_registry.resolve(name) is None:
                    shared_registry.alias(info)
            return
        shared = shared_registry.resolve(name)
        if shared is None:
            shared = shared_registry.declare(name, ScopeType.GLOBAL, pos)
        else:
            shared.scope_type = ScopeType.GLOBAL
        scope.registry.alias(shared)

    def _classify_static(self, run: AnalysisRun, idx: int) -> int:
        cursor = run.cursor
        if cursor.kind_at(idx + 1) is not TokenKind.VARIABLE:
            return idx + 1  # static::, static function, return type
        if cursor.kind_at(idx - 1) in MEMBER_ACCESS_KINDS or self._in_class_body(run, idx):
            return idx + 1  # static property declaration
        end = self._statement_end(cursor, idx + 1)
        for start, stop in cursor.split(idx + 1, end):
            token = cursor[start]
            if token.kind is not TokenKind.VARIABLE:
                continue
            pos = position_of(token)
            self._declare_static(run, token.text[1:], pos)
            if start + 1 < stop and cursor[start + 1].kind is TokenKind.EQUAL:
                run.scopes.current.registry.initialize(token.text[1:], pos)
                # The default value, heredoc/nowdoc bodies included, is one span
                self._walk(run, start + 2, stop)
        return end

    def _declare_static(self, run: AnalysisRun, name: str, pos: Position):
        scope = run.scopes.current
        info = scope.registry.resolve(name)
        if info is not None:
            self._redeclare(run, scope, info, ScopeType.STATIC, pos)
        scope.registry.declare(name, ScopeType.STATIC, pos)

    # ------------------------------------------------------------------------
    # Classifier: class bodies
    # ------------------------------------------------------------------------

    def _classify_class(self, run: AnalysisRun, idx: int) -> int:
        cursor = run.cursor
        if cursor.kind_at(idx - 1) in MEMBER_ACCESS_KINDS:
            return idx + 1  # Foo::class
        body = idx + 1
        while body < len(cursor):
            kind = cursor[body].kind
            if kind is TokenKind.OPEN_BRACE:
                run.class_regions.append(ClassRegion(body, cursor.link(body)))
                break
            if kind in (TokenKind.SEMICOLON, TokenKind.CLOSE_PAREN, TokenKind.CLOSE_BRACE):
                break
            if kind in OPENERS:
                # anonymous class constructor arguments
                body = cursor.link(body) + 1
                continue
            body += 1
        return idx + 1

    # ------------------------------------------------------------------------
    # Classifier: functions, methods, closures, arrow functions
    # ------------------------------------------------------------------------

    def _classify_function(self, run: AnalysisRun, idx: int) -> int:
        cursor = run.cursor
        is_arrow = cursor[idx].kind is TokenKind.FN
        if cursor.kind_at(idx - 1) in MEMBER_ACCESS_KINDS:
            return idx + 1
        params_open = idx + 1
        if cursor.kind_at(params_open) is TokenKind.AMPERSAND:
            params_open += 1  # returns by reference
        named = cursor.kind_at(params_open) is not TokenKind.OPEN_PAREN
        if named:
            params_open += 1
        if is_arrow and named:
            return idx + 1
        if cursor.kind_at(params_open) is not TokenKind.OPEN_PAREN:
            return idx + 1  # `use function Foo\bar;`
        params_close = cursor.link(params_open)

        if named:
            kind = ScopeKind.METHOD if self._in_class_body(run, idx) else ScopeKind.FUNCTION
        else:
            kind = ScopeKind.ARROW if is_arrow else ScopeKind.CLOSURE

        params = self._parse_parameters(run, params_open, params_close)

        body = params_close + 1
        imports: List[Parameter] = []
        if kind is ScopeKind.CLOSURE and cursor.kind_at(body) is TokenKind.USE:
            use_open = body + 1
            if cursor.kind_at(use_open) is TokenKind.OPEN_PAREN:
                use_close = cursor.link(use_open)
                imports = self._parse_imports(cursor, use_open, use_close)
                body = use_close + 1

        if is_arrow:
            arrow = cursor.find(body, TokenKind.DOUBLE_ARROW)
            if arrow is None:
                return params_close + 1
            body_start = arrow + 1
            closer = self._arrow_end(cursor, body_start)
            opener = arrow
        else:
            brace = cursor.find(body, TokenKind.OPEN_BRACE, TokenKind.SEMICOLON)
            if brace is None or cursor[brace].kind is TokenKind.SEMICOLON:
                # abstract or interface method: nothing to track
                return params_close + 1
            body_start = brace + 1
            closer = cursor.link(brace)
            opener = brace

        bound = self._import_closure_variables(run, imports)

        scope = Scope(kind, opener=opener, closer=closer, parent=run.scopes.current,
                      in_class=self._in_class(run, idx))
        for param in params:
            info = scope.registry.declare(param.name, ScopeType.PARAM, param.position,
                                          pass_by_ref=param.by_reference,
                                          type_hint=param.type_hint)
            info.visibility = param.visibility
        for imported in bound:
            scope.registry.declare(imported.name, ScopeType.BOUND, imported.position,
                                   pass_by_ref=imported.by_reference)
            scope.bound_names.add(imported.name)
        run.scopes.push(scope)
        return body_start

    def _parse_parameters(self, run: AnalysisRun, params_open: int,
                          params_close: int) -> List[Parameter]:
        """Parameters of a signature; default values are read in the enclosing scope."""
        cursor = run.cursor
        params: List[Parameter] = []
        for start, stop in cursor.split(params_open + 1, params_close):
            var_idx = None
            for i in cursor.top_level(start, stop):
                if cursor[i].kind is TokenKind.VARIABLE:
                    var_idx = i
                    break
            if var_idx is None:
                continue
            by_ref = False
            visibility = None
            hint_parts: List[str] = []
            for i in cursor.top_level(start, var_idx):
                token = cursor[i]
                if token.kind is TokenKind.AMPERSAND:
                    by_ref = True
                elif token.kind in VISIBILITY_KINDS:
                    visibility = token.text.lower()
                elif token.kind is TokenKind.OPEN_BRACKET and token.text == "#[":
                    continue  # attribute
                elif token.kind is TokenKind.ELLIPSIS or token.text.lower() == "readonly":
                    continue
                else:
                    hint_parts.append(token.text)
            var_token = cursor[var_idx]
            params.append(Parameter(
                name=var_token.text[1:],
                position=position_of(var_token),
                by_reference=by_ref,
                type_hint="".join(hint_parts) or None,
                visibility=visibility,
            ))
            if var_idx + 1 < stop and cursor[var_idx + 1].kind is TokenKind.EQUAL:
                self._walk(run, var_idx + 2, stop)
        return params

    def _parse_imports(self, cursor: TokenCursor, use_open: int, use_close: int) -> List[Parameter]:
        imports: List[Parameter] = []
        for start, stop in cursor.split(use_open + 1, use_close):
            for i in range(start, stop):
                token = cursor[i]
                if token.kind is TokenKind.VARIABLE:
                    imports.append(Parameter(
                        name=token.text[1:],
                        position=position_of(token),
                        by_reference=cursor.kind_at(i - 1) is TokenKind.AMPERSAND,
                    ))
                    break
        return imports

    def _import_closure_variables(self, run: AnalysisRun,
                                  imports: List[Parameter]) -> List[Parameter]:
        """Resolve `use (...)` names in the enclosing scope.

        A by-value import reads the outer variable; importing an undefined
        name is reported and leaves it undefined inside the closure too.
        A by-reference import creates a missing outer variable.
        """
        bound: List[Parameter] = []
        for imported in imports:
            name = imported.name
            if name == "this" or name in SUPERGLOBALS:
                continue
            scope, info = self._lookup(run, name)
            if info is not None:
                scope.registry.read(name, imported.position)
                if imported.by_reference:
                    info.pass_by_reference = True
                bound.append(imported)
            elif imported.by_reference:
                self._assign(run, name, imported.position, pass_by_ref=True)
                run.scopes.current.registry.read(name, imported.position)
                bound.append(imported)
            else:
                run.emitter.error(imported.position, f"Variable ${name} is undefined.",
                                  SOURCE_UNDEFINED)
        return bound

    def _arrow_end(self, cursor: TokenCursor, start: int) -> int:
        """Index of the token ending an arrow function body that starts at start."""
        idx = start
        while idx < len(cursor):
            kind = cursor[idx].kind
            if kind in OPENERS:
                idx = cursor.link(idx) + 1
                continue
            if kind in CLOSERS or kind in (TokenKind.COMMA, TokenKind.SEMICOLON):
                return idx
            idx += 1
        return len(cursor)

    # ------------------------------------------------------------------------
    # Scope Finalizer
    # ------------------------------------------------------------------------

    def _finalize(self, run: AnalysisRun, scope: Scope):
        shared = None if scope is run.file_scope else run.file_scope.registry
        for info in scope.registry:
            if shared is not None and shared.resolve(info.name) is info:
                continue  # judged once, with the file scope
            if info.first_read is not None or info.scope_type is ScopeType.INSTANCE:
                continue
            if (info.pass_by_reference and info.first_initialized is not None
                    and (info.scope_type is ScopeType.PARAM or info.name in scope.bound_names)):
                continue  # assigning a reference hands the value back to the caller
            if self.config.is_ignored(info):
                continue
            pos = info.first_declared or info.first_initialized
            if pos is None:
                continue
            run.emitter.warning(pos, self._unused_message(info), SOURCE_UNUSED)

    @staticmethod
    def _unused_message(info: VariableInfo) -> str:
        if info.scope_type is ScopeType.PARAM:
            return f"Unused function parameter ${info.name}."
        if info.scope_type is ScopeType.GLOBAL:
            return f"Unused global variable ${info.name}."
        return f"Unused variable ${info.name}."


def analyze_source(source: str, config: Optional[AnalyzerConfig] = None) -> AnalysisReport:
    """Convenience wrapper: tokenize and analyze one PHP source string."""
    return VariableAnalyzer(config).analyze_source(source)
