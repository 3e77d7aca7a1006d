# -*- coding: utf-8 -*-
"""Location: ./mcpguard/services/script_validator.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Script Validator.

Static pre-flight scan of untrusted scripts. A script containing dynamic
code evaluation, process or OS access, dynamic module loading, or direct
filesystem/network primitives is rejected with ``PolicyViolationError``
before any process is started. Network primitives are tolerated only when
the policy grants outbound hosts, because the runtime then enforces the
allowlist itself.

Python scripts are additionally parsed: attribute access is checked on the
syntax tree, so whitespace, line continuations or implicit string
concatenation cannot hide a dunder, frame or traceback attribute, and
every name taken from an allowlisted module must be one of the names the
runtime exposes for it (see ``module_exports``).

Examples:
    >>> validator = ScriptValidator()
    >>> validator.validate("const r = 1 + 1; return r", "javascript")
    >>> try:
    ...     validator.validate("const x = 1;\\nconst y = eval('2');", "javascript")
    ... except PolicyViolationError as e:
    ...     (e.details["pattern"], e.line, e.column)
    ('eval', 2, 11)
"""

# Standard
import ast
from dataclasses import dataclass
from functools import lru_cache
import importlib
import re
from types import ModuleType
from typing import Dict, FrozenSet, Iterator, List, Optional, Pattern, Set, Tuple

# First-Party
from mcpguard.config import settings
from mcpguard.exceptions import PolicyViolationError
from mcpguard.runtimes.base import indent_script
from mcpguard.schemas import IsolationPolicy
from mcpguard.services.logging_service import LoggingService

logger = LoggingService().get_logger(__name__)
security_logger = LoggingService().get_security_logger()

# Modules a Python script may import; mirrored by the runtime import hook.
ALLOWED_PYTHON_MODULES: FrozenSet[str] = frozenset(
    {
        "asyncio",
        "base64",
        "collections",
        "dataclasses",
        "datetime",
        "decimal",
        "enum",
        "fractions",
        "functools",
        "hashlib",
        "itertools",
        "json",
        "math",
        "operator",
        "random",
        "re",
        "statistics",
        "string",
        "textwrap",
        "time",
        "typing",
        "uuid",
    }
)

# asyncio is exposed as scheduling helpers only: no streams, subprocesses or event loop.
ASYNCIO_EXPORTS: FrozenSet[str] = frozenset(
    {"as_completed", "CancelledError", "Event", "gather", "Lock", "Queue", "Semaphore", "sleep", "TimeoutError", "wait_for"}
)

# Public names withheld from the sandbox: each evaluates strings or reads attributes by name.
_HIDDEN_EXPORTS: Dict[str, FrozenSet[str]] = {
    "operator": frozenset({"attrgetter", "methodcaller"}),
    "string": frozenset({"Formatter"}),
    "typing": frozenset({"ForwardRef", "get_type_hints"}),
}

# Attributes leading to frames, code objects or the tasks running them.
INTERNAL_ATTRIBUTES: FrozenSet[str] = frozenset(
    {
        "ag_await", "ag_code", "ag_frame", "co_code", "co_consts", "cr_await", "cr_code", "cr_frame", "f_back",
        "f_builtins", "f_code", "f_globals", "f_locals", "f_trace", "get_coro", "get_stack", "gi_code", "gi_frame",
        "gi_yieldfrom", "print_stack", "tb_frame", "tb_next",
    }
)  # fmt: skip

_DUNDER_RE = re.compile(r"^__\w+__$")
_FORMAT_ATTRIBUTE_RE = re.compile(r"\{[^{}]*\.\s*_")


@lru_cache(maxsize=None)
def module_exports(name: str) -> FrozenSet[str]:
    """Names a sandboxed script may read from an allowlisted module.

    Private names, submodules and names that evaluate strings or read
    attributes by name are withheld.

    Args:
        name: Module name.

    Returns:
        Exported attribute names; empty for modules outside the allowlist.

    Examples:
        >>> "dumps" in module_exports("json"), "decoder" in module_exports("json")
        (True, False)
        >>> "open_connection" in module_exports("asyncio")
        False
        >>> module_exports("os")
        frozenset()
    """
    if name == "asyncio":
        return ASYNCIO_EXPORTS
    if name not in ALLOWED_PYTHON_MODULES:
        return frozenset()
    module = importlib.import_module(name)
    hidden = _HIDDEN_EXPORTS.get(name, frozenset())
    return frozenset(
        attr for attr, value in vars(module).items() if not attr.startswith("_") and not isinstance(value, ModuleType) and attr not in hidden
    )


@dataclass(frozen=True)
class DisallowedPattern:
    """One construct scripts may not contain."""

    name: str
    regex: Pattern[str]
    description: str
    network: bool = False


@dataclass(frozen=True)
class Violation:
    """A disallowed construct found in a script."""

    pattern: str
    description: str
    line: int
    column: int
    snippet: str


def _p(name: str, pattern: str, description: str, network: bool = False) -> DisallowedPattern:
    return DisallowedPattern(name=name, regex=re.compile(pattern, re.MULTILINE), description=description, network=network)


_JS_PATTERNS: Tuple[DisallowedPattern, ...] = (
    _p("eval", r"\beval\s*\(", "dynamic code evaluation"),
    _p("Function", r"\bFunction\s*\(", "dynamic code evaluation through the Function constructor"),
    _p("constructor", r"\.constructor\b|\[\s*['\"`]constructor['\"`]\s*\]", "constructor access used to reach the Function constructor"),
    _p("string-timer", r"\bset(?:Timeout|Interval)\s*\(\s*['\"`]", "string passed to a timer is evaluated as code"),
    _p("WebAssembly", r"\bWebAssembly\b", "dynamic code loading through WebAssembly"),
    _p("require", r"\brequire\s*\(", "dynamic module loading"),
    _p("dynamic-import", r"\bimport\s*\(", "dynamic module loading"),
    _p("import", r"^\s*(?:import|export)\b(?!\s*\()", "module import outside the tool bridge"),
    _p("process", r"\bprocess\s*\.", "direct process access"),
    _p("Deno", r"\bDeno\b", "direct runtime access (process, filesystem, environment)"),
    _p("globalThis", r"\bglobalThis\b|\bglobal\s*\.", "global object access"),
    _p("__dirname", r"\b__(?:dirname|filename)\b", "host filesystem location"),
    _p("fetch", r"\bfetch\s*\(", "network access outside the tool bridge", network=True),
    _p("WebSocket", r"\b(?:WebSocket|XMLHttpRequest|EventSource)\b", "network access outside the tool bridge", network=True),
)

_PY_PATTERNS: Tuple[DisallowedPattern, ...] = (
    _p("eval", r"\b(?:eval|exec|compile)\s*\(", "dynamic code evaluation"),
    _p("__import__", r"\b__import__\b", "dynamic module loading"),
    _p("importlib", r"\bimportlib\b", "dynamic module loading"),
    _p("dunder", r"\.\s*__\w+__\b|\b__(?:builtins|globals|subclasses|loader|spec|code|traceback|closure|dict)__\b", "interpreter internals access"),
    _p("frame", r"\.\s*(?:tb_frame|tb_next|f_back|f_globals|f_locals|f_builtins|gi_frame|cr_frame|ag_frame)\b", "frame or traceback access"),
    _p("introspection", r"\b(?:globals|locals|vars|breakpoint|getattr|setattr|delattr)\s*\(", "namespace introspection"),
    _p("os", r"\b(?:os|sys|subprocess|shutil|signal|socket|ctypes|multiprocessing|resource)\b\s*(?:\.|\bas\b)", "direct process or OS access"),
    _p("open", r"\bopen\s*\(", "filesystem access outside the tool bridge"),
)

_PY_IMPORT_RE = re.compile(r"^[ \t]*(?:from[ \t]+(\.*[\w.]*)[ \t]+import\b|import[ \t]+([^\n#;]+))", re.MULTILINE)


class _PythonTreeScanner(ast.NodeVisitor):
    """Collect attribute and import violations from a parsed script.

    Positions are reported for the script as written, not the wrapper
    function it is parsed in.
    """

    def __init__(self, module_aliases: Dict[str, str]) -> None:
        self.found: List[Tuple[int, int, str, str]] = []
        self._aliases = module_aliases

    def _flag(self, node: ast.AST, pattern: str, description: str) -> None:
        self.found.append((node.lineno - 1, max(1, node.col_offset - 3), pattern, description))

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if _DUNDER_RE.match(node.attr):
            self._flag(node, "dunder", "interpreter internals access")
        elif node.attr in INTERNAL_ATTRIBUTES:
            self._flag(node, "frame", "frame or traceback access")
        elif isinstance(node.value, ast.Name) and node.value.id in self._aliases:
            module = self._aliases[node.value.id]
            if node.attr not in module_exports(module):
                self._flag(node, f"module:{module}.{node.attr}", "name not exported to the sandbox")
        self.generic_visit(node)

    def visit_MatchClass(self, node: ast.MatchClass) -> None:
        # class patterns read attributes by keyword name
        for attr in node.kwd_attrs:
            if _DUNDER_RE.match(attr):
                self._flag(node, "dunder", "interpreter internals access")
            elif attr in INTERNAL_ATTRIBUTES:
                self._flag(node, "frame", "frame or traceback access")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if _DUNDER_RE.match(node.id):
            self._flag(node, "dunder", "interpreter internals access")

    def visit_Constant(self, node: ast.Constant) -> None:
        if isinstance(node.value, str) and _FORMAT_ATTRIBUTE_RE.search(node.value):
            self._flag(node, "format-attribute", "attribute lookup inside a format string")

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            if "." in alias.name and alias.name.split(".", 1)[0] in ALLOWED_PYTHON_MODULES:
                self._flag(node, f"import:{alias.name}", "submodules are not exposed to the sandbox")

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        module = node.module or ""
        if node.level or module.split(".", 1)[0] not in ALLOWED_PYTHON_MODULES:
            return
        if "." in module:
            self._flag(node, f"import:{module}", "submodules are not exposed to the sandbox")
            return
        for alias in node.names:
            if alias.name not in module_exports(module):
                self._flag(node, f"import:{module}.{alias.name}", "name not exported to the sandbox")


def _python_tree_violations(source: str) -> List[Tuple[int, int, str, str]]:
    """(line, column, pattern, description) found on the syntax tree.

    The script is parsed inside the same ``async def`` wrapper the runtime
    generates. Unparseable scripts yield nothing here; the build phase
    reports them.
    """
    lines, _ = indent_script(source, "    ")
    try:
        tree = ast.parse("async def __user_main__():\n" + "\n".join(lines) + "\n    pass\n")
    except (SyntaxError, ValueError):
        return []
    aliases: Dict[str, str] = {}
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                if alias.name in ALLOWED_PYTHON_MODULES:
                    aliases[alias.asname or alias.name] = alias.name
    scanner = _PythonTreeScanner(aliases)
    for statement in tree.body[0].body:
        scanner.visit(statement)
    return scanner.found


def _location(source: str, offset: int) -> Tuple[int, int]:
    """1-based line and column of ``offset``."""
    line = source.count("\n", 0, offset) + 1
    column = offset - (source.rfind("\n", 0, offset) + 1) + 1
    return line, column


def _snippet(source: str, offset: int) -> str:
    start = source.rfind("\n", 0, offset) + 1
    end = source.find("\n", offset)
    return source[start : end if end != -1 else len(source)].strip()[:120]


def _python_imports(source: str) -> Iterator[Tuple[str, int]]:
    """Yield (module, offset) for each imported module name."""
    for match in _PY_IMPORT_RE.finditer(source):
        if match.group(1) is not None:
            yield match.group(1), match.start(1)
            continue
        start = match.start(2)
        for part in match.group(2).split(","):
            name = part.strip().split(" ")[0].strip("()")
            if name:
                yield name, start + match.group(2).find(part.strip())


class ScriptValidator:
    """Pre-flight scanner for disallowed constructs."""

    def __init__(self, max_chars: Optional[int] = None) -> None:
        """Initialize the validator.

        Args:
            max_chars: Maximum script length; defaults to ``settings.max_script_chars``.
        """
        self._max_chars = max_chars or settings.max_script_chars

    def patterns_for(self, language: str, policy: Optional[IsolationPolicy] = None) -> Tuple[DisallowedPattern, ...]:
        """Disallowed patterns for a language under a policy.

        Args:
            language: ``javascript``, ``typescript`` or ``python``.
            policy: Resolved policy; network patterns are lifted when it grants hosts.

        Returns:
            Patterns to scan for.
        """
        patterns = _PY_PATTERNS if language == "python" else _JS_PATTERNS
        if policy is not None and policy.network_granted:
            patterns = tuple(p for p in patterns if not p.network)
        return patterns

    def find_violations(self, source: str, language: str, policy: Optional[IsolationPolicy] = None) -> List[Violation]:
        """Scan a script and report every violation, earliest first.

        Args:
            source: Script text.
            language: Script language.
            policy: Resolved policy of the execution.

        Returns:
            Violations sorted by position.

        Examples:
            >>> v = ScriptValidator().find_violations("import os\\nx = 1", "python")
            >>> [(x.pattern, x.line) for x in v]
            [('import:os', 1)]
        """
        violations: List[Tuple[int, Violation]] = []
        if not source.strip():
            return [Violation(pattern="empty", description="script is empty", line=1, column=1, snippet="")]
        if len(source) > self._max_chars:
            violations.append((self._max_chars, Violation("length", f"script exceeds {self._max_chars} characters", *_location(source, self._max_chars), "")))

        for pattern in self.patterns_for(language, policy):
            for match in pattern.regex.finditer(source):
                line, column = _location(source, match.start())
                violations.append((match.start(), Violation(pattern.name, pattern.description, line, column, _snippet(source, match.start()))))

        if language == "python":
            for module, offset in _python_imports(source):
                base = module.lstrip(".").split(".", 1)[0]
                if module.startswith(".") or base not in ALLOWED_PYTHON_MODULES:
                    line, column = _location(source, offset)
                    violations.append((offset, Violation(f"import:{module}", "import of a module outside the allowlist", line, column, _snippet(source, offset))))
            seen: Set[Tuple[str, int]] = {(v.pattern, v.line) for _, v in violations}
            line_starts = [0] + [m.end() for m in re.finditer(r"\r\n|\r|\n", source)]
            for line, column, pattern, description in _python_tree_violations(source):
                if (pattern, line) in seen or not 1 <= line <= len(line_starts):
                    continue
                seen.add((pattern, line))
                offset = line_starts[line - 1] + column - 1
                violations.append((offset, Violation(pattern, description, line, column, _snippet(source, line_starts[line - 1]))))

        violations.sort(key=lambda item: item[0])
        return [v for _, v in violations]

    def validate(self, source: str, language: str, policy: Optional[IsolationPolicy] = None, request_id: Optional[str] = None) -> None:
        """Reject a script containing any disallowed construct.

        Args:
            source: Script text.
            language: Script language.
            policy: Resolved policy of the execution.
            request_id: Execution id for the security log.

        Raises:
            PolicyViolationError: For the first violation; ``details`` lists all of them.
        """
        violations = self.find_violations(source, language, policy)
        if not violations:
            return
        first = violations[0]
        security_logger.warning(
            f"Rejected script{f' {request_id}' if request_id else ''}: {first.description} ({first.pattern}) at line {first.line}, column {first.column}"
        )
        raise PolicyViolationError(
            f"Disallowed construct '{first.pattern}': {first.description}",
            line=first.line,
            column=first.column,
            details={
                "pattern": first.pattern,
                "snippet": first.snippet,
                "violations": [{"pattern": v.pattern, "line": v.line, "column": v.column} for v in violations],
            },
        )
