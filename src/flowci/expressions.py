# expressions.py
"""
`${{ ... }}` expressions used by workflow documents.

Supported:
  - literals: 'single quoted' strings, numbers, true / false / null
  - context lookups: matrix.os, env.NAME, runner.os, steps.<id>.outputs.<name>
  - operators: ! == != && || and parentheses
  - functions: success() failure() always() cancelled() hashFiles(...)
               contains() startsWith() endsWith()

A condition (`if:`) that calls none of the status functions is implicitly
`success() && (<condition>)`.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .errors import MalformedDocument

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<string>'(?:[^']|'')*')
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<op>==|!=|&&|\|\||!|\(|\)|,)
      | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_*][A-Za-z0-9_\-]*)*)
    )
    """,
    re.VERBOSE,
)

_INTERP_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)

STATUS_FUNCTIONS = ("success", "failure", "always", "cancelled")

# name -> (min args, max args or None)
FUNCTION_ARITY: Dict[str, Tuple[int, Optional[int]]] = {
    **{name: (0, 0) for name in STATUS_FUNCTIONS},
    "contains": (2, 2),
    "startsWith": (2, 2),
    "endsWith": (2, 2),
    "hashFiles": (1, None),
}


@dataclass
class ExpressionContext:
    """Named contexts (matrix, env, runner, steps...) plus callable functions."""
    contexts: Dict[str, Any] = field(default_factory=dict)
    functions: Dict[str, Callable[..., Any]] = field(default_factory=dict)

    def lookup(self, path: str) -> Any:
        head, *rest = path.split(".")
        if head not in self.contexts:
            raise MalformedDocument(f"unknown context {head!r} in expression")
        value: Any = self.contexts[head]
        for part in rest:
            if isinstance(value, Mapping):
                value = value.get(part)
            else:
                return None
        return value


# ---------------------------------------------------------------------
# Tokenizer / parser
# ---------------------------------------------------------------------

def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = text.strip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise MalformedDocument(f"cannot parse expression near {text[pos:]!r}", expression=text)
        kind = m.lastgroup or ""
        tokens.append((kind, m.group(kind)))
        pos = m.end()
        while pos < len(text) and text[pos].isspace():
            pos += 1
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self, value: Optional[str] = None) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None or (value is not None and tok[1] != value):
            raise MalformedDocument(f"unexpected end of expression, expected {value!r}", expression=self.text)
        self.pos += 1
        return tok

    def parse(self) -> tuple:
        node = self._or()
        if self._peek() is not None:
            raise MalformedDocument(f"trailing tokens in expression: {self._peek()[1]!r}", expression=self.text)
        return node

    def _or(self) -> tuple:
        node = self._and()
        while self._peek() == ("op", "||"):
            self._take()
            node = ("or", node, self._and())
        return node

    def _and(self) -> tuple:
        node = self._cmp()
        while self._peek() == ("op", "&&"):
            self._take()
            node = ("and", node, self._cmp())
        return node

    def _cmp(self) -> tuple:
        node = self._unary()
        tok = self._peek()
        if tok in (("op", "=="), ("op", "!=")):
            self._take()
            node = (tok[1], node, self._unary())
        return node

    def _unary(self) -> tuple:
        if self._peek() == ("op", "!"):
            self._take()
            return ("not", self._unary())
        return self._primary()

    def _primary(self) -> tuple:
        kind, value = self._take()
        if kind == "string":
            return ("lit", value[1:-1].replace("''", "'"))
        if kind == "number":
            return ("lit", float(value) if "." in value else int(value))
        if kind == "op" and value == "(":
            node = self._or()
            self._take(")")
            return node
        if kind == "ident":
            if value in ("true", "false"):
                return ("lit", value == "true")
            if value == "null":
                return ("lit", None)
            if self._peek() == ("op", "("):
                self._take()
                args: List[tuple] = []
                if self._peek() != ("op", ")"):
                    args.append(self._or())
                    while self._peek() == ("op", ","):
                        self._take()
                        args.append(self._or())
                self._take(")")
                return ("call", value, args)
            return ("ctx", value)
        raise MalformedDocument(f"unexpected token {value!r} in expression", expression=self.text)


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and value == 0:
        return False
    if isinstance(value, str) and value == "":
        return False
    return True


def _loose_eq(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.casefold() == b.casefold()
    return a == b


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


_BUILTINS: Dict[str, Callable[..., Any]] = {
    "contains": lambda hay, needle: (
        any(_loose_eq(x, needle) for x in hay)
        if isinstance(hay, (list, tuple))
        else _as_text(needle).casefold() in _as_text(hay).casefold()
    ),
    "startsWith": lambda s, p: _as_text(s).casefold().startswith(_as_text(p).casefold()),
    "endsWith": lambda s, p: _as_text(s).casefold().endswith(_as_text(p).casefold()),
}


def _eval(node: tuple, ctx: ExpressionContext) -> Any:
    op = node[0]
    if op == "lit":
        return node[1]
    if op == "ctx":
        return ctx.lookup(node[1])
    if op == "not":
        return not truthy(_eval(node[1], ctx))
    if op == "and":
        left = _eval(node[1], ctx)
        return _eval(node[2], ctx) if truthy(left) else left
    if op == "or":
        left = _eval(node[1], ctx)
        return left if truthy(left) else _eval(node[2], ctx)
    if op == "==":
        return _loose_eq(_eval(node[1], ctx), _eval(node[2], ctx))
    if op == "!=":
        return not _loose_eq(_eval(node[1], ctx), _eval(node[2], ctx))
    if op == "call":
        name, args = node[1], node[2]
        fn = ctx.functions.get(name) or _BUILTINS.get(name)
        if fn is None:
            raise MalformedDocument(f"unknown function {name}()")
        values = [_eval(a, ctx) for a in args]
        try:
            return fn(*values)
        except TypeError as e:
            raise MalformedDocument(f"bad call to {name}(): {e}") from e
    raise MalformedDocument(f"bad expression node {op!r}")


def _strip_wrapper(text: str) -> str:
    text = text.strip()
    m = _INTERP_RE.fullmatch(text)
    return m.group(1) if m else text


def _calls_status_function(node: tuple) -> bool:
    if node[0] == "call":
        return node[1] in STATUS_FUNCTIONS or any(_calls_status_function(a) for a in node[2])
    return any(isinstance(child, tuple) and _calls_status_function(child) for child in node[1:])


def evaluate(text: str, ctx: ExpressionContext) -> Any:
    """Evaluate a bare expression (no `${{ }}` wrapper needed)."""
    return _eval(_Parser(_strip_wrapper(text)).parse(), ctx)


def evaluate_condition(text: Optional[str], ctx: ExpressionContext) -> bool:
    """Evaluate an `if:` condition; empty/None means `success()`."""
    if text is None or not str(text).strip():
        node: tuple = ("call", "success", [])
    elif isinstance(text, bool):
        return text
    else:
        node = _Parser(_strip_wrapper(str(text))).parse()
        if not _calls_status_function(node):
            node = ("and", ("call", "success", []), node)
    return truthy(_eval(node, ctx))


def interpolate(value: Any, ctx: ExpressionContext) -> Any:
    """Replace every `${{ expr }}` in strings (recursing into lists/mappings)."""
    if isinstance(value, str):
        return _INTERP_RE.sub(lambda m: _as_text(evaluate(m.group(1), ctx)), value)
    if isinstance(value, Mapping):
        return {k: interpolate(v, ctx) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [interpolate(v, ctx) for v in value]
    return value


def check_syntax(text: str) -> None:
    """Parse every `${{ }}` block (or a bare condition) without evaluating it."""
    blocks = _INTERP_RE.findall(text)
    for block in blocks or [text]:
        _check_calls(_Parser(block).parse(), block)


def _check_calls(node: tuple, text: str) -> None:
    if node[0] == "call":
        name, args = node[1], node[2]
        bounds = FUNCTION_ARITY.get(name)
        if bounds is not None:
            low, high = bounds
            if len(args) < low or (high is not None and len(args) > high):
                expected = str(low) if low == high else f"at least {low}"
                raise MalformedDocument(
                    f"{name}() takes {expected} argument(s), got {len(args)}", expression=text.strip()
                )
        for arg in args:
            _check_calls(arg, text)
        return
    for child in node[1:]:
        if isinstance(child, tuple):
            _check_calls(child, text)
