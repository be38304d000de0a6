# expressions.py
from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ExpressionError

# ---------------------------------------------------------------------
# ${{ ... }} expressions
# ---------------------------------------------------------------------
# Grammar (lowest precedence first):
#   or      := and ( '||' and )*
#   and     := cmp ( '&&' cmp )*
#   cmp     := unary ( ('=='|'!='|'<'|'<='|'>'|'>=') unary )?
#   unary   := '!' unary | primary
#   primary := literal | call | reference | '(' or ')'
#
# References are dotted paths into the context mapping:
#   env.X, secrets.X, matrix.X, steps.<id>.outputs.<name>, needs.<job>.result ...
# Unknown references evaluate to None and render as an empty string.

EXPR_RE = re.compile(r"\$\{\{\s*(.*?)\s*\}\}", re.DOTALL)
STATUS_FUNCTION_RE = re.compile(r"\b(success|failure|always|cancelled)\s*\(")

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>'(?:[^']|'')*')
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<op>==|!=|<=|>=|&&|\|\||[!<>(),])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_*][A-Za-z0-9_\-]*)*)
    """,
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None}


def _tokenize(expr: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(expr):
        m = _TOKEN_RE.match(expr, pos)
        if not m:
            raise ExpressionError(f"Unexpected character {expr[pos]!r} at {pos} in: {expr}")
        pos = m.end()
        kind = m.lastgroup
        if kind == "ws":
            continue
        tokens.append((kind, m.group(kind)))
    return tokens


def _lookup(ctx: Mapping[str, Any], path: str) -> Any:
    cur: Any = ctx
    for part in path.split("."):
        if not isinstance(cur, Mapping):
            return None
        if part in cur:
            cur = cur[part]
            continue
        # env / secret names are conventionally upper-case, contexts lower-case
        folded = {str(k).lower(): v for k, v in cur.items()}
        if part.lower() not in folded:
            return None
        cur = folded[part.lower()]
    return cur


def _truthy(v: Any) -> bool:
    if v is None:
        return False
    if isinstance(v, str):
        return v != ""
    if isinstance(v, (int, float)):
        return v != 0
    return bool(v)


def _as_number(v: Any) -> Optional[float]:
    if isinstance(v, bool):
        return 1.0 if v else 0.0
    if isinstance(v, (int, float)):
        return float(v)
    if v is None:
        return 0.0
    if isinstance(v, str):
        try:
            return float(v.strip()) if v.strip() else 0.0
        except ValueError:
            return None
    return None


def _equals(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.lower() == b.lower()
    if a is None and b is None:
        return True
    if isinstance(a, str) or isinstance(b, str) or isinstance(a, (int, float)) or isinstance(b, (int, float)):
        na, nb = _as_number(a), _as_number(b)
        if na is not None and nb is not None:
            return na == nb
    return a == b


def to_str(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    if isinstance(v, (dict, list)):
        return json.dumps(v, sort_keys=True)
    return str(v)


class _Parser:
    def __init__(self, expr: str, ctx: Mapping[str, Any], missing: Optional[List[str]]):
        self.expr = expr
        self.tokens = _tokenize(expr)
        self.pos = 0
        self.ctx = ctx
        self.missing = missing

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise ExpressionError(f"Unexpected end of expression: {self.expr}")
        self.pos += 1
        return tok

    def _accept(self, value: str) -> bool:
        tok = self._peek()
        if tok is not None and tok[0] == "op" and tok[1] == value:
            self.pos += 1
            return True
        return False

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            got = self._peek()
            raise ExpressionError(f"Expected {value!r} but got {got[1] if got else 'end'!r} in: {self.expr}")

    def parse(self) -> Any:
        if not self.tokens:
            raise ExpressionError("Empty expression")
        value = self._or()
        if self._peek() is not None:
            raise ExpressionError(f"Unexpected {self._peek()[1]!r} in: {self.expr}")
        return value

    def _or(self) -> Any:
        left = self._and()
        while self._accept("||"):
            right = self._and()
            left = left if _truthy(left) else right
        return left

    def _and(self) -> Any:
        left = self._cmp()
        while self._accept("&&"):
            right = self._cmp()
            left = right if _truthy(left) else left
        return left

    def _cmp(self) -> Any:
        left = self._unary()
        tok = self._peek()
        if tok is not None and tok[0] == "op" and tok[1] in ("==", "!=", "<", "<=", ">", ">="):
            self.pos += 1
            right = self._unary()
            op = tok[1]
            if op == "==":
                return _equals(left, right)
            if op == "!=":
                return not _equals(left, right)
            na, nb = _as_number(left), _as_number(right)
            if na is None or nb is None:
                return False
            return {"<": na < nb, "<=": na <= nb, ">": na > nb, ">=": na >= nb}[op]
        return left

    def _unary(self) -> Any:
        if self._accept("!"):
            return not _truthy(self._unary())
        return self._primary()

    def _primary(self) -> Any:
        kind, value = self._take()
        if kind == "string":
            return value[1:-1].replace("''", "'")
        if kind == "number":
            return float(value) if "." in value else int(value)
        if kind == "op" and value == "(":
            inner = self._or()
            self._expect(")")
            return inner
        if kind == "ident":
            if value in _KEYWORDS:
                return _KEYWORDS[value]
            if self._accept("("):
                args = []
                if not self._accept(")"):
                    args.append(self._or())
                    while self._accept(","):
                        args.append(self._or())
                    self._expect(")")
                return self._call(value, args)
            found = _lookup(self.ctx, value)
            if found is None and self.missing is not None:
                self.missing.append(value)
            return found
        raise ExpressionError(f"Unexpected {value!r} in: {self.expr}")

    def _call(self, name: str, args: List[Any]) -> Any:
        status = to_str(_lookup(self.ctx, "job.status")) or "success"
        fn = name.lower()
        if fn == "always":
            return True
        if fn == "success":
            return status == "success"
        if fn == "failure":
            return status == "failure"
        if fn == "cancelled":
            return status == "cancelled"
        if fn in ("contains", "startswith", "endswith"):
            if len(args) != 2:
                raise ExpressionError(f"{name}() takes 2 arguments in: {self.expr}")
            hay, needle = args
            if fn == "contains" and isinstance(hay, list):
                return any(_equals(item, needle) for item in hay)
            hay_s, needle_s = to_str(hay).lower(), to_str(needle).lower()
            if fn == "contains":
                return needle_s in hay_s
            if fn == "startswith":
                return hay_s.startswith(needle_s)
            return hay_s.endswith(needle_s)
        if fn == "format":
            if not args:
                raise ExpressionError(f"format() needs a format string in: {self.expr}")
            out = to_str(args[0])
            for i, a in enumerate(args[1:]):
                out = out.replace("{" + str(i) + "}", to_str(a))
            return out
        if fn == "tojson":
            return json.dumps(args[0] if args else None, sort_keys=True)
        raise ExpressionError(f"Unknown function {name}() in: {self.expr}")


def evaluate(expr: str, ctx: Mapping[str, Any], missing: Optional[List[str]] = None) -> Any:
    """Evaluate a bare expression (no ${{ }} wrapper)."""
    return _Parser(expr, ctx, missing).parse()


def has_expressions(text: str) -> bool:
    return bool(text) and "${{" in text


def interpolate(text: Any, ctx: Mapping[str, Any], missing: Optional[List[str]] = None) -> str:
    """Replace every ${{ expr }} in `text` with its string value."""
    if text is None:
        return ""
    text = str(text)
    if "${{" not in text:
        return text
    return EXPR_RE.sub(lambda m: to_str(evaluate(m.group(1), ctx, missing)), text)


def interpolate_mapping(values: Mapping[str, Any], ctx: Mapping[str, Any], missing: Optional[List[str]] = None) -> Dict[str, str]:
    return {k: interpolate(v, ctx, missing) for k, v in values.items()}


def references(expr: str) -> List[str]:
    """Context paths referenced by a bare expression (function names excluded)."""
    tokens = _tokenize(expr)
    refs = []
    for i, (kind, value) in enumerate(tokens):
        if kind != "ident" or value in _KEYWORDS:
            continue
        nxt = tokens[i + 1] if i + 1 < len(tokens) else None
        if nxt == ("op", "("):
            continue
        refs.append(value)
    return refs


def partial_interpolate(text: Any, ctx: Mapping[str, Any], roots: Tuple[str, ...]) -> str:
    """
    Like interpolate(), but only resolve expressions whose references all
    live under `roots` (e.g. ("matrix",)). Everything else is left as-is so
    it can be resolved later, at run time.
    """
    if text is None:
        return ""
    text = str(text)
    if "${{" not in text:
        return text

    def _sub(m: re.Match) -> str:
        refs = references(m.group(1))
        if not refs or any(r.split(".", 1)[0] not in roots for r in refs):
            return m.group(0)
        return to_str(evaluate(m.group(1), ctx))

    return EXPR_RE.sub(_sub, text)


def uses_status_function(expr: str | None) -> bool:
    return bool(expr) and bool(STATUS_FUNCTION_RE.search(expr))


def _unwrap(expr: str) -> str:
    s = expr.strip()
    wrappers = EXPR_RE.findall(s)
    if len(wrappers) == 1 and EXPR_RE.fullmatch(s):
        return wrappers[0]
    # "${{ a }} && ${{ b }}" reads as "(a) && (b)"
    return EXPR_RE.sub(lambda m: f"({m.group(1)})", s)


def evaluate_condition(expr: str | None, ctx: Mapping[str, Any]) -> bool:
    """
    Evaluate an `if:` condition.

    Without a status function the condition is implicitly
    `success() && (<expr>)`.
    """
    if expr is None or (isinstance(expr, str) and not expr.strip()):
        return _truthy(evaluate("success()", ctx))
    if isinstance(expr, bool):
        return expr and _truthy(evaluate("success()", ctx))
    body = _unwrap(str(expr))
    if not uses_status_function(body):
        body = f"success() && ({body})"
    return _truthy(evaluate(body, ctx))
