# condition.py
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from .errors import ConfigError
from .model import Job, variable_items

# ---------------------------------------------------------------------
# Condition mini-language
# ---------------------------------------------------------------------
# A job's `condition` is a boolean expression over the job's variables:
#
#   expr    := or
#   or      := and ( ("||" | "or") and )*
#   and     := not ( ("&&" | "and") not )*
#   not     := ("!" | "not") not | cmp
#   cmp     := primary ( ("==" | "!=" | "<" | "<=" | ">" | ">=") primary )?
#   primary := "(" expr ")" | STRING | NUMBER | "true" | "false" | IDENT
#
# Expressions are type checked against the variables before they are
# evaluated. Nothing is coerced: `VERSION == 3` with VERSION="3" is an error,
# not false.
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<number>-?\d+(?:\.\d+)?)
      | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<op>&&|\|\||==|!=|<=|>=|<|>|!|\(|\))
      | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    )
    """,
    re.VERBOSE,
)

_ESCAPES = {"n": "\n", "t": "\t", "\\": "\\", '"': '"', "'": "'"}

_KEYWORD_OPS = {"and": "&&", "or": "||", "not": "!"}
_COMPARISONS = ("==", "!=", "<", "<=", ">", ">=")

BOOL, NUMBER, STRING = "bool", "number", "string"


class ConditionSyntaxError(ValueError):
    pass


class ConditionTypeError(TypeError):
    pass


def _unquote(raw: str) -> str:
    body = raw[1:-1]
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), body)


def tokenize(source: str) -> List[Tuple[str, Any]]:
    tokens: List[Tuple[str, Any]] = []
    pos = 0
    end = len(source.rstrip())
    while pos < end:
        m = _TOKEN_RE.match(source, pos)
        if not m or m.end() == pos:
            raise ConditionSyntaxError(f"unexpected character at position {pos}: {source[pos:pos + 10]!r}")
        pos = m.end()
        if m.group("number") is not None:
            text = m.group("number")
            tokens.append(("lit", float(text) if "." in text else int(text)))
        elif m.group("string") is not None:
            tokens.append(("lit", _unquote(m.group("string"))))
        elif m.group("op") is not None:
            tokens.append(("op", m.group("op")))
        else:
            word = m.group("ident")
            if word in ("true", "false"):
                tokens.append(("lit", word == "true"))
            elif word in _KEYWORD_OPS:
                tokens.append(("op", _KEYWORD_OPS[word]))
            else:
                tokens.append(("var", word))
    return tokens


class _Parser:
    """Recursive descent over the token list; builds nested tuples."""

    def __init__(self, tokens: List[Tuple[str, Any]]):
        self.tokens = tokens
        self.i = 0

    def peek(self) -> Tuple[str, Any] | None:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def accept(self, *ops: str) -> str | None:
        tok = self.peek()
        if tok is not None and tok[0] == "op" and tok[1] in ops:
            self.i += 1
            return tok[1]
        return None

    def parse(self):
        if not self.tokens:
            raise ConditionSyntaxError("empty expression")
        node = self.parse_or()
        if self.peek() is not None:
            raise ConditionSyntaxError(f"unexpected token {self.peek()[1]!r}")
        return node

    def parse_or(self):
        node = self.parse_and()
        while self.accept("||"):
            node = ("or", node, self.parse_and())
        return node

    def parse_and(self):
        node = self.parse_not()
        while self.accept("&&"):
            node = ("and", node, self.parse_not())
        return node

    def parse_not(self):
        if self.accept("!"):
            return ("not", self.parse_not())
        return self.parse_cmp()

    def parse_cmp(self):
        left = self.parse_primary()
        op = self.accept(*_COMPARISONS)
        if op is None:
            return left
        return ("cmp", op, left, self.parse_primary())

    def parse_primary(self):
        tok = self.peek()
        if tok is None:
            raise ConditionSyntaxError("unexpected end of expression")
        if self.accept("("):
            node = self.parse_or()
            if not self.accept(")"):
                raise ConditionSyntaxError("missing closing parenthesis")
            return node
        if tok[0] in ("lit", "var"):
            self.i += 1
            return tok
        raise ConditionSyntaxError(f"unexpected token {tok[1]!r}")


def _type_of(value: Any) -> str:
    if isinstance(value, bool):
        return BOOL
    if isinstance(value, (int, float)):
        return NUMBER
    if isinstance(value, str):
        return STRING
    raise ConditionTypeError(f"unsupported value type {type(value).__name__}")


def _check(node, types: Mapping[str, str]) -> str:
    kind = node[0]
    if kind == "lit":
        return _type_of(node[1])
    if kind == "var":
        if node[1] not in types:
            raise ConditionTypeError(f"unknown variable {node[1]!r}")
        return types[node[1]]
    if kind == "not":
        if _check(node[1], types) != BOOL:
            raise ConditionTypeError("operand of '!' must be a boolean")
        return BOOL
    if kind in ("and", "or"):
        for side in node[1:]:
            if _check(side, types) != BOOL:
                raise ConditionTypeError(f"operands of '{kind}' must be booleans")
        return BOOL
    # comparison
    op, left, right = node[1], _check(node[2], types), _check(node[3], types)
    if left != right:
        raise ConditionTypeError(f"cannot compare {left} {op} {right}")
    if op not in ("==", "!=") and left == BOOL:
        raise ConditionTypeError(f"'{op}' is not defined for booleans")
    return BOOL


def _eval(node, env: Mapping[str, Any]) -> Any:
    kind = node[0]
    if kind == "lit":
        return node[1]
    if kind == "var":
        return env[node[1]]
    if kind == "not":
        return not _eval(node[1], env)
    if kind == "and":
        return _eval(node[1], env) and _eval(node[2], env)
    if kind == "or":
        return _eval(node[1], env) or _eval(node[2], env)
    op, left, right = node[1], _eval(node[2], env), _eval(node[3], env)
    if op == "==":
        return left == right
    if op == "!=":
        return left != right
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


@dataclass(frozen=True)
class Condition:
    """A parsed and type-checked condition, bound to its environment."""
    source: str
    tree: tuple
    env: Mapping[str, Any]

    def evaluate(self) -> bool:
        return bool(_eval(self.tree, self.env))


def compile_condition(source: str, env: Mapping[str, Any]) -> Condition:
    """
    Parse `source` and type check it against env.

    Raises:
        ConditionSyntaxError: the expression does not parse
        ConditionTypeError: unknown variable, mismatched operands or a
            non-boolean result
    """
    text = (source or "").strip() or "true"
    tree = _Parser(tokenize(text)).parse()

    types: Dict[str, str] = {}
    for k, v in env.items():
        try:
            types[k] = _type_of(v)
        except ConditionTypeError:
            continue  # only an error if the expression uses it
    result = _check(tree, types)
    if result != BOOL:
        raise ConditionTypeError(f"expression must evaluate to a boolean, got {result}")
    return Condition(source=text, tree=tree, env=dict(env))


# ---------------------------------------------------------------------
# Job selection
# ---------------------------------------------------------------------

class ConditionEvaluator:
    """Decides per job whether it takes part in its stage."""

    def environment(self, job: Job) -> Dict[str, Any]:
        env: Dict[str, Any] = {}
        for k, v in variable_items(job.name, job.variables):
            env[k] = v
        return env

    def eligible(self, job: Job) -> bool:
        env = self.environment(job)
        try:
            return compile_condition(job.condition, env).evaluate()
        except (ConditionSyntaxError, ConditionTypeError) as e:
            raise ConfigError(
                job=job.name,
                message=f"invalid condition: {e}",
                details={"condition": job.condition or "true"},
            ) from e

    def select(self, jobs: Iterable[Job]) -> Tuple[List[Job], List[Job]]:
        """
        Evaluate every job before anything runs.

        Returns:
            (eligible, skipped) in declaration order
        """
        eligible: List[Job] = []
        skipped: List[Job] = []
        for j in jobs:
            (eligible if self.eligible(j) else skipped).append(j)
        return eligible, skipped
