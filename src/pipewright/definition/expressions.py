"""Conditional expressions.

Expressions use function-call syntax over literals and references::

    and(eq(parameters.BUILD_LINUX, true), ne(variables['Build.Reason'], 'Schedule'))

They are parsed once into a small tagged tree (Literal, Reference, Call)
and evaluated by structural recursion against a context that resolves
``parameters.X`` and ``variables.X`` references. Evaluation is pure: the
same context always yields the same result.
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Iterator, Protocol, Union

from pipewright.core.exceptions import ExpressionError


NAMESPACES = ("parameters", "variables")

# name -> (min args, max args or None for variadic)
FUNCTIONS: dict[str, tuple[int, int | None]] = {
    "eq": (2, 2),
    "ne": (2, 2),
    "and": (2, None),
    "or": (2, None),
    "in": (2, None),
    "not": (1, 1),
}


class ExpressionContext(Protocol):
    """Anything able to resolve a namespaced reference."""

    def lookup(self, namespace: str, name: str) -> Any:
        """Return the value, raising ExpressionError when it is not defined."""
        ...


# ============================================================================
# Expression tree
# ============================================================================

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Reference:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}.{self.name}"


@dataclass(frozen=True)
class Call:
    function: str
    args: tuple["Expression", ...]


Expression = Union[Literal, Reference, Call]


# ============================================================================
# Tokenizer
# ============================================================================

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<string>'(?:[^']|'')*')
  | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
  | (?P<punct>[(),.\[\]])
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise ExpressionError(
                f"Unexpected character {text[pos]!r} at position {pos} in expression: {text}"
            )
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, match.group(), pos))
        pos = match.end()
    return tokens


# ============================================================================
# Parser
# ============================================================================

class _Parser:
    """Recursive descent parser producing an Expression tree."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.index = 0

    def _peek(self) -> _Token | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _next(self) -> _Token:
        token = self._peek()
        if token is None:
            raise ExpressionError(f"Unexpected end of expression: {self.text}")
        self.index += 1
        return token

    def _expect(self, text: str) -> None:
        token = self._next()
        if token.text != text:
            raise ExpressionError(
                f"Expected {text!r} at position {token.pos}, got {token.text!r} "
                f"in expression: {self.text}"
            )

    def parse(self) -> Expression:
        if not self.tokens:
            raise ExpressionError("Empty expression")
        expr = self._parse_expr()
        token = self._peek()
        if token is not None:
            raise ExpressionError(
                f"Unexpected {token.text!r} at position {token.pos} in expression: {self.text}"
            )
        return expr

    def _parse_expr(self) -> Expression:
        token = self._next()

        if token.kind == "number":
            number = float(token.text)
            return Literal(int(number) if number.is_integer() and "." not in token.text else number)

        if token.kind == "string":
            return Literal(token.text[1:-1].replace("''", "'"))

        if token.kind != "ident":
            raise ExpressionError(
                f"Unexpected {token.text!r} at position {token.pos} in expression: {self.text}"
            )

        word = token.text
        lowered = word.lower()
        if lowered == "true":
            return Literal(True)
        if lowered == "false":
            return Literal(False)
        if lowered == "null":
            return Literal(None)

        following = self._peek()
        if following is not None and following.text == "(":
            return self._parse_call(lowered, token)

        if word in NAMESPACES:
            return self._parse_reference(word)

        raise ExpressionError(
            f"Unknown identifier {word!r} at position {token.pos} in expression: {self.text}"
        )

    def _parse_call(self, function: str, token: _Token) -> Call:
        if function not in FUNCTIONS:
            raise ExpressionError(f"Unknown function '{function}' in expression: {self.text}")

        self._expect("(")
        args: list[Expression] = []
        following = self._peek()
        if following is not None and following.text == ")":
            self._next()
        else:
            while True:
                args.append(self._parse_expr())
                separator = self._next()
                if separator.text == ")":
                    break
                if separator.text != ",":
                    raise ExpressionError(
                        f"Expected ',' or ')' at position {separator.pos}, "
                        f"got {separator.text!r} in expression: {self.text}"
                    )

        minimum, maximum = FUNCTIONS[function]
        if len(args) < minimum or (maximum is not None and len(args) > maximum):
            expected = str(minimum) if minimum == maximum else f"at least {minimum}"
            raise ExpressionError(
                f"Function '{function}' expects {expected} argument(s), got {len(args)} "
                f"in expression: {self.text}"
            )
        return Call(function, tuple(args))

    def _parse_reference(self, namespace: str) -> Reference:
        token = self._next()
        if token.text == "[":
            key = self._next()
            if key.kind != "string":
                raise ExpressionError(
                    f"Expected a quoted name at position {key.pos} in expression: {self.text}"
                )
            self._expect("]")
            return Reference(namespace, key.text[1:-1].replace("''", "'"))

        if token.text != ".":
            raise ExpressionError(
                f"Expected '.' or '[' after '{namespace}' in expression: {self.text}"
            )

        parts = [self._next_ident()]
        while True:
            following = self._peek()
            if following is None or following.text != ".":
                break
            self._next()
            parts.append(self._next_ident())
        return Reference(namespace, ".".join(parts))

    def _next_ident(self) -> str:
        token = self._next()
        if token.kind != "ident":
            raise ExpressionError(
                f"Expected a name at position {token.pos}, got {token.text!r} "
                f"in expression: {self.text}"
            )
        return token.text


@lru_cache(maxsize=1024)
def parse_expression(text: str) -> Expression:
    """Parse an expression string into a tree.

    Raises:
        ExpressionError: If the expression is malformed
    """
    return _Parser(text.strip()).parse()


# ============================================================================
# Evaluation
# ============================================================================

def is_truthy(value: Any) -> bool:
    """Truthiness used by conditions: false, null, 0, '' and 'false' are false."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip() != "" and value.strip().lower() != "false"
    return bool(value)


def _coerce_like(value: Any, like: Any) -> Any:
    """Convert `value` towards the type of `like` for comparison."""
    if isinstance(like, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            return value.strip().lower() == "true"
        return is_truthy(value)
    if isinstance(like, (int, float)):
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float)):
            return value
        try:
            return float(str(value).strip())
        except ValueError:
            return value
    if isinstance(like, str):
        return format_value(value)
    return value


def values_equal(left: Any, right: Any) -> bool:
    """Equality with coercion of the right operand to the left operand's type."""
    if left is None or right is None:
        return left is None and right is None or format_value(left) == format_value(right)
    coerced = _coerce_like(right, left)
    if isinstance(left, str) and isinstance(coerced, str):
        return left.casefold() == coerced.casefold()
    return left == coerced


def format_value(value: Any) -> str:
    """Render a value as a string the way template interpolation does."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def evaluate(expr: Expression, context: ExpressionContext) -> Any:
    """Evaluate an expression tree against a context.

    `and`/`or` short-circuit left to right; later arguments are not
    evaluated (and so cannot fail) once the result is known.

    Raises:
        ExpressionError: If a reference cannot be resolved
    """
    if isinstance(expr, Literal):
        return expr.value

    if isinstance(expr, Reference):
        return context.lookup(expr.namespace, expr.name)

    function = expr.function
    args = expr.args

    if function == "and":
        for arg in args:
            if not is_truthy(evaluate(arg, context)):
                return False
        return True

    if function == "or":
        for arg in args:
            if is_truthy(evaluate(arg, context)):
                return True
        return False

    if function == "not":
        return not is_truthy(evaluate(args[0], context))

    if function == "eq":
        return values_equal(evaluate(args[0], context), evaluate(args[1], context))

    if function == "ne":
        return not values_equal(evaluate(args[0], context), evaluate(args[1], context))

    if function == "in":
        needle = evaluate(args[0], context)
        return any(values_equal(needle, evaluate(arg, context)) for arg in args[1:])

    raise ExpressionError(f"Unknown function '{function}'")


def evaluate_expression(text: str, context: ExpressionContext) -> Any:
    """Parse and evaluate an expression string."""
    return evaluate(parse_expression(text), context)


def evaluate_condition(text: str | bool | None, context: ExpressionContext) -> bool:
    """Evaluate a condition; a missing condition is true."""
    if text is None:
        return True
    if isinstance(text, bool):
        return text
    return is_truthy(evaluate_expression(text, context))


def iter_references(expr: Expression) -> Iterator[Reference]:
    """Yield every reference in an expression tree, in source order."""
    if isinstance(expr, Reference):
        yield expr
    elif isinstance(expr, Call):
        for arg in expr.args:
            yield from iter_references(arg)


# ============================================================================
# Template expressions: ${{ expr }}
# ============================================================================

TEMPLATE_EXPR_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)
_WHOLE_TEMPLATE_EXPR_RE = re.compile(r"^\s*\$\{\{(.*?)\}\}\s*$", re.DOTALL)


def find_expressions(text: str) -> list[str]:
    """Return the inner text of every ${{ }} occurrence in a string."""
    return [match.group(1).strip() for match in TEMPLATE_EXPR_RE.finditer(text)]


def render_value(value: Any, context: ExpressionContext) -> Any:
    """Substitute template expressions in a scalar.

    A string that is exactly one ``${{ expr }}`` becomes the typed result;
    otherwise each occurrence is replaced by its string form. Non-string
    values are returned unchanged.
    """
    if not isinstance(value, str) or "${{" not in value:
        return value

    whole = _WHOLE_TEMPLATE_EXPR_RE.match(value)
    if whole is not None and "${{" not in whole.group(1):
        return evaluate_expression(whole.group(1), context)

    return TEMPLATE_EXPR_RE.sub(
        lambda match: format_value(evaluate_expression(match.group(1), context)),
        value,
    )
