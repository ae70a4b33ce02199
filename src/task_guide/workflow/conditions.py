"""Conditions as data: a tagged expression tree, its parsers and its evaluator.

Branch conditions, document gates and rule checks are all ``Condition`` trees.
They come from template YAML either as expression strings::

    context.age >= 18 and country in ["US", "CA"]

or in structured form::

    {"all": [{"var": "age", "op": ">=", "value": 18},
             {"var": "country", "in": ["US", "CA"]}]}

Evaluation never reads the clock: the reserved variable ``today`` resolves to
the ``as_of`` value supplied by the caller.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

from ..core.errors import ConditionSyntaxError, MissingContextVariable, TypeMismatch
from ..core.values import (
    ValueKind,
    as_comparable,
    comparison_kind,
    decode_value,
    encode_value,
    normalize_value,
)

logger = logging.getLogger(__name__)

AS_OF_VARIABLE = "today"
CONTEXT_PREFIX = "context."

COMPARISON_OPERATORS = ("==", "!=", "<", "<=", ">", ">=")
_ORDERED_KINDS = (ValueKind.NUMBER, ValueKind.DATE)


class MissingVariablePolicy(str, Enum):
    """What a missing variable means to the evaluator."""
    RAISE = "raise"  # MissingContextVariable; callers decide
    FALSE = "false"  # whole condition evaluates False


# --- Expression tree ---


class Condition:
    """Base class for condition nodes. Nodes are immutable."""

    def variables(self) -> FrozenSet[str]:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class Var(Condition):
    name: str

    def variables(self) -> FrozenSet[str]:
        return frozenset({self.name})

    def to_dict(self) -> Dict[str, Any]:
        return {"var": self.name}

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Literal(Condition):
    value: Any

    def variables(self) -> FrozenSet[str]:
        return frozenset()

    def to_dict(self) -> Dict[str, Any]:
        return {"value": encode_value(self.value)}

    def __str__(self) -> str:
        return _render_literal(self.value)


@dataclass(frozen=True)
class Compare(Condition):
    op: str
    left: Condition
    right: Condition

    def __post_init__(self):
        if self.op not in COMPARISON_OPERATORS:
            raise ConditionSyntaxError(f"Unknown comparison operator '{self.op}'")

    def variables(self) -> FrozenSet[str]:
        return self.left.variables() | self.right.variables()

    def to_dict(self) -> Dict[str, Any]:
        return {"op": self.op, "left": self.left.to_dict(), "right": self.right.to_dict()}

    def __str__(self) -> str:
        return f"{_render_operand(self.left)} {self.op} {_render_operand(self.right)}"


@dataclass(frozen=True)
class Membership(Condition):
    item: Condition
    collection: Condition
    negated: bool = False

    def variables(self) -> FrozenSet[str]:
        return self.item.variables() | self.collection.variables()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "op": "not in" if self.negated else "in",
            "left": self.item.to_dict(),
            "right": self.collection.to_dict(),
        }

    def __str__(self) -> str:
        keyword = "not in" if self.negated else "in"
        return f"{_render_operand(self.item)} {keyword} {_render_operand(self.collection)}"


@dataclass(frozen=True)
class And(Condition):
    operands: Tuple[Condition, ...]

    def variables(self) -> FrozenSet[str]:
        return frozenset().union(*(o.variables() for o in self.operands))

    def to_dict(self) -> Dict[str, Any]:
        return {"all": [o.to_dict() for o in self.operands]}

    def __str__(self) -> str:
        return " and ".join(_render_operand(o) for o in self.operands)


@dataclass(frozen=True)
class Or(Condition):
    operands: Tuple[Condition, ...]

    def variables(self) -> FrozenSet[str]:
        return frozenset().union(*(o.variables() for o in self.operands))

    def to_dict(self) -> Dict[str, Any]:
        return {"any": [o.to_dict() for o in self.operands]}

    def __str__(self) -> str:
        return " or ".join(_render_operand(o) for o in self.operands)


@dataclass(frozen=True)
class Not(Condition):
    operand: Condition

    def variables(self) -> FrozenSet[str]:
        return self.operand.variables()

    def to_dict(self) -> Dict[str, Any]:
        return {"not": self.operand.to_dict()}

    def __str__(self) -> str:
        return f"not {_render_operand(self.operand)}"


def _render_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'
    if isinstance(value, date):
        return f'date("{value.isoformat()}")'
    if isinstance(value, frozenset):
        return "[" + ", ".join(_render_literal(v) for v in sorted(value)) + "]"
    return repr(value)


def _render_operand(node: Condition) -> str:
    if isinstance(node, (And, Or, Compare, Membership)):
        return f"({node})"
    return str(node)


# --- Expression string parser ---

_TOKEN_PATTERN = re.compile(
    r"""
    \s*(?:
        (?P<number>-?\d+(?:\.\d+)?)
      | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<op>==|!=|<=|>=|<|>|&&|\|\||!)
      | (?P<punct>[()\[\],])
      | (?P<name>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)
    )""",
    re.VERBOSE,
)

_KEYWORD_ALIASES = {"&&": "and", "||": "or", "!": "not"}


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    position: int


def _tokenize(text: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(text):
        if text[pos:].strip() == "":
            break
        match = _TOKEN_PATTERN.match(text, pos)
        if not match:
            at = len(text) - len(text[pos:].lstrip())
            raise ConditionSyntaxError(f"Unexpected character {text[at]!r} at {at}", text, at)
        kind = match.lastgroup
        value = match.group(kind)
        start = match.start(kind)
        if kind == "op" and value in _KEYWORD_ALIASES:
            kind, value = "name", _KEYWORD_ALIASES[value]
        tokens.append(_Token(kind, value, start))
        pos = match.end()
    return tokens


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


class _Parser:
    """Recursive descent: or > and > not > comparison > operand."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.index = 0

    def parse(self) -> Condition:
        if not self.tokens:
            raise ConditionSyntaxError("Empty condition", self.text, 0)
        node = self._or()
        if self.index < len(self.tokens):
            token = self.tokens[self.index]
            raise ConditionSyntaxError(
                f"Unexpected '{token.text}' at {token.position}", self.text, token.position
            )
        return node

    def _peek(self) -> Optional[_Token]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _peek_keyword(self, word: str, offset: int = 0) -> bool:
        i = self.index + offset
        return i < len(self.tokens) and self.tokens[i].kind == "name" and self.tokens[i].text == word

    def _advance(self) -> _Token:
        token = self._peek()
        if token is None:
            raise ConditionSyntaxError("Unexpected end of condition", self.text, len(self.text))
        self.index += 1
        return token

    def _expect(self, text: str) -> None:
        token = self._advance()
        if token.text != text:
            raise ConditionSyntaxError(
                f"Expected '{text}' at {token.position}, found '{token.text}'",
                self.text, token.position,
            )

    def _or(self) -> Condition:
        operands = [self._and()]
        while self._peek_keyword("or"):
            self._advance()
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else Or(tuple(operands))

    def _and(self) -> Condition:
        operands = [self._not()]
        while self._peek_keyword("and"):
            self._advance()
            operands.append(self._not())
        return operands[0] if len(operands) == 1 else And(tuple(operands))

    def _not(self) -> Condition:
        if self._peek_keyword("not"):
            self._advance()
            return Not(self._not())
        return self._comparison()

    def _comparison(self) -> Condition:
        left = self._operand()
        token = self._peek()
        if token is None:
            return left
        if token.kind == "op" and token.text in COMPARISON_OPERATORS:
            self._advance()
            return Compare(token.text, left, self._operand())
        if self._peek_keyword("in"):
            self._advance()
            return Membership(left, self._operand())
        if self._peek_keyword("not") and self._peek_keyword("in", offset=1):
            self._advance()
            self._advance()
            return Membership(left, self._operand(), negated=True)
        return left

    def _operand(self) -> Condition:
        token = self._advance()
        if token.text == "(":
            node = self._or()
            self._expect(")")
            return node
        if token.text == "[":
            return Literal(self._list_items())
        if token.kind == "number":
            return Literal(float(token.text) if "." in token.text else int(token.text))
        if token.kind == "string":
            return Literal(_unquote(token.text))
        if token.kind == "name":
            if token.text in ("true", "false"):
                return Literal(token.text == "true")
            if token.text == "date" and self._peek() is not None and self._peek().text == "(":
                return Literal(self._date_call(token))
            if token.text in ("and", "or", "not", "in"):
                raise ConditionSyntaxError(
                    f"Unexpected keyword '{token.text}' at {token.position}",
                    self.text, token.position,
                )
            return Var(_strip_prefix(token.text))
        raise ConditionSyntaxError(
            f"Unexpected '{token.text}' at {token.position}", self.text, token.position
        )

    def _list_items(self) -> FrozenSet[str]:
        items = []
        if self._peek() is not None and self._peek().text == "]":
            self._advance()
            return frozenset()
        while True:
            token = self._advance()
            if token.kind != "string":
                raise ConditionSyntaxError(
                    f"List literals hold strings only, found '{token.text}'",
                    self.text, token.position,
                )
            items.append(_unquote(token.text))
            closing = self._advance()
            if closing.text == "]":
                return frozenset(items)
            if closing.text != ",":
                raise ConditionSyntaxError(
                    f"Expected ',' or ']' at {closing.position}", self.text, closing.position
                )

    def _date_call(self, token: _Token) -> date:
        self._expect("(")
        arg = self._advance()
        if arg.kind != "string":
            raise ConditionSyntaxError("date() takes a quoted ISO date", self.text, arg.position)
        self._expect(")")
        try:
            return date.fromisoformat(_unquote(arg.text))
        except ValueError:
            raise ConditionSyntaxError(
                f"Invalid date {arg.text} at {arg.position}", self.text, arg.position
            ) from None


def _strip_prefix(name: str) -> str:
    return name[len(CONTEXT_PREFIX):] if name.startswith(CONTEXT_PREFIX) else name


def parse_condition(text: str) -> Condition:
    """Parse an expression string into a Condition tree."""
    if not isinstance(text, str):
        raise ConditionSyntaxError(f"Condition must be a string, got {type(text).__name__}")
    return _Parser(text).parse()


def condition_from_dict(data: Union[str, Mapping[str, Any], Condition]) -> Condition:
    """Build a Condition from structured (YAML/JSON) data or an expression string."""
    if isinstance(data, Condition):
        return data
    if isinstance(data, str):
        return parse_condition(data)
    if isinstance(data, bool):
        return Literal(data)
    if not isinstance(data, Mapping):
        raise ConditionSyntaxError(f"Cannot build condition from {type(data).__name__}")

    if "all" in data:
        return And(tuple(condition_from_dict(c) for c in _as_list(data["all"], "all")))
    if "any" in data:
        return Or(tuple(condition_from_dict(c) for c in _as_list(data["any"], "any")))
    if "not" in data:
        return Not(condition_from_dict(data["not"]))

    if "left" in data and "right" in data:
        op = data.get("op")
        left = _operand_from_dict(data["left"])
        right = _operand_from_dict(data["right"])
        if op in ("in", "not in"):
            return Membership(left, right, negated=(op == "not in"))
        return Compare(op, left, right)

    if "var" in data:
        var = Var(_strip_prefix(data["var"]))
        if "in" in data:
            return Membership(var, Literal(normalize_value(data["in"])))
        if "not_in" in data:
            return Membership(var, Literal(normalize_value(data["not_in"])), negated=True)
        if "op" in data:
            if "value" not in data:
                raise ConditionSyntaxError(f"Comparison on '{data['var']}' is missing 'value'")
            return Compare(data["op"], var, Literal(_literal_value(data["value"])))
        return var

    if "value" in data:
        return Literal(_literal_value(data["value"]))

    raise ConditionSyntaxError(f"Unrecognised condition keys: {sorted(data)}")


def _operand_from_dict(data: Any) -> Condition:
    if isinstance(data, Mapping) or isinstance(data, str):
        return condition_from_dict(data)
    return Literal(_literal_value(data))


def _literal_value(raw: Any) -> Any:
    return normalize_value(decode_value(raw))


def _as_list(value: Any, key: str) -> List[Any]:
    if not isinstance(value, list) or not value:
        raise ConditionSyntaxError(f"'{key}' expects a non-empty list of conditions")
    return value


# --- Evaluation ---


class ConditionEvaluator:
    """Interprets Condition trees against a context snapshot.

    Pure and deterministic: the only inputs are the tree, the variables mapping
    and the caller-supplied ``as_of`` date.
    """

    def __init__(self, missing_policy: MissingVariablePolicy = MissingVariablePolicy.RAISE):
        self.missing_policy = MissingVariablePolicy(missing_policy)
        self._handlers: Dict[type, Callable[..., Any]] = {
            Var: self._eval_var,
            Literal: self._eval_literal,
            Compare: self._eval_compare,
            Membership: self._eval_membership,
            And: self._eval_and,
            Or: self._eval_or,
            Not: self._eval_not,
        }

    def evaluate(
        self,
        condition: Condition,
        variables: Mapping[str, Any],
        as_of: Optional[date] = None,
    ) -> bool:
        """Evaluate to a bool, or raise MissingContextVariable / TypeMismatch."""
        try:
            return self._truth(condition, variables, as_of)
        except MissingContextVariable:
            if self.missing_policy == MissingVariablePolicy.FALSE:
                return False
            raise

    def _eval(self, node: Condition, variables: Mapping[str, Any], as_of: Optional[date]) -> Any:
        handler = self._handlers.get(type(node))
        if handler is None:
            raise TypeMismatch(f"Unknown condition node: {type(node).__name__}")
        return handler(node, variables, as_of)

    def _truth(self, node: Condition, variables: Mapping[str, Any], as_of: Optional[date]) -> bool:
        value = self._eval(node, variables, as_of)
        if not isinstance(value, bool):
            raise TypeMismatch(
                f"'{node}' is not a boolean expression",
                expected=ValueKind.BOOLEAN.value,
                actual=_kind_name(value),
            )
        return value

    def _eval_var(self, node: Var, variables, as_of):
        if node.name == AS_OF_VARIABLE and as_of is not None:
            return as_of
        value = variables.get(node.name)
        if value is None:
            raise MissingContextVariable([node.name])
        return value

    def _eval_literal(self, node: Literal, variables, as_of):
        return node.value

    def _operands(self, nodes, variables, as_of) -> List[Any]:
        """Evaluate sibling operands, reporting every missing name at once."""
        values, missing = [], []
        for node in nodes:
            try:
                values.append(self._eval(node, variables, as_of))
            except MissingContextVariable as e:
                missing.extend(e.variables)
        if missing:
            raise MissingContextVariable(missing)
        return values

    def _eval_compare(self, node: Compare, variables, as_of) -> bool:
        left, right = self._operands((node.left, node.right), variables, as_of)
        left_kind, right_kind = comparison_kind(left), comparison_kind(right)
        if left_kind != right_kind:
            raise TypeMismatch(
                f"Cannot compare {left_kind.value} with {right_kind.value} in '{node}'",
                expected=left_kind.value,
                actual=right_kind.value,
            )
        left, right = as_comparable(left), as_comparable(right)
        if node.op == "==":
            return left == right
        if node.op == "!=":
            return left != right
        if left_kind not in _ORDERED_KINDS:
            raise TypeMismatch(
                f"Operator '{node.op}' needs numbers or dates, got {left_kind.value} in '{node}'",
                expected="number|date",
                actual=left_kind.value,
            )
        if node.op == "<":
            return left < right
        if node.op == "<=":
            return left <= right
        if node.op == ">":
            return left > right
        return left >= right

    def _eval_membership(self, node: Membership, variables, as_of) -> bool:
        item, collection = self._operands((node.item, node.collection), variables, as_of)
        if comparison_kind(collection) != ValueKind.SET:
            raise TypeMismatch(
                f"Right side of 'in' must be a set in '{node}'",
                expected=ValueKind.SET.value,
                actual=comparison_kind(collection).value,
            )
        if comparison_kind(item) != ValueKind.STRING:
            raise TypeMismatch(
                f"Only strings can be tested for membership in '{node}'",
                expected=ValueKind.STRING.value,
                actual=comparison_kind(item).value,
            )
        found = item in collection
        return not found if node.negated else found

    def _eval_and(self, node: And, variables, as_of) -> bool:
        missing = []
        for operand in node.operands:
            try:
                if not self._truth(operand, variables, as_of):
                    return False
            except MissingContextVariable as e:
                missing.extend(e.variables)
        if missing:
            raise MissingContextVariable(missing)
        return True

    def _eval_or(self, node: Or, variables, as_of) -> bool:
        missing = []
        for operand in node.operands:
            try:
                if self._truth(operand, variables, as_of):
                    return True
            except MissingContextVariable as e:
                missing.extend(e.variables)
        if missing:
            raise MissingContextVariable(missing)
        return False

    def _eval_not(self, node: Not, variables, as_of) -> bool:
        return not self._truth(node.operand, variables, as_of)


def _kind_name(value: Any) -> str:
    try:
        return comparison_kind(value).value
    except TypeMismatch:
        return type(value).__name__
