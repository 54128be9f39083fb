"""Sandboxed expression evaluation and ``{{variable}}`` template substitution.

Branch conditions are parsed with :mod:`ast` and walked by a small
interpreter that only understands literals, variable lookups, comparisons,
boolean combinators and basic arithmetic. There is no ``eval``, no function
calls and no attribute access on arbitrary objects: a dotted name is a key
lookup into the execution's variable mapping.

JavaScript-style operators found in stored definitions (``===``, ``&&``,
``!``, ``true``/``null``) are normalized first.
"""

import ast
import operator
import re
from typing import Any

from core.exceptions import ExpressionError
from workflow.step_configs import TEMPLATE_TOKEN

MAX_EXPRESSION_LENGTH = 2000
MAX_DEPTH = 50

_MISSING = object()

_CONSTANT_NAMES = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "None": None,
    "undefined": None,
}

_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_ARITHMETIC_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}

_STRING_LITERAL = re.compile(r"""('(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")""")
_JS_REWRITES = (
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
)


def normalize_expression(expression: str) -> str:
    """Rewrite JS-style operators and unwrap ``{{name}}`` tokens, leaving string literals intact."""
    parts = _STRING_LITERAL.split(expression)
    out = []
    for index, part in enumerate(parts):
        if index % 2 == 1:
            out.append(part)
            continue
        part = TEMPLATE_TOKEN.sub(lambda m: m.group(1).strip(), part)
        for pattern, replacement in _JS_REWRITES:
            part = pattern.sub(replacement, part)
        out.append(part)
    return "".join(out).strip()


class ExpressionEvaluator:
    """Evaluates branch expressions against an execution's variables.

    Supports:
    - Variable references: ``amount``, ``client.tier``, ``{{amount}}``
    - Indexing: ``documents[0]``, ``client["tier"]``
    - Comparisons: ``==``, ``!=``, ``<``, ``<=``, ``>``, ``>=``, ``in``, ``not in``, ``is``
    - Boolean combinators: ``and``, ``or``, ``not`` (and ``&&``, ``||``, ``!``)
    - Arithmetic on numbers: ``+``, ``-``, ``*``, ``/``, ``%``
    - Literals: numbers, strings, lists, ``true``/``false``/``null``

    Unknown variables evaluate to None rather than raising.
    """

    @staticmethod
    def parse(expression: str) -> ast.Expression:
        """Parse and check an expression without evaluating it.

        Raises:
            ExpressionError: on syntax errors or disallowed constructs
        """
        if not isinstance(expression, str) or not expression.strip():
            raise ExpressionError("Expression must be a non-empty string")
        if len(expression) > MAX_EXPRESSION_LENGTH:
            raise ExpressionError(f"Expression longer than {MAX_EXPRESSION_LENGTH} characters")
        source = normalize_expression(expression)
        try:
            tree = ast.parse(source, mode="eval")
        except SyntaxError as e:
            raise ExpressionError(f"Invalid expression {expression!r}: {e.msg}")
        _check_tree(tree.body, 0)
        return tree

    @staticmethod
    def evaluate(expression: str, variables: dict[str, Any]) -> Any:
        """Evaluate an expression and return its value."""
        tree = ExpressionEvaluator.parse(expression)
        return _Interpreter(variables).visit(tree.body)

    @staticmethod
    def evaluate_bool(expression: str, variables: dict[str, Any]) -> bool:
        return bool(ExpressionEvaluator.evaluate(expression, variables))

    @staticmethod
    def _resolve_path(path: str, variables: dict[str, Any]) -> Any:
        """Resolve a dot-notation path like ``client.address.city``.

        Returns the module-level ``_MISSING`` sentinel when any segment is absent.
        """
        current: Any = variables
        for part in path.strip().split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
                current = current[int(part)]
            else:
                return _MISSING
        return current

    @staticmethod
    def substitute(value: str, variables: dict[str, Any]) -> Any:
        """Replace ``{{name}}`` tokens in a string.

        A string that is exactly one token yields the raw value (so lists and
        numbers keep their type). Unresolved tokens are left as literal text.
        """
        whole = TEMPLATE_TOKEN.fullmatch(value.strip())
        if whole:
            resolved = ExpressionEvaluator._resolve_path(whole.group(1), variables)
            return value if resolved is _MISSING else resolved

        def _replace(match: re.Match) -> str:
            resolved = ExpressionEvaluator._resolve_path(match.group(1), variables)
            return match.group(0) if resolved is _MISSING else str(resolved)

        return TEMPLATE_TOKEN.sub(_replace, value)

    @staticmethod
    def resolve_config(config: Any, variables: dict[str, Any]) -> Any:
        """Recursively substitute template tokens in a config payload."""
        if isinstance(config, str):
            return ExpressionEvaluator.substitute(config, variables)
        if isinstance(config, dict):
            return {
                key: ExpressionEvaluator.resolve_config(value, variables)
                for key, value in config.items()
            }
        if isinstance(config, list):
            return [ExpressionEvaluator.resolve_config(item, variables) for item in config]
        return config


# ─── AST checks ───────────────────────────────────────────────

_ALLOWED_NODES = (
    ast.BoolOp, ast.And, ast.Or,
    ast.UnaryOp, ast.Not, ast.USub, ast.UAdd,
    ast.BinOp, *tuple(_ARITHMETIC_OPS),
    ast.Compare, *tuple(_COMPARE_OPS),
    ast.Name, ast.Load, ast.Constant,
    ast.Attribute, ast.Subscript, ast.Slice,
    ast.List, ast.Tuple,
)


def _check_tree(node: ast.AST, depth: int) -> None:
    if depth > MAX_DEPTH:
        raise ExpressionError("Expression is nested too deeply")
    if not isinstance(node, _ALLOWED_NODES):
        raise ExpressionError(f"Unsupported expression element: {type(node).__name__}")
    if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
        raise ExpressionError(f"Access to '{node.attr}' is not allowed")
    if isinstance(node, ast.Name) and node.id.startswith("__"):
        raise ExpressionError(f"Access to '{node.id}' is not allowed")
    for child in ast.iter_child_nodes(node):
        _check_tree(child, depth + 1)


class _Interpreter(ast.NodeVisitor):
    """Walks a checked expression tree. Only data lookups, no object attributes."""

    def __init__(self, variables: dict[str, Any]):
        self.variables = variables or {}

    def generic_visit(self, node: ast.AST) -> Any:
        raise ExpressionError(f"Unsupported expression element: {type(node).__name__}")

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self.variables:
            return self.variables[node.id]
        return _CONSTANT_NAMES.get(node.id)

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        base = self.visit(node.value)
        if isinstance(base, dict):
            return base.get(node.attr)
        if isinstance(base, (list, str)) and node.attr == "length":
            return len(base)
        return None

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        base = self.visit(node.value)
        key = self.visit(node.slice)
        try:
            if isinstance(base, dict):
                return base.get(key)
            if isinstance(base, (list, tuple, str)):
                return base[key]
        except (IndexError, TypeError):
            return None
        return None

    def visit_Slice(self, node: ast.Slice) -> slice:
        return slice(
            self.visit(node.lower) if node.lower else None,
            self.visit(node.upper) if node.upper else None,
            self.visit(node.step) if node.step else None,
        )

    def visit_List(self, node: ast.List) -> list:
        return [self.visit(elt) for elt in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.visit(elt) for elt in node.elts)

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            value: Any = True
            for operand in node.values:
                value = self.visit(operand)
                if not value:
                    return value
            return value
        value = False
        for operand in node.values:
            value = self.visit(operand)
            if value:
                return value
        return value

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if not isinstance(operand, (int, float)):
            raise ExpressionError("Unary sign applied to a non-number")
        return -operand if isinstance(node.op, ast.USub) else +operand

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        both_numbers = isinstance(left, (int, float)) and isinstance(right, (int, float))
        both_strings = isinstance(left, str) and isinstance(right, str)
        if not both_numbers and not (both_strings and isinstance(node.op, ast.Add)):
            raise ExpressionError(
                f"Operator {type(node.op).__name__} not supported for "
                f"{type(left).__name__} and {type(right).__name__}"
            )
        try:
            return _ARITHMETIC_OPS[type(node.op)](left, right)
        except ZeroDivisionError:
            raise ExpressionError("Division by zero")

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            try:
                if not _COMPARE_OPS[type(op)](left, right):
                    return False
            except TypeError as e:
                raise ExpressionError(f"Cannot compare values: {e}")
            left = right
        return True
