"""
Selection Cut Strings
=====================

Converts detector-style cut strings, as written for dataframe filters in the
analysis macros, into polars expressions:

    "xB >= 0.1 && xB < 0.2 && abs(t) < 1"
    "!(Mx2_ep > 1.5) || 0.8 > Emiss"

Supported: comparisons (chained comparisons expand to a conjunction),
``&&``/``and``/``&``, ``||``/``or``/``|``, ``!``/``not``/``~``, unary minus,
arithmetic, numeric literals, ``pi`` and the functions in ``MATH_FUNCTIONS``.
``@name`` placeholders are substituted from keyword arguments.
"""

import ast
import math
import re
from typing import Any, Dict

import polars as pl

_PLACEHOLDER = re.compile(r'@(\w+)')


class CutExpressionConverter:
    """
    AST-based cut string to polars expression converter.

    The string is normalized to Python syntax, parsed in ``eval`` mode,
    rewritten so that names become ``pl.col`` references and literals become
    ``pl.lit`` values, then compiled and evaluated in a namespace holding only
    ``pl``.
    """

    COMPARISON_OPS = {
        ast.Gt: "gt", ast.Lt: "lt", ast.GtE: "ge", ast.LtE: "le",
        ast.Eq: "eq", ast.NotEq: "ne",
    }

    BOOLEAN_OPS = {ast.And: ast.BitAnd, ast.Or: ast.BitOr}

    MATH_FUNCTIONS = {
        'abs': 'abs', 'fabs': 'abs', 'sqrt': 'sqrt', 'exp': 'exp', 'log': 'log',
        'sin': 'sin', 'cos': 'cos', 'tan': 'tan', 'floor': 'floor', 'ceil': 'ceil',
    }

    HORIZONTAL_FUNCTIONS = {'min': 'min_horizontal', 'max': 'max_horizontal'}

    CONSTANTS = {'pi': math.pi}

    def convert(self, cut: str) -> pl.Expr:
        """
        Convert a cut string to a polars expression.

        Raises:
            ValueError: for empty input, syntax errors or unsupported operations
        """
        if not cut or not cut.strip():
            raise ValueError("Empty cut expression")
        try:
            tree = ast.parse(self._preprocess(cut), mode="eval")
            transformed = _PolarsExpressionTransformer(self).visit(tree)
            ast.fix_missing_locations(transformed)
            code = compile(transformed, "<cut>", "eval")
            result = eval(code, self._namespace())
        except SyntaxError as e:
            raise ValueError(f"Invalid syntax in cut '{cut}': {e.msg}") from e
        except (ValueError, AttributeError, TypeError) as e:
            raise ValueError(f"Failed to convert cut '{cut}': {e}") from e

        if not isinstance(result, pl.Expr):
            raise ValueError(f"Cut '{cut}' did not produce an expression: {type(result).__name__}")
        return result

    @staticmethod
    def _preprocess(cut: str) -> str:
        normalized = cut.strip()
        normalized = re.sub(r'\s*&&\s*', ' and ', normalized)
        normalized = re.sub(r'\s*\|\|\s*', ' or ', normalized)
        normalized = re.sub(r'\s*&\s*', ' and ', normalized)
        normalized = re.sub(r'\s*\|\s*', ' or ', normalized)
        # "!" but not "!="
        normalized = re.sub(r'!(?!=)\s*', ' not ', normalized)
        normalized = re.sub(r'~\s*', ' not ', normalized)
        return normalized.strip()

    @staticmethod
    def _namespace() -> Dict[str, Any]:
        return {"pl": pl, "__builtins__": {}}


class _PolarsExpressionTransformer(ast.NodeTransformer):
    """Rewrites a parsed cut string into polars expression calls."""

    def __init__(self, converter: CutExpressionConverter):
        self.converter = converter
        self._column_cache: Dict[str, ast.AST] = {}

    @staticmethod
    def _pl(attr: str) -> ast.Attribute:
        return ast.Attribute(ast.Name("pl", ast.Load()), attr, ast.Load())

    def _lit(self, value) -> ast.Call:
        return ast.Call(func=self._pl("lit"), args=[ast.Constant(value)], keywords=[])

    def _column(self, name: str) -> ast.AST:
        if name not in self._column_cache:
            self._column_cache[name] = ast.Call(func=self._pl("col"),
                                                args=[ast.Constant(name)], keywords=[])
        return self._column_cache[name]

    # ------------------------------------------------------------------
    # Leaves
    # ------------------------------------------------------------------

    def visit_Name(self, node):
        if node.id in self.converter.CONSTANTS:
            return self._lit(self.converter.CONSTANTS[node.id])
        return self._column(node.id)

    def visit_Constant(self, node):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise ValueError(f"Unsupported literal: {node.value!r}")
        return ast.copy_location(self._lit(node.value), node)

    # ------------------------------------------------------------------
    # Operators
    # ------------------------------------------------------------------

    def visit_Compare(self, node):
        operands = [node.left] + list(node.comparators)
        result = None
        for left, op, right in zip(operands, node.ops, operands[1:]):
            method = self.converter.COMPARISON_OPS.get(type(op))
            if method is None:
                raise ValueError(f"Unsupported comparison operator: {type(op).__name__}")
            comparison = ast.Call(func=ast.Attribute(self.visit(left), method, ast.Load()),
                                  args=[self.visit(right)], keywords=[])
            # chained comparisons are a conjunction
            result = comparison if result is None else ast.BinOp(result, ast.BitAnd(), comparison)
        return result

    def visit_BoolOp(self, node):
        values = [self.visit(v) for v in node.values]
        op_class = self.converter.BOOLEAN_OPS[type(node.op)]
        result = values[0]
        for value in values[1:]:
            result = ast.BinOp(result, op_class(), value)
        return result

    def visit_UnaryOp(self, node):
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return ast.Call(func=ast.Attribute(operand, "not_", ast.Load()), args=[], keywords=[])
        if isinstance(node.op, ast.UAdd):
            return operand
        if isinstance(node.op, ast.USub):
            return ast.BinOp(operand, ast.Mult(), self._lit(-1))
        raise ValueError(f"Unsupported unary operator: {type(node.op).__name__}")

    def visit_BinOp(self, node):
        if not isinstance(node.op, (ast.Add, ast.Sub, ast.Mult, ast.Div, ast.Pow, ast.Mod)):
            raise ValueError(f"Unsupported arithmetic operator: {type(node.op).__name__}")
        return ast.BinOp(self.visit(node.left), node.op, self.visit(node.right))

    def visit_Call(self, node):
        if not isinstance(node.func, ast.Name) or node.keywords:
            raise ValueError("Only plain function calls are supported in cuts")
        name = node.func.id
        args = [self.visit(arg) for arg in node.args]
        if name in self.converter.MATH_FUNCTIONS:
            if len(args) != 1:
                raise ValueError(f"{name}() takes exactly one argument")
            method = self.converter.MATH_FUNCTIONS[name]
            return ast.Call(func=ast.Attribute(args[0], method, ast.Load()), args=[], keywords=[])
        if name in self.converter.HORIZONTAL_FUNCTIONS:
            if len(args) < 2:
                raise ValueError(f"{name}() needs at least two arguments")
            return ast.Call(func=self._pl(self.converter.HORIZONTAL_FUNCTIONS[name]),
                            args=args, keywords=[])
        raise ValueError(f"Unsupported function: {name}")

    def generic_visit(self, node):
        if isinstance(node, ast.Expression):
            return super().generic_visit(node)
        raise ValueError(f"Unsupported syntax: {type(node).__name__}")


def convert_cut_expression(cut: str, **variables) -> pl.Expr:
    """
    Convert a detector-style cut string to a polars expression.

    Example:
        >>> expr = convert_cut_expression("xB >= @lo && xB < @hi", lo=0.1, hi=0.2)
        >>> frame.filter(expr)

    Raises:
        ValueError: for an ``@name`` placeholder without a matching keyword
    """
    def substitute(match):
        name = match.group(1)
        if name not in variables:
            raise ValueError(f"Undefined cut variable '@{name}' in '{cut}'")
        return repr(float(variables[name]))

    return CutExpressionConverter().convert(_PLACEHOLDER.sub(substitute, cut))


__all__ = ['CutExpressionConverter', 'convert_cut_expression']
