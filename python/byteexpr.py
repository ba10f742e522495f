#!/usr/bin/env python3
"""
Name: byteexpr
Description: evaluate the little byte-count expressions accepted for <bytes> options
Author: Niklas Rosenstein
License: mit

An expression is a decimal number with an optional multiplier, optionally
followed by an operator and another expression:

    k = *1000   K = *1024   m = *1000^2   M = *1024^2
    operators: + - * /

There is no operator precedence: everything to the right of an operator is
evaluated first, so "2*3+4" is 14 and "1M+100" is 1048676. Division is
integer division; dividing by zero leaves the left value as it is.
"""

import sys
import re

MULTIPLIERS = {
    'k': 1000,
    'K': 1024,
    'm': 1000 * 1000,
    'M': 1024 * 1024,
}

OPERATORS = '+-*/'

TERM_RE = re.compile(r'(\d+)([kKmM]?)')


class ExpressionError(ValueError):
    """Raised for text that is not a valid byte-count expression."""


def parse_bytes(text: str) -> int:
    """Evaluate `text` and return a non-negative number of bytes."""
    text = text.strip()
    value = _evaluate(text, 0)
    if value < 0:
        raise ExpressionError(f"'{text}' evaluates to a negative byte count")
    return value


def _evaluate(text, pos):
    match = TERM_RE.match(text, pos)
    if not match:
        raise ExpressionError(f"'{text}' is an invalid byte expression")

    number, multiplier = match.groups()
    value = int(number) * MULTIPLIERS.get(multiplier, 1)

    pos = match.end()
    if pos == len(text):
        return value

    op = text[pos]
    if op not in OPERATORS:
        raise ExpressionError(f"'{text}': unexpected '{op}' at position {pos}")
    if pos + 1 == len(text):
        raise ExpressionError(f"'{text}': missing operand after '{op}'")

    right = _evaluate(text, pos + 1)
    if op == '+':
        return value + right
    if op == '-':
        return value - right
    if op == '*':
        return value * right
    if right == 0:
        return value
    return value // right


def main():
    """Print the value of each expression given on the command line."""
    status = 0
    for arg in sys.argv[1:]:
        try:
            print(parse_bytes(arg))
        except ExpressionError as e:
            print(f"byteexpr: {e}", file=sys.stderr)
            status = 1
    sys.exit(status)


if __name__ == "__main__":
    main()
