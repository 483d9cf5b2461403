"""
Condition grammar for alert rules

Conditions are small strings in one of two shapes:

    value <= 0.002                      comparison (OP one of <= >= == != < >)
    0.002 < value AND value <= 0.01     half-open band, lower exclusive

The text is tokenized and parsed into a Comparison or Band. Operators are
matched longest first at every position, so "<=" is never read as "<".
"""
import math
import operator as op
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple, Union

from alerts_core.exceptions import ValidationError

# Longest first
OPERATORS: Tuple[str, ...] = ('<=', '>=', '==', '!=', '<', '>')

COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    '<=': op.le,
    '>=': op.ge,
    '==': op.eq,
    '!=': op.ne,
    '<': op.lt,
    '>': op.gt,
}

VALUE_KEYWORD = 'value'
BAND_SEPARATOR = 'AND'

_NUMBER_RE = re.compile(r'[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?')
_WORD_RE = re.compile(r'[A-Za-z_][A-Za-z0-9_]*')

NUMBER = 'NUMBER'
OPERATOR = 'OP'
VALUE = 'VALUE'
AND = 'AND'


def format_number(number: float) -> str:
    """Shortest text that reads back as exactly this float"""
    if number.is_integer() and abs(number) < 1e16:
        return str(int(number))
    return repr(number)


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int


@dataclass(frozen=True)
class Comparison:
    """value <operator> threshold"""
    operator: str
    threshold: float

    def matches(self, value: float) -> bool:
        return COMPARATORS[self.operator](value, self.threshold)

    def describe(self) -> str:
        return f"{self.operator} {format_number(self.threshold)}"


@dataclass(frozen=True)
class Band:
    """lower < value <= upper"""
    lower: float
    upper: float

    def matches(self, value: float) -> bool:
        return self.lower < value <= self.upper

    def describe(self) -> str:
        return f"{format_number(self.lower)} < value <= {format_number(self.upper)}"


Condition = Union[Comparison, Band]


def _to_number(text: str, condition: str) -> float:
    try:
        number = float(text)
    except ValueError:
        raise ValidationError(f"Invalid threshold value '{text}' in condition: {condition}")
    if not math.isfinite(number):
        raise ValidationError(f"Threshold must be finite in condition: {condition}")
    return number


def tokenize(condition: str) -> List[Token]:
    """Split a condition string into tokens, rejecting anything outside the grammar"""
    tokens: List[Token] = []
    pos = 0
    length = len(condition)

    while pos < length:
        char = condition[pos]
        if char.isspace():
            pos += 1
            continue

        matched_op = next((o for o in OPERATORS if condition.startswith(o, pos)), None)
        if matched_op:
            tokens.append(Token(OPERATOR, matched_op, pos))
            pos += len(matched_op)
            continue

        number = _NUMBER_RE.match(condition, pos)
        if number:
            end = number.end()
            # "0.5abc" or "1.2.3" is a malformed literal, not a number followed by junk
            if end < length and (condition[end].isalnum() or condition[end] in '._'):
                raise ValidationError(
                    f"Malformed number at position {pos} in condition: {condition}"
                )
            tokens.append(Token(NUMBER, number.group(), pos))
            pos = end
            continue

        word = _WORD_RE.match(condition, pos)
        if word:
            text = word.group()
            if text == VALUE_KEYWORD:
                tokens.append(Token(VALUE, text, pos))
            elif text == BAND_SEPARATOR:
                tokens.append(Token(AND, text, pos))
            else:
                raise ValidationError(f"Unexpected word '{text}' in condition: {condition}")
            pos = word.end()
            continue

        raise ValidationError(f"Unexpected character '{char}' at position {pos} in condition: {condition}")

    return tokens


def _kinds(tokens: List[Token]) -> Tuple[str, ...]:
    return tuple(token.kind for token in tokens)


def _parse_comparison(tokens: List[Token], condition: str) -> Comparison:
    if tokens and tokens[0].kind == VALUE:
        tokens = tokens[1:]

    if _kinds(tokens) != (OPERATOR, NUMBER):
        raise ValidationError(f"Invalid condition format: {condition}")

    return Comparison(operator=tokens[0].text, threshold=_to_number(tokens[1].text, condition))


def _parse_band(tokens: List[Token], condition: str) -> Band:
    separators = [i for i, token in enumerate(tokens) if token.kind == AND]
    if len(separators) != 1:
        raise ValidationError(f"Band condition needs exactly one '{BAND_SEPARATOR}': {condition}")

    left = tokens[:separators[0]]
    right = tokens[separators[0] + 1:]

    # <number> < value
    if _kinds(left) != (NUMBER, OPERATOR, VALUE) or left[1].text != '<':
        raise ValidationError(f"Band lower bound must look like '<number> < value': {condition}")
    # value <= <number>
    if _kinds(right) != (VALUE, OPERATOR, NUMBER) or right[1].text != '<=':
        raise ValidationError(f"Band upper bound must look like 'value <= <number>': {condition}")

    return Band(
        lower=_to_number(left[0].text, condition),
        upper=_to_number(right[2].text, condition),
    )


def parse_condition(condition: str) -> Condition:
    """
    Parse a condition string into a Comparison or Band

    Raises:
        ValidationError: if the string is not in the grammar
    """
    if not isinstance(condition, str) or not condition.strip():
        raise ValidationError(f"Empty or non-string condition: {condition!r}")

    text = condition.strip()
    tokens = tokenize(text)

    if any(token.kind == AND for token in tokens):
        return _parse_band(tokens, text)
    return _parse_comparison(tokens, text)


def validate_condition(condition: str) -> bool:
    """Check a condition without raising"""
    try:
        parse_condition(condition)
        return True
    except ValidationError:
        return False
