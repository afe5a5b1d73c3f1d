import math

import pytest

from interpreter import (
    RESOURCE_PLACEHOLDER,
    TYPE_BOOL,
    TYPE_ERROR,
    TYPE_LIST,
    TYPE_NUMBER,
    TYPE_STRING,
    Value,
    copy_value,
    display,
    format_number,
    parse_number,
    to_bool,
    to_list,
    to_number,
    to_text,
)


def num(x):
    return Value(TYPE_NUMBER, float(x))


def text(s):
    return Value(TYPE_STRING, s)


# Number grammar

def test_parse_number_accepts_float_grammar():
    assert parse_number("3") == 3.0
    assert parse_number("-2.5") == -2.5
    assert parse_number("+4") == 4.0
    assert parse_number(".5") == 0.5
    assert parse_number("5.") == 5.0
    assert parse_number("1e3") == 1000.0
    assert parse_number("2.5E-1") == 0.25


def test_parse_number_special_values_any_case():
    assert parse_number("inf") == math.inf
    assert parse_number("-Infinity") == -math.inf
    assert math.isnan(parse_number("NaN"))


def test_parse_number_rejects_non_numbers():
    for token in ("abc", "1.2.3", "+", "", " 1", "1_000", "0x10", "١", "e5"):
        assert parse_number(token) is None, token


def test_format_number_is_shortest_positional():
    assert format_number(7.0) == "7"
    assert format_number(0.5) == "0.5"
    assert format_number(0.1) == "0.1"
    assert format_number(1e-7) == "0.0000001"
    assert format_number(-3.25) == "-3.25"


def test_format_number_special_values():
    assert format_number(math.nan) == "NaN"
    assert format_number(math.inf) == "inf"
    assert format_number(-math.inf) == "-inf"


# Coercions are total

def test_to_text():
    assert to_text(num(7)) == "7"
    assert to_text(text("hi")) == "hi"
    assert to_text(Value(TYPE_BOOL, True)) == "true"
    assert to_text(Value(TYPE_ERROR, "regex")) == "error:regex"


def test_list_text_uses_display_of_elements():
    lst = Value(TYPE_LIST, [text("a"), num(1), Value(TYPE_LIST, [Value(TYPE_BOOL, False)])])
    assert to_text(lst) == "[(a) 1 [false]]"
    assert display(lst) == "[(a) 1 [false]]"


def test_display_wraps_text_in_parentheses():
    assert display(text("x y")) == "(x y)"
    assert display(num(2)) == "2"


def test_unregistered_type_renders_placeholder():
    assert to_text(Value("socket", object())) == RESOURCE_PLACEHOLDER


def test_to_number():
    assert to_number(text("12.5")) == 12.5
    assert to_number(text("abc")) == 0.0
    assert to_number(Value(TYPE_BOOL, True)) == 1.0
    assert to_number(Value(TYPE_LIST, [num(1), num(2)])) == 2.0
    assert to_number(Value(TYPE_ERROR, "5")) == 5.0
    assert to_number(Value("socket", None)) == 1.0


def test_to_bool():
    assert to_bool(num(0)) is False
    assert to_bool(num(-1)) is True
    assert to_bool(text("")) is False
    assert to_bool(text("false")) is True
    assert to_bool(Value(TYPE_LIST, [])) is False
    assert to_bool(Value(TYPE_ERROR, "true")) is True
    assert to_bool(Value(TYPE_ERROR, "regex")) is False
    assert to_bool(Value("socket", None)) is True


def test_to_list():
    assert to_list(text("ab")) == [text("a"), text("b")]
    assert to_list(num(3)) == [num(3)]
    assert to_list(Value("socket", None)) == []


def test_copy_value_is_deep_for_lists():
    inner = Value(TYPE_LIST, [num(1)])
    outer = Value(TYPE_LIST, [inner])
    twin = copy_value(outer)
    twin.value[0].value.append(num(2))
    assert inner.value == [num(1)]


# Every coercion over every kind of value

RESOURCE = Value("socket", object())

COERCION_TABLE = [
    # value, to_text, to_number, to_bool, display of each to_list element
    (num(2.5), "2.5", 2.5, True, ["2.5"]),
    (num(0), "0", 0.0, False, ["0"]),
    (num(math.nan), "NaN", math.nan, True, ["NaN"]),
    (num(-math.inf), "-inf", -math.inf, True, ["-inf"]),
    (text("42"), "42", 42.0, True, ["(4)", "(2)"]),
    (text("hi"), "hi", 0.0, True, ["(h)", "(i)"]),
    (text(""), "", 0.0, False, []),
    (Value(TYPE_BOOL, True), "true", 1.0, True, ["true"]),
    (Value(TYPE_BOOL, False), "false", 0.0, False, ["false"]),
    (Value(TYPE_LIST, [num(1), text("a")]), "[1 (a)]", 2.0, True, ["1", "(a)"]),
    (Value(TYPE_LIST, []), "[]", 0.0, False, []),
    (Value(TYPE_ERROR, "7"), "error:7", 7.0, False, ["error:7"]),
    (Value(TYPE_ERROR, "true"), "error:true", 0.0, True, ["error:true"]),
    (Value(TYPE_ERROR, ""), "error:", 0.0, False, ["error:"]),
    (RESOURCE, RESOURCE_PLACEHOLDER, 1.0, True, []),
]


def same_number(actual, expected):
    if math.isnan(expected):
        return math.isnan(actual)
    return actual == expected


@pytest.mark.parametrize("value, as_text, as_number, as_bool, as_list", COERCION_TABLE)
def test_coercions_are_total(value, as_text, as_number, as_bool, as_list):
    assert to_text(value) == as_text
    assert same_number(to_number(value), as_number)
    assert to_bool(value) is as_bool
    assert [display(item) for item in to_list(value)] == as_list
