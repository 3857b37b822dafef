"""
Parser tests: precedence climbing, control flow forms, prototypes and errors.
"""

from __future__ import annotations

import pytest

from conftest import make_parser
from kscope import (
    BinaryExpr,
    CallExpr,
    ForExpr,
    FunctionDef,
    IfExpr,
    NumberExpr,
    ParseError,
    Prototype,
    VariableExpr,
)

N = NumberExpr
V = VariableExpr


def _expr(text: str):
    return make_parser(text).parse_expression()


def test_multiplication_binds_tighter():
    assert _expr("1+2*3") == BinaryExpr("+", N(1.0), BinaryExpr("*", N(2.0), N(3.0)))


def test_equal_precedence_is_left_associative():
    assert _expr("1-2-3") == BinaryExpr("-", BinaryExpr("-", N(1.0), N(2.0)), N(3.0))
    assert _expr("1-2+3") == BinaryExpr("+", BinaryExpr("-", N(1.0), N(2.0)), N(3.0))


def test_parentheses_group():
    assert _expr("(1+2)*3") == BinaryExpr("*", BinaryExpr("+", N(1.0), N(2.0)), N(3.0))


def test_comparison_binds_loosest():
    assert _expr("a*b+c < d") == BinaryExpr(
        "<", BinaryExpr("+", BinaryExpr("*", V("a"), V("b")), V("c")), V("d")
    )


def test_mixed_chain_nests_higher_precedence():
    # a + b*c*d - e  ->  (a + ((b*c)*d)) - e
    assert _expr("a+b*c*d-e") == BinaryExpr(
        "-",
        BinaryExpr("+", V("a"), BinaryExpr("*", BinaryExpr("*", V("b"), V("c")), V("d"))),
        V("e"),
    )


def test_unknown_operator_ends_expression():
    parser = make_parser("1 = 2")
    assert parser.parse_expression() == N(1.0)
    assert parser.cur.is_char("=")


def test_call_arguments():
    assert _expr("f(1, x, g())") == CallExpr("f", (N(1.0), V("x"), CallExpr("g", ())))


def test_if_expression():
    assert _expr("if x < 1 then 2 else 3") == IfExpr(BinaryExpr("<", V("x"), N(1.0)), N(2.0), N(3.0))


def test_for_without_step():
    node = _expr("for i = 1, i < n in f(i)")
    assert node == ForExpr("i", N(1.0), BinaryExpr("<", V("i"), V("n")), None, CallExpr("f", (V("i"),)))


def test_for_with_step():
    node = _expr("for i = 0, i < 10, 2 in i")
    assert isinstance(node, ForExpr)
    assert node.step == N(2.0)


def test_definition():
    parser = make_parser("def f(a b c) a")
    assert parser.parse_definition() == FunctionDef(Prototype("f", ("a", "b", "c")), V("a"))
    assert parser.cur.kind == "EOF"


def test_prototype_allows_duplicate_names():
    parser = make_parser("extern g(x x)")
    assert parser.parse_extern() == Prototype("g", ("x", "x"))


def test_extern():
    parser = make_parser("extern sin(x);")
    assert parser.parse_extern() == Prototype("sin", ("x",))
    assert parser.cur.is_char(";")


def test_toplevel_is_wrapped_anonymously():
    fn_def = make_parser("1+2").parse_toplevel_expr()
    assert fn_def.proto == Prototype("")
    assert fn_def.proto.is_anonymous
    assert fn_def.body == BinaryExpr("+", N(1.0), N(2.0))


def test_reparsing_is_structurally_identical():
    text = "def f(x y) if x < y then for i = 1, i < y in f(i, x) else x*y+1"
    assert make_parser(text).parse_definition() == make_parser(text).parse_definition()


@pytest.mark.parametrize(
    "text,message",
    [
        ("(1+2", "expected ')'"),
        ("f(1 2)", "expected ')' or ',' in argument list"),
        ("if 1 2", "expected 'then'"),
        ("if 1 then 2 3", "expected 'else'"),
        ("for 1", "expected identifier after for"),
        ("for i 1", "expected '=' after for"),
        ("for i = 1 in 2", "expected ',' after for start value"),
        ("for i = 1, 2 3", "expected 'in' after for"),
        (")", "unknown token when expecting an expression"),
        ("1 + then", "unknown token when expecting an expression"),
    ],
)
def test_expression_errors(text, message):
    with pytest.raises(ParseError) as excinfo:
        make_parser(text).parse_expression()
    assert excinfo.value.msg == message


@pytest.mark.parametrize(
    "text,message",
    [
        ("def 1", "expected function name in prototype"),
        ("def f x", "expected '(' in prototype"),
        ("def f(x, y) x", "expected ')' in prototype"),
    ],
)
def test_prototype_errors(text, message):
    with pytest.raises(ParseError) as excinfo:
        make_parser(text).parse_definition()
    assert excinfo.value.msg == message


def test_error_carries_position():
    with pytest.raises(ParseError) as excinfo:
        make_parser("if x\n  then 1\n  2").parse_expression()
    assert excinfo.value.msg == "expected 'else'"
    assert (excinfo.value.line, excinfo.value.col) == (3, 3)
    assert excinfo.value.hint == "found number '2'"


@pytest.mark.parametrize("text", ["1 then", "1 x", "1 2"])
def test_only_operator_chars_have_precedence(text):
    parser = make_parser(text)
    assert parser.parse_expression() == N(1.0)
    assert parser.tok_precedence() == -1
    assert parser.cur.char is None
