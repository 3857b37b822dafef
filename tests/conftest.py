from __future__ import annotations

import io

import pytest

from kscope import CodeGen, ErrorSink, Lexer, Parser, Session


def make_parser(text: str) -> Parser:
    """Parser over *text* with the first token already read."""
    parser = Parser(Lexer(io.StringIO(text), path="<test>"))
    parser.next_token()
    return parser


def emit_all(cg: CodeGen, text: str) -> list:
    """Run every statement of *text* through codegen only (no JIT)."""
    parser = make_parser(text)
    out = []
    while parser.cur.kind != "EOF":
        if parser.cur.is_char(";"):
            parser.next_token()
        elif parser.cur.kind == "DEF":
            out.append(cg.emit_function(parser.parse_definition()))
        elif parser.cur.kind == "EXTERN":
            out.append(cg.emit_extern(parser.parse_extern()))
        else:
            out.append(cg.emit_function(parser.parse_toplevel_expr()))
    return out


@pytest.fixture
def session() -> Session:
    return Session(es=ErrorSink(stream=io.StringIO(), use_color=False), out=io.StringIO())
