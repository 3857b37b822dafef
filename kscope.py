#!/usr/bin/env python3
import os, sys, io, re
import ctypes
import ctypes.util
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Tuple, Union, Set, Iterable, Iterator, TextIO

from ply.lex import lex
from llvmlite import ir, binding

LOG = logging.getLogger("kscope")

# ============================================================
# Diagnostics
# ============================================================

@dataclass
class Source:
    path: str
    lines: List[str] = field(default_factory=list)

    def line_text(self, line: int) -> str:
        return self.lines[line - 1] if 1 <= line <= len(self.lines) else ""

@dataclass
class Diag:
    kind: str
    msg: str
    src: Source
    line: int
    col: int
    hint: Optional[str] = None

    def format(self, use_color: bool = True) -> str:
        code = self.src.line_text(self.line)

        if use_color:
            RESET, BOLD, RED, BLUE, CYAN = "\033[0m", "\033[1m", "\033[31m", "\033[34m", "\033[36m"
            kind_color = f"{BOLD}{RED}" if self.kind == "error" else f"{BOLD}{BLUE}"
            arrow_color = RED if self.kind == "error" else BLUE
        else:
            RESET = BOLD = RED = BLUE = CYAN = kind_color = arrow_color = ""

        header = f"{kind_color}{self.kind}{RESET}{BOLD}: {self.msg}{RESET}"
        location = f"{BOLD}{BLUE}-->{RESET} {self.src.path}:{self.line}:{self.col}"

        line_num_width = len(str(self.line))
        line_prefix = f"{BOLD}{BLUE}{self.line:>{line_num_width}} |{RESET} "
        empty_prefix = f"{BOLD}{BLUE}{' ' * line_num_width} |{RESET}"

        caret = " " * max(self.col - 1, 0) + f"{BOLD}{arrow_color}^{RESET}"

        result = f"{header}\n{location}\n{empty_prefix}\n{line_prefix}{code}\n{empty_prefix} {caret}"

        if self.hint:
            result += f"\n{empty_prefix}\n{empty_prefix} {BOLD}{CYAN}help:{RESET} {self.hint}"

        return result

class ErrorSink:
    def __init__(self, stream: Optional[TextIO] = None, use_color: Optional[bool] = None) -> None:
        self.errors: List[Diag] = []
        self.stream = stream
        self.use_color = ("NO_COLOR" not in os.environ) if use_color is None else use_color
        self._dumped = 0

    def error(self, msg: str, src: Source, line: int, col: int, hint: Optional[str] = None):
        self.errors.append(Diag("error", msg, src, line, col, hint))

    def ok(self) -> bool:
        return not self.errors

    def messages(self) -> List[str]:
        return [e.msg for e in self.errors]

    def dump(self):
        # Only what has not been printed yet; the REPL dumps after every statement.
        out = self.stream or sys.stderr
        pending = self.errors[self._dumped:]
        self._dumped = len(self.errors)
        for e in pending:
            print(e.format(self.use_color), file=out)
            print(file=out)

class KaleidoscopeError(Exception):
    def __init__(self, msg: str, line: Optional[int] = None, col: Optional[int] = None,
                 hint: Optional[str] = None):
        super().__init__(msg)
        self.msg = msg
        self.line = line
        self.col = col
        self.hint = hint

class ParseError(KaleidoscopeError):
    pass

class CodegenError(KaleidoscopeError):
    pass

class ExecutionError(KaleidoscopeError):
    pass

# ============================================================
# Lexer
# ============================================================

KEYWORDS = {
    "def": "DEF",
    "extern": "EXTERN",
    "if": "IF",
    "then": "THEN",
    "else": "ELSE",
    "for": "FOR",
    "in": "IN",
}

tokens = ("IDENTIFIER", "NUMBER", "CHAR") + tuple(KEYWORDS.values())

t_ignore = " \t\r\f\v"

def t_IDENTIFIER(t):
    r'[A-Za-z][A-Za-z0-9]*'
    t.type = KEYWORDS.get(t.value, "IDENTIFIER")
    return t

def t_NUMBER(t):
    r'[0-9.]+'
    return t

def t_comment(t):
    r'\#[^\n]*'
    pass

def t_newline(t):
    r'\n+'
    t.lexer.lineno += len(t.value)

def t_error(t):
    # Anything else is a single-character token; the parser judges it.
    t.type = "CHAR"
    t.value = t.value[0]
    t.lexer.skip(1)
    return t

_DECIMAL_PREFIX = re.compile(r'[0-9]*(?:\.[0-9]*)?')

def strtod(text: str) -> float:
    """Convert the longest decimal prefix of *text*, like C's strtod.

    ``[0-9.]+`` happily matches "1.2.3"; the trailing ".3" is ignored
    rather than rejected.
    """
    prefix = _DECIMAL_PREFIX.match(text).group()
    if prefix in ("", "."):
        return 0.0
    return float(prefix)

@dataclass(frozen=True)
class Token:
    kind: str
    text: str = ""
    num: float = 0.0
    line: int = 0
    col: int = 0

    @property
    def ident(self) -> Optional[str]:
        return self.text if self.kind == "IDENTIFIER" else None

    @property
    def char(self) -> Optional[str]:
        return self.text if self.kind == "CHAR" else None

    def is_char(self, c: str) -> bool:
        return self.kind == "CHAR" and self.text == c

    def describe(self) -> str:
        if self.kind == "EOF":
            return "end of input"
        if self.kind == "NUMBER":
            return f"number '{self.text}'"
        if self.kind == "IDENTIFIER":
            return f"identifier '{self.text}'"
        if self.kind == "CHAR":
            return f"'{self.text}'"
        if self.kind == "NONE":
            return "nothing"
        return f"keyword '{self.text}'"

class Lexer:
    """Forward-only token cursor over an iterable of lines.

    Lines are pulled lazily, so an interactive stream is only read when the
    parser actually needs the next token. End of input is sticky.
    """

    def __init__(self, stream: Iterable[str], path: str = "<stdin>"):
        self.source = Source(path=path)
        self._lines: Iterator[str] = iter(stream)
        self._plex = lex()
        self._plex.input("")
        self._exhausted = False

    def next_token(self) -> Token:
        while True:
            tok = self._plex.token()
            if tok is not None:
                return self._convert(tok)
            if not self._refill():
                return self._eof()

    def _refill(self) -> bool:
        if self._exhausted:
            return False
        chunk = next(self._lines, None)
        if chunk is None:
            self._exhausted = True
            return False
        self._plex.lineno = len(self.source.lines) + 1
        self.source.lines.extend(chunk.splitlines() or [""])
        self._plex.input(chunk)
        return True

    def _eof(self) -> Token:
        line = max(len(self.source.lines), 1)
        return Token("EOF", line=line, col=len(self.source.line_text(line)) + 1)

    def _convert(self, tok) -> Token:
        col = tok.lexpos - self._plex.lexdata.rfind("\n", 0, tok.lexpos)
        if tok.type == "NUMBER":
            return Token("NUMBER", tok.value, strtod(tok.value), tok.lineno, col)
        return Token(tok.type, tok.value, line=tok.lineno, col=col)

# ============================================================
# AST
# ============================================================

@dataclass(frozen=True)
class NumberExpr:
    value: float

@dataclass(frozen=True)
class VariableExpr:
    name: str

@dataclass(frozen=True)
class BinaryExpr:
    op: str
    lhs: "Expr"
    rhs: "Expr"

@dataclass(frozen=True)
class IfExpr:
    cond: "Expr"
    then: "Expr"
    else_: "Expr"

@dataclass(frozen=True)
class ForExpr:
    var_name: str
    start: "Expr"
    end: "Expr"
    step: Optional["Expr"]
    body: "Expr"

@dataclass(frozen=True)
class CallExpr:
    callee: str
    args: Tuple["Expr", ...] = ()

Expr = Union[NumberExpr, VariableExpr, BinaryExpr, IfExpr, ForExpr, CallExpr]

@dataclass(frozen=True)
class Prototype:
    name: str
    args: Tuple[str, ...] = ()

    @property
    def is_anonymous(self) -> bool:
        return self.name == ""

@dataclass(frozen=True)
class FunctionDef:
    proto: Prototype
    body: Expr

# ============================================================
# Parser (recursive descent + precedence climbing)
# ============================================================

# Higher binds tighter. Anything missing is not a binary operator.
BINOP_PRECEDENCE: Dict[str, int] = {
    "<": 10,
    "+": 20,
    "-": 20,
    "*": 40,
}

class Parser:
    def __init__(self, lexer: Lexer):
        self.lexer = lexer
        self.cur = Token("NONE")

    def next_token(self) -> Token:
        self.cur = self.lexer.next_token()
        return self.cur

    def _error(self, msg: str, hint: Optional[str] = None) -> ParseError:
        if hint is None:
            hint = f"found {self.cur.describe()}"
        return ParseError(msg, self.cur.line, self.cur.col, hint)

    # numberexpr ::= number
    def parse_number_expr(self) -> Expr:
        result = NumberExpr(self.cur.num)
        self.next_token()
        return result

    # parenexpr ::= '(' expression ')'
    def parse_paren_expr(self) -> Expr:
        self.next_token()  # eat (
        expr = self.parse_expression()
        if not self.cur.is_char(")"):
            raise self._error("expected ')'")
        self.next_token()
        return expr

    # identifierexpr ::= identifier | identifier '(' expression* ')'
    def parse_identifier_expr(self) -> Expr:
        name = self.cur.ident
        self.next_token()
        if not self.cur.is_char("("):
            return VariableExpr(name)

        self.next_token()  # eat (
        args: List[Expr] = []
        if not self.cur.is_char(")"):
            while True:
                args.append(self.parse_expression())
                if self.cur.is_char(")"):
                    break
                if not self.cur.is_char(","):
                    raise self._error("expected ')' or ',' in argument list")
                self.next_token()
        self.next_token()  # eat )
        return CallExpr(name, tuple(args))

    # ifexpr ::= 'if' expression 'then' expression 'else' expression
    def parse_if_expr(self) -> Expr:
        self.next_token()  # eat if
        cond = self.parse_expression()
        if self.cur.kind != "THEN":
            raise self._error("expected 'then'")
        self.next_token()
        then = self.parse_expression()
        if self.cur.kind != "ELSE":
            raise self._error("expected 'else'")
        self.next_token()
        else_ = self.parse_expression()
        return IfExpr(cond, then, else_)

    # forexpr ::= 'for' identifier '=' expr ',' expr (',' expr)? 'in' expression
    def parse_for_expr(self) -> Expr:
        self.next_token()  # eat for
        if self.cur.kind != "IDENTIFIER":
            raise self._error("expected identifier after for")
        var_name = self.cur.ident
        self.next_token()

        if not self.cur.is_char("="):
            raise self._error("expected '=' after for")
        self.next_token()
        start = self.parse_expression()

        if not self.cur.is_char(","):
            raise self._error("expected ',' after for start value")
        self.next_token()
        end = self.parse_expression()

        step = None
        if self.cur.is_char(","):
            self.next_token()
            step = self.parse_expression()

        if self.cur.kind != "IN":
            raise self._error("expected 'in' after for")
        self.next_token()
        body = self.parse_expression()
        return ForExpr(var_name, start, end, step, body)

    def parse_primary(self) -> Expr:
        kind = self.cur.kind
        if kind == "IDENTIFIER":
            return self.parse_identifier_expr()
        if kind == "NUMBER":
            return self.parse_number_expr()
        if kind == "IF":
            return self.parse_if_expr()
        if kind == "FOR":
            return self.parse_for_expr()
        if self.cur.is_char("("):
            return self.parse_paren_expr()
        raise self._error("unknown token when expecting an expression")

    def tok_precedence(self) -> int:
        # char is None for anything but a CHAR token
        return BINOP_PRECEDENCE.get(self.cur.char, -1)

    # expression ::= primary binoprhs
    def parse_expression(self) -> Expr:
        lhs = self.parse_primary()
        return self.parse_binop_rhs(0, lhs)

    # binoprhs ::= (binop primary)*
    def parse_binop_rhs(self, expr_prec: int, lhs: Expr) -> Expr:
        while True:
            tok_prec = self.tok_precedence()
            # Not an operator, or one that binds looser than we may consume.
            if tok_prec < expr_prec:
                return lhs

            op = self.cur.char
            self.next_token()
            rhs = self.parse_primary()

            # The next operator binds tighter: it takes rhs as its lhs first.
            if tok_prec < self.tok_precedence():
                rhs = self.parse_binop_rhs(tok_prec + 1, rhs)

            lhs = BinaryExpr(op, lhs, rhs)

    # prototype ::= id '(' id* ')'
    def parse_prototype(self) -> Prototype:
        if self.cur.kind != "IDENTIFIER":
            raise self._error("expected function name in prototype")
        name = self.cur.ident
        self.next_token()

        if not self.cur.is_char("("):
            raise self._error("expected '(' in prototype")

        args: List[str] = []
        while self.next_token().kind == "IDENTIFIER":
            args.append(self.cur.ident)
        if not self.cur.is_char(")"):
            raise self._error("expected ')' in prototype",
                              hint="parameters are plain names separated by spaces, e.g. def f(a b)")
        self.next_token()  # eat )
        return Prototype(name, tuple(args))

    # definition ::= 'def' prototype expression
    def parse_definition(self) -> FunctionDef:
        self.next_token()  # eat def
        proto = self.parse_prototype()
        body = self.parse_expression()
        return FunctionDef(proto, body)

    # external ::= 'extern' prototype
    def parse_extern(self) -> Prototype:
        self.next_token()  # eat extern
        return self.parse_prototype()

    # toplevelexpr ::= expression
    def parse_toplevel_expr(self) -> FunctionDef:
        body = self.parse_expression()
        return FunctionDef(Prototype(""), body)

# ============================================================
# Codegen (SSA, no allocas)
# ============================================================

DOUBLE = ir.DoubleType()
ANON_EXPR_NAME = "__anon_expr"

class CodeGen:
    def __init__(self, module_name: str = "kscope"):
        self.module_name = module_name
        self.module = ir.Module(name=module_name)
        self.builder: Optional[ir.IRBuilder] = None
        # per function: name -> SSA value
        self.named_values: Dict[str, ir.Value] = {}
        # per session: name -> last seen signature
        self.function_protos: Dict[str, Prototype] = {}
        # per session: functions whose body was emitted into some module
        self.defined: Set[str] = set()
        self._anon_count = 0

    def new_module(self) -> ir.Module:
        self.module = ir.Module(name=self.module_name)
        self.builder = None
        return self.module

    # ----- function resolution
    def get_function(self, name: str) -> Optional[ir.Function]:
        fn = self.module.globals.get(name)
        if isinstance(fn, ir.Function):
            return fn
        proto = self.function_protos.get(name)
        if proto is not None:
            return self.emit_prototype(proto)
        return None

    def emit_prototype(self, proto: Prototype, llvm_name: Optional[str] = None) -> ir.Function:
        fnty = ir.FunctionType(DOUBLE, [DOUBLE] * len(proto.args))
        fn = ir.Function(self.module, fnty, name=llvm_name or proto.name)
        for arg, arg_name in zip(fn.args, proto.args):
            arg.name = arg_name
        return fn

    def emit_extern(self, proto: Prototype) -> ir.Function:
        known = self.module.globals.get(proto.name)
        if known is None and proto.name in self.defined:
            known = self.function_protos.get(proto.name)
        if known is not None and len(known.args) != len(proto.args):
            raise CodegenError("redeclaration of function with different # args",
                               hint=f"'{proto.name}' already takes {len(known.args)} argument(s)")
        fn = self.module.globals.get(proto.name)
        if fn is None:
            fn = self.emit_prototype(proto)
        self.function_protos[proto.name] = proto
        return fn

    def _erase_function(self, fn: ir.Function):
        # llvmlite has no eraseFromParent; drop the global and free its name.
        # Module.scope._useset is private (checked against llvmlite 0.50).
        del self.module.globals[fn.name]
        self.module.scope._useset.discard(fn.name)

    def _next_anon_name(self) -> str:
        n = self._anon_count
        self._anon_count += 1
        return ANON_EXPR_NAME if n == 0 else f"{ANON_EXPR_NAME}.{n}"

    # ----- functions
    def emit_function(self, fn_def: FunctionDef) -> ir.Function:
        proto = fn_def.proto
        if proto.is_anonymous:
            fn = self.emit_prototype(proto, self._next_anon_name())
            return self._emit_body(fn, proto, fn_def.body)

        # Both checks run before anything is declared or cached.
        if proto.name in self.defined:
            raise CodegenError("function cannot be redefined",
                               hint=f"'{proto.name}' already has a body")
        previous = self.function_protos.get(proto.name)
        if previous is not None and len(previous.args) != len(proto.args):
            raise CodegenError("redefinition of function with different # args",
                               hint=f"'{proto.name}' was declared with {len(previous.args)} argument(s)")

        # Cache first so the body can call itself.
        self.function_protos[proto.name] = proto
        declared_here = proto.name not in self.module.globals
        try:
            fn = self.get_function(proto.name)
            if not fn.is_declaration:
                raise CodegenError("function cannot be redefined",
                                   hint=f"'{proto.name}' already has a body")
            fn = self._emit_body(fn, proto, fn_def.body)
        except CodegenError:
            if previous is None:
                del self.function_protos[proto.name]
            else:
                self.function_protos[proto.name] = previous
            stray = self.module.globals.get(proto.name)
            if declared_here and stray is not None:
                self._erase_function(stray)
            raise
        self.defined.add(proto.name)
        return fn

    def _emit_body(self, fn: ir.Function, proto: Prototype, body: Expr) -> ir.Function:
        entry = fn.append_basic_block("entry")
        self.builder = ir.IRBuilder(entry)

        # Only the parameters are visible; a repeated name keeps the last one.
        self.named_values = {}
        for arg, arg_name in zip(fn.args, proto.args):
            self.named_values[arg_name] = arg

        try:
            retval = self.emit_expr(body)
        except CodegenError:
            self._erase_function(fn)
            raise
        self.builder.ret(retval)
        return fn

    # ----- expressions
    def emit_expr(self, expr: Expr) -> ir.Value:
        if isinstance(expr, NumberExpr):
            return ir.Constant(DOUBLE, expr.value)
        if isinstance(expr, VariableExpr):
            value = self.named_values.get(expr.name)
            if value is None:
                raise CodegenError("unknown variable name", hint=f"'{expr.name}' is not bound here")
            return value
        if isinstance(expr, BinaryExpr):
            return self._emit_binary(expr)
        if isinstance(expr, CallExpr):
            return self._emit_call(expr)
        if isinstance(expr, IfExpr):
            return self._emit_if(expr)
        if isinstance(expr, ForExpr):
            return self._emit_for(expr)
        raise TypeError(f"not an expression node: {type(expr).__name__}")

    def _emit_binary(self, expr: BinaryExpr) -> ir.Value:
        lhs = self.emit_expr(expr.lhs)
        rhs = self.emit_expr(expr.rhs)
        b = self.builder
        if expr.op == "+":
            return b.fadd(lhs, rhs, "addtmp")
        if expr.op == "-":
            return b.fsub(lhs, rhs, "subtmp")
        if expr.op == "*":
            return b.fmul(lhs, rhs, "multmp")
        if expr.op == "<":
            cmp = b.fcmp_unordered("<", lhs, rhs, "cmptmp")
            # i1 -> 0.0 / 1.0
            return b.uitofp(cmp, DOUBLE, "booltmp")
        raise CodegenError("invalid binary operator", hint=f"'{expr.op}' is not one of + - * <")

    def _emit_call(self, expr: CallExpr) -> ir.Value:
        callee = self.get_function(expr.callee)
        if callee is None:
            raise CodegenError("unknown function referenced", hint=f"no 'def' or 'extern' for '{expr.callee}'")
        if len(callee.args) != len(expr.args):
            raise CodegenError("incorrect # arguments passed",
                               hint=f"'{expr.callee}' takes {len(callee.args)}, got {len(expr.args)}")
        args = [self.emit_expr(a) for a in expr.args]
        return self.builder.call(callee, args, "calltmp")

    def _emit_if(self, expr: IfExpr) -> ir.Value:
        b = self.builder
        cond = self.emit_expr(expr.cond)
        cond = b.fcmp_ordered("!=", cond, ir.Constant(DOUBLE, 0.0), "ifcond")

        fn = b.block.function
        then_bb = fn.append_basic_block("then")
        else_bb = fn.append_basic_block("else")
        merge_bb = fn.append_basic_block("ifcont")
        b.cbranch(cond, then_bb, else_bb)

        b.position_at_end(then_bb)
        then_v = self.emit_expr(expr.then)
        b.branch(merge_bb)
        # Nested control flow may have moved us; the phi wants the real predecessor.
        then_bb = b.block

        b.position_at_end(else_bb)
        else_v = self.emit_expr(expr.else_)
        b.branch(merge_bb)
        else_bb = b.block

        b.position_at_end(merge_bb)
        phi = b.phi(DOUBLE, "iftmp")
        phi.add_incoming(then_v, then_bb)
        phi.add_incoming(else_v, else_bb)
        return phi

    def _emit_for(self, expr: ForExpr) -> ir.Value:
        b = self.builder
        start = self.emit_expr(expr.start)

        fn = b.block.function
        preheader_bb = b.block
        loop_bb = fn.append_basic_block("loop")
        b.branch(loop_bb)
        b.position_at_end(loop_bb)

        variable = b.phi(DOUBLE, expr.var_name)
        variable.add_incoming(start, preheader_bb)

        shadowed = self.named_values.get(expr.var_name)
        self.named_values[expr.var_name] = variable
        try:
            # Body value is discarded.
            self.emit_expr(expr.body)

            if expr.step is None:
                step = ir.Constant(DOUBLE, 1.0)
            else:
                step = self.emit_expr(expr.step)
            next_var = b.fadd(variable, step, "nextvar")

            end = self.emit_expr(expr.end)
            end = b.fcmp_ordered("!=", end, ir.Constant(DOUBLE, 0.0), "loopcond")

            loop_end_bb = b.block
            after_bb = fn.append_basic_block("afterloop")
            b.cbranch(end, loop_bb, after_bb)
            b.position_at_end(after_bb)

            variable.add_incoming(next_var, loop_end_bb)
        finally:
            if shadowed is None:
                self.named_values.pop(expr.var_name, None)
            else:
                self.named_values[expr.var_name] = shadowed

        return ir.Constant(DOUBLE, 0.0)

# ============================================================
# JIT + runtime library
# ============================================================

_RUNTIME_FN = ctypes.CFUNCTYPE(ctypes.c_double, ctypes.c_double)

def _putchard(x: float) -> float:
    sys.stdout.write(chr(int(x)))
    sys.stdout.flush()
    return 0.0

def _printd(x: float) -> float:
    print("%f" % x)
    return 0.0

# Module-level so ctypes keeps the thunks alive for the process lifetime.
RUNTIME: Dict[str, "ctypes._CFuncPtr"] = {
    "putchard": _RUNTIME_FN(_putchard),
    "printd": _RUNTIME_FN(_printd),
}

_runtime_installed = False

def install_runtime():
    global _runtime_installed
    if _runtime_installed:
        return
    for name, cfunc in RUNTIME.items():
        binding.add_symbol(name, ctypes.cast(cfunc, ctypes.c_void_p).value)
    libm = ctypes.util.find_library("m")
    if libm:
        try:
            binding.load_library_permanently(libm)
        except RuntimeError as e:
            LOG.debug("libm not loaded: %s", e)
    _runtime_installed = True

class JIT:
    def __init__(self):
        binding.initialize_native_target()
        binding.initialize_native_asmprinter()
        install_runtime()
        target = binding.Target.from_default_triple()
        self.target_machine = target.create_target_machine()
        self.engine = binding.create_mcjit_compiler(binding.parse_assembly(""), self.target_machine)
        # owned by the engine
        self._modules: List[binding.ModuleRef] = []
        # verified, but waiting for a definition of something they declare
        self._pending: List[binding.ModuleRef] = []
        # module -> names it calls; a declaration nothing calls needs no symbol
        self._callees: Dict[binding.ModuleRef, Set[str]] = {}
        LOG.debug("Created MCJIT engine (triple=%s)", target.triple)

    def add_module(self, module: ir.Module) -> binding.ModuleRef:
        # Make the textual IR self-describing
        module.triple = self.target_machine.triple
        module.data_layout = str(self.target_machine.target_data)
        handle = binding.parse_assembly(str(module))
        try:
            handle.verify()
        except RuntimeError as e:
            raise ExecutionError(f"module verification failed: {e}")
        self._callees[handle] = {ins.callee.name
                                 for fn in module.functions
                                 for block in fn.blocks
                                 for ins in block.instructions
                                 if isinstance(ins, ir.CallInstr)}
        self._pending.append(handle)
        self._admit()
        return handle

    def remove_module(self, handle: binding.ModuleRef):
        del self._callees[handle]
        if handle in self._pending:
            self._pending.remove(handle)
            LOG.debug("Dropped pending module; pending count=%d", len(self._pending))
            return
        self.engine.remove_module(handle)
        self._modules.remove(handle)
        LOG.debug("Removed module; modules count=%d", len(self._modules))

    @staticmethod
    def _defined_in(handles: Iterable[binding.ModuleRef]) -> Set[str]:
        return {fn.name for handle in handles for fn in handle.functions if not fn.is_declaration}

    def _missing(self, handle: binding.ModuleRef, defined: Set[str]) -> List[str]:
        return sorted(name for name in self._callees[handle]
                      if name not in defined and binding.address_of_symbol(name) is None)

    def _admit(self):
        """Move every pending module that can be fully resolved into the engine.

        MCJIT aborts the process when finalization meets an unresolved
        symbol, so a module is handed over only once everything it calls is
        defined by the engine, by modules admitted with it, or by the process. The rest
        wait until a later module supplies what they call; finalization is
        lazy, so an earlier function may call one that a later statement
        defines.
        """
        ready = list(self._pending)
        while True:
            defined = self._defined_in(self._modules + ready)
            keep = [handle for handle in ready if not self._missing(handle, defined)]
            if len(keep) == len(ready):
                break
            ready = keep
        for handle in ready:
            self._pending.remove(handle)
            self.engine.add_module(handle)
            self._modules.append(handle)
        LOG.debug("Admitted %d module(s); modules count=%d, pending count=%d",
                  len(ready), len(self._modules), len(self._pending))

    def unresolved(self, handle: binding.ModuleRef) -> List[str]:
        """External names that keep *handle* out of the engine.

        A name defined by another pending module is followed into that
        module, so the result names what is actually missing.
        """
        if handle not in self._pending:
            return []
        defined = self._defined_in(self._modules)
        owners = {fn.name: owner for owner in self._pending
                  for fn in owner.functions if not fn.is_declaration}
        missing: Set[str] = set()
        seen: List[binding.ModuleRef] = []
        todo = [handle]
        while todo:
            current = todo.pop()
            if current in seen:
                continue
            seen.append(current)
            for name in self._missing(current, defined):
                if name in owners:
                    todo.append(owners[name])
                else:
                    missing.add(name)
        return sorted(missing)

    def run(self, handle: binding.ModuleRef, name: str) -> float:
        missing = self.unresolved(handle)
        if missing:
            raise ExecutionError(f"unresolved external function '{missing[0]}'",
                                 hint="declare it with 'extern' only if it is defined by a 'def' or the runtime")
        self.engine.finalize_object()
        addr = self.engine.get_function_address(name)
        if not addr:
            raise ExecutionError(f"symbol '{name}' not found")
        LOG.debug("Running %s at 0x%x", name, addr)
        cfunc = ctypes.CFUNCTYPE(ctypes.c_double)(addr)
        return cfunc()

# ============================================================
# Driver: one statement at a time
# ============================================================

class Session:
    def __init__(self, es: Optional[ErrorSink] = None, jit: Optional[JIT] = None,
                 dump_ir: bool = False, out: Optional[TextIO] = None):
        self.es = es or ErrorSink()
        self.codegen = CodeGen()
        self.jit = jit or JIT()
        self.dump_ir = dump_ir
        self.out = out
        self.parser: Optional[Parser] = None
        self.last_value: Optional[float] = None

    def run(self, stream: Iterable[str], path: str = "<stdin>", interactive: bool = False) -> Optional[float]:
        """Read-dispatch loop; returns the value of the last evaluated expression."""
        self.parser = Parser(Lexer(stream, path))
        self.last_value = None
        if interactive:
            self._prompt()
        self.parser.next_token()
        while True:
            tok = self.parser.cur
            if tok.kind == "EOF":
                return self.last_value
            if tok.is_char(";"):
                # ignore top-level semicolons
                self.parser.next_token()
                continue
            if tok.kind == "DEF":
                self.handle_definition()
            elif tok.kind == "EXTERN":
                self.handle_extern()
            else:
                self.handle_toplevel_expression()
            if interactive:
                self._prompt()

    def evaluate(self, text: str) -> Optional[float]:
        return self.run(io.StringIO(text), path="<string>")

    def handle_definition(self):
        start = self.parser.cur
        try:
            fn_def = self.parser.parse_definition()
            fn = self.codegen.emit_function(fn_def)
            self._dump("Read function definition:", fn)
            self._hand_off()
        except KaleidoscopeError as e:
            self._recover(e, start)

    def handle_extern(self):
        start = self.parser.cur
        try:
            proto = self.parser.parse_extern()
            fn = self.codegen.emit_extern(proto)
            self._dump("Read extern:", fn)
        except KaleidoscopeError as e:
            self._recover(e, start)

    def handle_toplevel_expression(self):
        start = self.parser.cur
        try:
            fn_def = self.parser.parse_toplevel_expr()
            fn = self.codegen.emit_function(fn_def)
            self._dump("Read top-level expression:", fn)
            handle = self._hand_off()
            try:
                value = self.jit.run(handle, fn.name)
            finally:
                self.jit.remove_module(handle)
        except KaleidoscopeError as e:
            self._recover(e, start)
            return
        self.last_value = value
        print(f"Evaluated to {value:f}", file=self.out or sys.stdout)

    def _hand_off(self) -> binding.ModuleRef:
        try:
            return self.jit.add_module(self.codegen.module)
        finally:
            # bodies cannot be appended to a module the JIT owns
            self.codegen.new_module()

    def _recover(self, e: KaleidoscopeError, start: Token):
        line = e.line if e.line is not None else start.line
        col = e.col if e.col is not None else start.col
        self.es.error(e.msg, self.parser.lexer.source, line, col, e.hint)
        self.es.dump()
        if isinstance(e, ParseError):
            # skip token for error recovery
            self.parser.next_token()

    def _dump(self, title: str, fn: ir.Function):
        if self.dump_ir:
            print(title, file=sys.stderr)
            print(str(fn), file=sys.stderr)

    def _prompt(self):
        print("ready> ", end="", file=sys.stderr, flush=True)

# ============================================================
# CLI
# ============================================================

EXAMPLE = r'''
# --- runtime
extern printd(x);
extern putchard(c);

# -- math
def fib(n)
  if n < 3 then 1 else fib(n-1) + fib(n-2);

def sum(n)
  if n < 1 then 0 else n + sum(n-1);

# a loop is void-valued; it prints as a side effect
def stars(n)
  for i = 0, i < n in putchard(42);

fib(10);
sum(100);
stars(5) + putchard(10);
for i = 1, i < 4 in printd(i);
'''

USAGE = """usage: kscope [FILE ...] [--dump-ir] [--no-color] [-v|--verbose] [--demo]

Without FILE, statements are read from standard input."""

def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv

    dump_ir = False
    use_color: Optional[bool] = None
    verbose = False
    demo = False
    files: List[str] = []
    for arg in argv:
        if arg == "--dump-ir":
            dump_ir = True
        elif arg == "--no-color":
            use_color = False
        elif arg in ("-v", "--verbose"):
            verbose = True
        elif arg == "--demo":
            demo = True
        elif arg in ("-h", "--help"):
            print(USAGE)
            return 0
        elif arg.startswith("-") and arg != "-":
            print(f"error: unknown option {arg}", file=sys.stderr)
            print(USAGE, file=sys.stderr)
            return 2
        else:
            files.append(arg)

    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING,
                        format="%(name)s: %(message)s")

    session = Session(es=ErrorSink(use_color=use_color), dump_ir=dump_ir)

    if demo:
        print("Running the built-in demo ...", file=sys.stderr)
        session.run(io.StringIO(EXAMPLE), path="<demo>")
    elif not files:
        session.run(sys.stdin, path="<stdin>", interactive=sys.stdin.isatty())
    else:
        for path in files:
            if path == "-":
                session.run(sys.stdin, path="<stdin>")
                continue
            try:
                with open(path, "r", encoding="utf-8") as f:
                    session.run(f, path=path)
            except OSError as e:
                print(f"error: cannot read {path}: {e.strerror}", file=sys.stderr)
                return 2

    return 0 if session.es.ok() else 1


if __name__ == "__main__":
    sys.exit(main())
