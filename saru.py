import argparse
import cmd
import logging
import operator
import sys

from termcolor import colored

logger = logging.getLogger(__name__)

I32_MIN = -2 ** 31
I32_MAX = 2 ** 31 - 1

# each saru call nests about seven Python frames
RECURSION_LIMIT = 20_000

KEYWORDS = {"let", "fn", "if", "else", "return", "true", "false"}

def is_name_first(c): return c.isalpha() or c == "_"
def is_name_rest(c): return c.isalnum() or c == "_"
def is_name(token):
    return isinstance(token, str) and is_name_first(token[0]) and token not in KEYWORDS
def is_integer(val): return isinstance(val, int) and not isinstance(val, bool)


class SaruError(Exception):
    kind = "runtime"

class SaruSyntaxError(SaruError):
    kind = "syntax"

class SaruTypeError(SaruError):
    kind = "type"

class SaruNameError(SaruError):
    kind = "name"

class SaruUndefinedFunctionError(SaruNameError, SaruTypeError):
    kind = "call"

class SaruOverflowError(SaruError):
    kind = "overflow"


class Scanner:
    def __init__(self, src):
        self._src = src
        self._pos = 0
        self._tokens = []

    def tokenize(self):
        while True:
            while self._current_char().isspace():
                self._advance()

            match self._current_char():
                case "$EOF":
                    self._tokens.append("$EOF")
                    break
                case ch if ch.isascii() and ch.isdigit():
                    self._number()
                case c if is_name_first(c):
                    self._name()
                case ch if ch in "=!<":
                    start = self._pos
                    self._advance()
                    if self._current_char() == "=":
                        self._advance()
                    self._tokens.append(self._src[start:self._pos])
                case ch if ch in "+-*(){};,":
                    self._tokens.append(ch)
                    self._advance()
                case illegal:
                    self._tokens.append(("illegal", illegal))
                    self._advance()

        return self._tokens

    def _number(self):
        start = self._pos
        while self._current_char().isascii() and self._current_char().isdigit():
            self._advance()
        value = int(self._src[start:self._pos])
        if value > I32_MAX:
            raise SaruSyntaxError(f"Integer literal out of range @ _number(): {value}")
        self._tokens.append(value)

    def _name(self):
        start = self._pos
        self._advance()
        while is_name_rest(self._current_char()):
            self._advance()
        self._tokens.append(self._src[start:self._pos])

    def _advance(self):
        self._pos += 1

    def _current_char(self):
        if self._pos < len(self._src):
            return self._src[self._pos]
        else:
            return "$EOF"


class Parser:
    def __init__(self, tokens):
        self._tokens = tokens
        self._pos = 0

    def parse(self):
        stmts = []
        while self._current_token() != "$EOF":
            stmts.append(self._statement())
        return stmts

    def _statement(self):
        match self._current_token():
            case "let":
                return self._let()
            case "return":
                return self._return()
            case "{":
                return self._block()
            case "if":
                return self._if()
            case _:
                return self._expression_statement()

    def _let(self):
        self._advance()
        name = self._identifier()
        self._consume("=")
        value = self._expression()
        self._consume(";")
        return ("let", name, value)

    def _return(self):
        self._advance()
        expr = self._expression()
        self._end_statement()
        return ("return", expr)

    def _block(self):
        self._consume("{")
        stmts = []
        while self._current_token() != "}":
            stmts.append(self._statement())
        self._advance()
        return ("block", stmts)

    def _if(self):
        self._advance()
        cond_expr = self._expression()
        then_stmt = self._statement()
        else_stmt = None
        if self._current_token() == "else":
            self._advance()
            else_stmt = self._statement()
        return ("if", cond_expr, then_stmt, else_stmt)

    def _expression_statement(self):
        expr = self._expression()
        self._end_statement()
        return expr

    def _end_statement(self):
        # the last expression or return statement of a block may leave out its semicolon
        if self._current_token() != "}":
            self._consume(";")

    def _expression(self):
        if self._current_token() == "fn":
            return self._function()
        return self._comparison()

    def _comparison(self):
        ops = {"<": "less", "<=": "less_equal"}
        left = self._add_sub()
        while (op := self._current_token()) in ops:
            self._advance()
            right = self._add_sub()
            left = (ops[op], left, right)
        return left

    def _add_sub(self):
        ops = {"+": "add", "-": "sub"}
        left = self._mul()
        while (op := self._current_token()) in ops:
            self._advance()
            right = self._mul()
            left = (ops[op], left, right)
        return left

    def _mul(self):
        left = self._primary()
        while self._current_token() == "*":
            self._advance()
            right = self._primary()
            left = ("mul", left, right)
        return left

    def _primary(self):
        match self._current_token():
            case int():
                return self._advance()
            case "true":
                self._advance()
                return True
            case "false":
                self._advance()
                return False
            case "(":
                return self._paren()
            case str(name) if is_name(name):
                self._advance()
                if self._current_token() == "(":
                    return ("call", name, self._comma_separated_exprs())
                return name
            case ("illegal", ch):
                raise SaruSyntaxError(f"Illegal character @ _primary(): {ch}")
            case unexpected:
                raise SaruSyntaxError(f"Unexpected token @ _primary(): {unexpected}")

    def _paren(self):
        self._advance()
        expr = self._expression()
        self._consume(")")
        return expr

    def _comma_separated_exprs(self):
        self._consume("(")
        cse = []
        if self._current_token() != ")":
            cse.append(self._expression())
            while self._current_token() == ",":
                self._advance()
                cse.append(self._expression())
        self._consume(")")
        return cse

    def _function(self):
        self._advance()
        self._consume("(")
        params = []
        if self._current_token() != ")":
            params.append(self._identifier())
            while self._current_token() == ",":
                self._advance()
                params.append(self._identifier())
        self._consume(")")
        _, body = self._block()
        return ("func", params, body)

    def _identifier(self):
        token = self._current_token()
        if not is_name(token):
            raise SaruSyntaxError(f"Expected identifier @ _identifier(): {token}")
        return self._advance()

    def _consume(self, expected):
        if self._current_token() != expected:
            raise SaruSyntaxError(
                f"Expected `{expected}` @ _consume(): {self._current_token()}")
        return self._advance()

    def _current_token(self):
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        return "$EOF"

    def _advance(self):
        self._pos += 1
        return self._tokens[self._pos - 1]


class Environment:
    def __init__(self, parent=None):
        self._parent = parent
        self._vars = {}

    def __repr__(self):
        content = ", ".join(self._vars)
        return f"[{content}]" + (f" < {self._parent}" if self._parent else "")

    def define(self, name, val):
        self._vars[name] = val
        return val

    def lookup(self, name):
        if name in self._vars:
            return self._vars[name]
        elif self._parent is not None:
            return self._parent.lookup(name)
        else:
            raise SaruNameError(f"Undefined variable @ lookup(): {name}")


BINARY_OPS = {
    "add": operator.add,
    "sub": operator.sub,
    "mul": operator.mul,
    "less": operator.lt,
    "less_equal": operator.le,
}

class Evaluator:
    def evaluate(self, expr, env):
        match expr:
            case bool() | int():
                return expr
            case str(name):
                return env.lookup(name)
            case ("let", str(name), val):
                return env.define(name, self.evaluate(val, env))
            case ("return", val):
                return self.evaluate(val, env)
            case ("block", stmts):
                val = None
                for stmt in stmts:
                    val = self.evaluate(stmt, env)
                return val
            case ("if", cond_expr, then_stmt, else_stmt):
                return self._evaluate_if(cond_expr, then_stmt, else_stmt, env)
            case ("func", params, body):
                return ("closure", params, body, env)
            case ("call", str(name), args_expr):
                return self._evaluate_call(name, args_expr, env)
            case (op, left, right) if op in BINARY_OPS:
                return self._evaluate_binary(op, left, right, env)
            case unexpected:
                raise ValueError(f"Unexpected expression @ evaluate(): {unexpected}")

    def _evaluate_if(self, cond_expr, then_stmt, else_stmt, env):
        # Python truthiness matches: False, 0 and None are the only falsy values
        if self.evaluate(cond_expr, env):
            return self.evaluate(then_stmt, env)
        elif else_stmt is not None:
            return self.evaluate(else_stmt, env)
        return None

    def _evaluate_binary(self, op, left_expr, right_expr, env):
        left = self.evaluate(left_expr, env)
        right = self.evaluate(right_expr, env)
        if not (is_integer(left) and is_integer(right)):
            raise SaruTypeError(
                f"Unsupported operands @ {op}: {show(left)}, {show(right)}")

        val = BINARY_OPS[op](left, right)
        if is_integer(val) and not I32_MIN <= val <= I32_MAX:
            raise SaruOverflowError(f"Integer overflow @ {op}: {left}, {right}")
        return val

    def _evaluate_call(self, name, args_expr, env):
        args_val = []
        for arg in args_expr:
            args_val.append(self.evaluate(arg, env))
        try:
            func = env.lookup(name)
        except SaruNameError:
            raise SaruUndefinedFunctionError(
                f"Undefined function @ _evaluate_call(): {name}") from None

        match func:
            case ("closure", params, body, closure_env):
                if len(params) != len(args_val):
                    logger.warning("%s() takes %d arguments, called with %d",
                                   name, len(params), len(args_val))
                logger.debug("call %s(%s)", name, ", ".join(map(show, args_val)))
                new_env = Environment(closure_env)
                for param, arg in zip(params, args_val):
                    new_env.define(param, arg)
                new_env.define(name, func)
                val = None
                for stmt in body:
                    val = self.evaluate(stmt, new_env)
                return val
            case _:
                raise SaruUndefinedFunctionError(
                    f"Not a function @ _evaluate_call(): {name} = {show(func)}")


def show(val):
    match val:
        case None:
            return "Null"
        case bool():
            return f"Boolean({str(val).lower()})"
        case int():
            return f"Integer({val})"
        case ("closure", params, _, _):
            return f"Function({', '.join(params)})"
        case unexpected:
            return repr(unexpected)


OPERATORS = {"less": "<", "less_equal": "<=", "add": "+", "sub": "-", "mul": "*"}
PRECEDENCE = {"less": 1, "less_equal": 1, "add": 2, "sub": 2, "mul": 3}

def unparse(stmt):
    match stmt:
        case ("let", name, val):
            return f"let {name} = {unparse_expr(val)};"
        case ("return", val):
            return f"return {unparse_expr(val)};"
        case ("block", stmts):
            return "{" + "".join(" " + unparse(s) for s in stmts) + " }"
        case ("if", cond_expr, then_stmt, else_stmt):
            # parenthesized so a call-like consequence cannot merge with the condition
            src = f"if ({unparse_expr(cond_expr)}) {unparse(then_stmt)}"
            if else_stmt is not None:
                src += f" else {unparse(else_stmt)}"
            return src
        case _:
            return f"{unparse_expr(stmt)};"

def unparse_expr(expr, precedence=0):
    match expr:
        case bool():
            return "true" if expr else "false"
        case int() if expr < 0:
            raise ValueError(f"Negative literal has no source form @ unparse_expr(): {expr}")
        case int():
            return str(expr)
        case str(name):
            return name
        case ("call", name, args):
            return f"{name}({', '.join(unparse_expr(arg) for arg in args)})"
        case ("func", params, body):
            src = f"fn({', '.join(params)}) " + unparse(("block", body))
            return f"({src})" if precedence > 0 else src
        case (op, left, right) if op in OPERATORS:
            prec = PRECEDENCE[op]
            src = f"{unparse_expr(left, prec)} {OPERATORS[op]} {unparse_expr(right, prec + 1)}"
            return f"({src})" if prec < precedence else src
        case unexpected:
            raise ValueError(f"Unexpected expression @ unparse_expr(): {unexpected}")

def unparse_program(stmts):
    return " ".join(unparse(stmt) for stmt in stmts)


class Interpreter:
    def __init__(self):
        self._env = Environment()
        if sys.getrecursionlimit() < RECURSION_LIMIT:
            sys.setrecursionlimit(RECURSION_LIMIT)

    def scan(self, src):
        return Scanner(src).tokenize()

    def parse(self, tokens):
        return Parser(tokens).parse()

    def ast(self, src):
        return self.parse(self.scan(src))

    def evaluate(self, expr):
        return Evaluator().evaluate(expr, self._env)

    def run(self, src):
        return [self.evaluate(stmt) for stmt in self.ast(src)]

    def go(self, src):
        vals = self.run(src)
        return vals[-1] if vals else None


class ErrorReporter:
    """Context manager that reports saru errors instead of letting them propagate. In fatal mode the first error
    exits the process with status 1.
    """
    ERROR = "red"

    def __init__(self, fatal=True):
        self.fatal = fatal

    def throw(self, kind, msg):
        print(colored(f"{kind} error: ", ErrorReporter.ERROR, attrs=["bold"]) + msg)
        if self.fatal:
            sys.exit(1)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            return False
        if issubclass(exc_type, SaruError):
            self.throw(exc_val.kind, str(exc_val))
        elif exc_type is RecursionError:
            self.throw("recursion", "maximum recursion depth exceeded")
        elif exc_type is KeyboardInterrupt:
            self.throw("interrupt", "keyboard interrupt")
        else:
            return False
        return True


class Shell(cmd.Cmd):
    """Interactive saru shell. Every top-level statement of a line is evaluated and its value printed."""
    intro = "saru interpreter\nType 'help' for more information, 'exit' to quit."
    prompt = ">> "
    secondary_prompt = ".. "  # used for unclosed braces

    def __init__(self, interpreter, reporter, show_ast=False, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.interpreter = interpreter
        self.reporter = reporter
        self.show_ast = show_ast
        self._tmp_line = ""

    def onecmd(self, line):
        """Only a bare `exit`, `help` or end-of-file outside a continuation is a shell command. Everything else is
        saru source, even when it starts with one of those names.
        """
        if line == "EOF" or (not self._tmp_line and line.strip() in ("exit", "help", "")):
            return super().onecmd(line.strip())
        return self.default(line)

    def default(self, line):
        """Executes a line of saru source."""
        line = self._tmp_line + line
        if line.count("{") > line.count("}"):
            self._tmp_line = line + "\n"
            self.prompt = self.secondary_prompt
            return
        self._tmp_line = ""
        self.prompt = Shell.prompt
        execute(self.interpreter, line, self.reporter, self.show_ast)

    def do_help(self, arg):
        """Prints a short intro."""
        print("saru has integers, booleans, let bindings, if/else and first-class functions.\n\n"
              "Try 'let add = fn(a, b) { a + b; };' followed by 'add(1, 2);'.")

    def emptyline(self):
        """Do not repeat previous command on empty line."""
        return ""

    def do_EOF(self, arg):
        """Exits interpreter."""
        print()
        return self.do_exit(arg)

    def do_exit(self, arg):
        """Exits interpreter."""
        return True


def execute(interpreter, src, reporter, show_ast=False):
    stmts = []
    with reporter:
        stmts = interpreter.ast(src)
    for stmt in stmts:
        if show_ast:
            print(unparse(stmt))
        with reporter:
            print(show(interpreter.evaluate(stmt)))


def main(argv=None):
    parser = argparse.ArgumentParser(prog="saru")
    parser.add_argument("file", help="file to run (if empty, starts the interactive shell)", nargs="?")
    parser.add_argument("--ast", action="store_true", help="print each parsed statement before evaluating it")
    parser.add_argument("-v", "--verbose", action="store_true", help="log evaluator calls")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")

    interpreter = Interpreter()
    if args.file is not None:
        try:
            with open(args.file) as file:
                src = file.read()
        except OSError as e:
            ErrorReporter(fatal=True).throw("file", f"'{args.file}' could not be opened: {e.strerror}")
        execute(interpreter, src, ErrorReporter(fatal=True), args.ast)
    else:
        Shell(interpreter, ErrorReporter(fatal=False), args.ast).cmdloop()


if __name__ == "__main__":
    main()
