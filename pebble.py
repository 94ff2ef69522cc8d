import argparse
import logging
import math
import sys
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path

logger = logging.getLogger("pebble")
logger.addHandler(logging.NullHandler())


class TokenKind(Enum):
    NUMBER = auto()
    IDENTIFIER = auto()
    EQUALS = auto()
    COMMA = auto()
    COLON = auto()
    OPEN_PAREN = auto()
    CLOSE_PAREN = auto()
    SEMICOLON = auto()
    BINARY_OPERATOR = auto()
    OPEN_BRACE = auto()
    CLOSE_BRACE = auto()
    OPEN_BRACKET = auto()
    CLOSE_BRACKET = auto()
    DOT = auto()
    LET = auto()
    CONST = auto()
    FN = auto()
    EOF = auto()


@dataclass(frozen=True)
class Token:
    value: str
    kind: TokenKind

    def __str__(self):
        return f"{self.kind.name} {self.value!r}"


KEYWORDS = {"let": TokenKind.LET, "const": TokenKind.CONST, "fn": TokenKind.FN}

PUNCTUATION = {
    "(": TokenKind.OPEN_PAREN, ")": TokenKind.CLOSE_PAREN,
    "{": TokenKind.OPEN_BRACE, "}": TokenKind.CLOSE_BRACE,
    "[": TokenKind.OPEN_BRACKET, "]": TokenKind.CLOSE_BRACKET,
    "=": TokenKind.EQUALS, ";": TokenKind.SEMICOLON,
    ":": TokenKind.COLON, ",": TokenKind.COMMA, ".": TokenKind.DOT,
}

OPERATORS = "+-*/%"
WHITESPACE = " \t\n\r"


def is_digit(c): return len(c) == 1 and "0" <= c <= "9"
def is_alpha(c): return len(c) == 1 and c.upper() != c.lower()


class Scanner:
    def __init__(self, src):
        self._src = src
        self._pos = 0
        self._tokens = []

    def tokenize(self):
        while True:
            match self._current_char():
                case "$EOF":
                    self._tokens.append(Token("EndOfFile", TokenKind.EOF))
                    break
                case ch if ch in WHITESPACE:
                    self._advance()
                case ch if ch in PUNCTUATION:
                    self._tokens.append(Token(ch, PUNCTUATION[ch]))
                    self._advance()
                case ch if ch in OPERATORS:
                    self._tokens.append(Token(ch, TokenKind.BINARY_OPERATOR))
                    self._advance()
                case ch if is_digit(ch):
                    self._number()
                case ch if is_alpha(ch):
                    self._name()
                case invalid:
                    logger.warning("Skipping unrecognized character %r at offset %d",
                                   invalid, self._pos)
                    self._advance()

        return self._tokens

    def _number(self):
        start = self._pos
        while is_digit(self._current_char()):
            self._advance()
        self._tokens.append(Token(self._src[start:self._pos], TokenKind.NUMBER))

    def _name(self):
        start = self._pos
        while is_alpha(self._current_char()):
            self._advance()
        word = self._src[start:self._pos]
        self._tokens.append(Token(word, KEYWORDS.get(word, TokenKind.IDENTIFIER)))

    def _advance(self):
        self._pos += 1

    def _current_char(self):
        if self._pos < len(self._src):
            return self._src[self._pos]
        else:
            return "$EOF"


def tokenize(source):
    return Scanner(source).tokenize()


# AST

@dataclass(frozen=True)
class Program:
    body: tuple


@dataclass(frozen=True)
class NumericLiteral:
    value: float


@dataclass(frozen=True)
class Identifier:
    symbol: str


@dataclass(frozen=True)
class BinaryExpression:
    left: object
    right: object
    operator: str


@dataclass(frozen=True)
class AssignmentExpression:
    assignee: object
    value: object


@dataclass(frozen=True)
class VariableDeclaration:
    identifier: str
    value: object
    constant: bool


@dataclass(frozen=True)
class FunctionDeclaration:
    name: str
    parameters: tuple
    body: tuple


@dataclass(frozen=True)
class CallExpression:
    callee: object
    args: tuple


@dataclass(frozen=True)
class MemberExpression:
    object: object
    property: object
    computed: bool


@dataclass(frozen=True)
class Property:
    key: str
    value: object = None


@dataclass(frozen=True)
class ObjectLiteral:
    properties: tuple


# Errors

class PebbleError(Exception):
    """Base class for every failure raised while parsing or running a program."""


class ParseError(PebbleError):
    def __init__(self, message, token=None):
        if token is not None:
            message = f"{message} (got {token})"
        super().__init__(message)
        self.token = token


class ResolutionError(PebbleError):
    def __init__(self, message, name):
        super().__init__(message)
        self.name = name


class EvaluationError(PebbleError):
    pass


class Parser:
    def __init__(self, tokens):
        self._tokens = tokens
        self._pos = 0

    def parse(self):
        body = []
        try:
            while self._current_token().kind != TokenKind.EOF:
                body.append(self._statement())
        except RecursionError:
            raise ParseError("Maximum nesting depth exceeded", self._current_token()) from None
        return Program(tuple(body))

    def _statement(self):
        match self._current_token().kind:
            case TokenKind.LET | TokenKind.CONST:
                return self._var_declaration()
            case _:
                expr = self._expression()
                if self._current_token().kind == TokenKind.SEMICOLON:
                    self._advance()
                return expr

    def _var_declaration(self):
        constant = self._advance().kind == TokenKind.CONST
        name = self._consume(TokenKind.IDENTIFIER,
                             "Expected identifier name following let | const keywords").value

        if self._current_token().kind == TokenKind.SEMICOLON:
            if constant:
                raise ParseError(f"Must assign value to constant `{name}`; no value provided",
                                 self._current_token())
            self._advance()
            return VariableDeclaration(name, None, False)

        self._consume(TokenKind.EQUALS, "Expected `=` or `;` following identifier in declaration")
        value = self._expression()
        self._consume(TokenKind.SEMICOLON, "Variable declaration must end with `;`")
        return VariableDeclaration(name, value, constant)

    def _expression(self):
        return self._assignment()

    def _assignment(self):
        left = self._object()
        if self._current_token().kind == TokenKind.EQUALS:
            self._advance()
            return AssignmentExpression(left, self._assignment())
        return left

    def _object(self):
        if self._current_token().kind != TokenKind.OPEN_BRACE:
            return self._additive()

        self._advance()
        properties = []
        while self._current_token().kind not in (TokenKind.EOF, TokenKind.CLOSE_BRACE):
            key = self._consume(TokenKind.IDENTIFIER, "Expected object literal key").value

            match self._current_token().kind:
                case TokenKind.COMMA:
                    self._advance()
                    properties.append(Property(key))
                    continue
                case TokenKind.CLOSE_BRACE:
                    properties.append(Property(key))
                    continue

            self._consume(TokenKind.COLON, "Expected `:` following key in object literal")
            properties.append(Property(key, self._expression()))
            if self._current_token().kind != TokenKind.CLOSE_BRACE:
                self._consume(TokenKind.COMMA, "Expected `,` or `}` following property")

        self._consume(TokenKind.CLOSE_BRACE, "Object literal is missing closing `}`")
        return ObjectLiteral(tuple(properties))

    def _additive(self):
        left = self._multiplicative()
        while (op := self._current_token().value) in ("+", "-"):
            self._advance()
            left = BinaryExpression(left, self._multiplicative(), op)
        return left

    def _multiplicative(self):
        left = self._call_member()
        while (op := self._current_token().value) in ("*", "/", "%"):
            self._advance()
            left = BinaryExpression(left, self._call_member(), op)
        return left

    def _call_member(self):
        expr = self._member()
        while self._current_token().kind == TokenKind.OPEN_PAREN:
            expr = CallExpression(expr, self._args())
        return expr

    def _args(self):
        self._consume(TokenKind.OPEN_PAREN, "Expected `(`")
        args = []
        if self._current_token().kind != TokenKind.CLOSE_PAREN:
            args.append(self._assignment())
            while self._current_token().kind == TokenKind.COMMA:
                self._advance()
                args.append(self._assignment())
        self._consume(TokenKind.CLOSE_PAREN, "Missing closing `)` in argument list")
        return tuple(args)

    def _member(self):
        obj = self._primary()
        while self._current_token().kind in (TokenKind.DOT, TokenKind.OPEN_BRACKET):
            if self._advance().kind == TokenKind.DOT:
                token = self._current_token()
                if token.kind != TokenKind.IDENTIFIER:
                    raise ParseError("Expected identifier on the right of `.`", token)
                obj = MemberExpression(obj, Identifier(self._advance().value), False)
            else:
                prop = self._expression()
                self._consume(TokenKind.CLOSE_BRACKET, "Missing closing `]` in computed member")
                obj = MemberExpression(obj, prop, True)
        return obj

    def _primary(self):
        token = self._current_token()
        match token.kind:
            case TokenKind.IDENTIFIER:
                return Identifier(self._advance().value)
            case TokenKind.NUMBER:
                return NumericLiteral(float(self._advance().value))
            case TokenKind.OPEN_PAREN:
                return self._paren()
            case TokenKind.FN:
                return self._function()
            case _:
                raise ParseError("Unexpected token; expected an expression", token)

    def _paren(self):
        self._advance()
        expr = self._expression()
        self._consume(TokenKind.CLOSE_PAREN, "Expected closing `)` after parenthesized expression")
        return expr

    def _function(self):
        self._advance()
        name = self._consume(TokenKind.IDENTIFIER, "Expected function name following `fn`").value

        self._consume(TokenKind.OPEN_PAREN, f"Expected `(` following `{name}`")
        params = []
        if self._current_token().kind != TokenKind.CLOSE_PAREN:
            params.append(self._parameter(name))
            while self._current_token().kind == TokenKind.COMMA:
                self._advance()
                params.append(self._parameter(name))
        self._consume(TokenKind.CLOSE_PAREN, f"Missing closing `)` in parameters of `{name}`")

        self._consume(TokenKind.OPEN_BRACE, f"Expected body of `{name}` following parameters")
        body = []
        while self._current_token().kind not in (TokenKind.EOF, TokenKind.CLOSE_BRACE):
            body.append(self._statement())
        self._consume(TokenKind.CLOSE_BRACE, f"Expected closing `}}` of `{name}`")
        return FunctionDeclaration(name, tuple(params), tuple(body))

    def _parameter(self, name):
        token = self._current_token()
        arg = self._assignment()
        if not isinstance(arg, Identifier):
            raise ParseError(f"Parameters of `{name}` must be identifiers", token)
        return arg.symbol

    def _consume(self, expected, message):
        token = self._current_token()
        if token.kind != expected:
            raise ParseError(f"{message}; expected {expected.name}", token)
        return self._advance()

    def _current_token(self):
        return self._tokens[self._pos]

    def _advance(self):
        token = self._tokens[self._pos]
        if token.kind != TokenKind.EOF:
            self._pos += 1
        return token


def parse(source):
    return Parser(tokenize(source)).parse()


class Environment:
    def __init__(self, parent=None):
        self._parent = parent
        self._vars = {}
        self._constants = set()

    def __repr__(self):
        content = "__builtins__" if "print" in self._vars and self._parent is None else \
                  ", ".join(self._vars)
        return f"[{content}]" + (f" < {self._parent}" if self._parent else "")

    def __contains__(self, name):
        return name in self._vars or (self._parent is not None and name in self._parent)

    def declare(self, name, val, constant=False):
        if name in self._vars:
            raise ResolutionError(f"Cannot declare `{name}`: already declared in this scope", name)
        self._vars[name] = val
        if constant:
            self._constants.add(name)
        return val

    def assign(self, name, val):
        env = self.resolve(name)
        if name in env._constants:
            raise ResolutionError(f"Cannot assign to `{name}`: declared constant", name)
        env._vars[name] = val
        return val

    def lookup(self, name):
        return self.resolve(name)._vars[name]

    def resolve(self, name):
        if name in self._vars:
            return self
        elif self._parent is not None:
            return self._parent.resolve(name)
        else:
            raise ResolutionError(f"Cannot resolve `{name}`: not declared", name)


# Runtime values are plain Python objects: None, float, bool, dict,
# callables taking (args, env) for natives, and Function for user code.

@dataclass(eq=False)
class Function:
    name: str
    parameters: tuple
    declaration_env: Environment
    body: tuple

    def __repr__(self):
        return f"<fn {self.name}>"


def stringify(val):
    match val:
        case None:
            return "null"
        case bool():
            return "true" if val else "false"
        case float() if val.is_integer():
            return str(int(val))
        case float() if math.isnan(val):
            return "nan"
        case float() if math.isinf(val):
            return "inf" if val > 0 else "-inf"
        case float():
            return repr(val)
        case dict() if not val:
            return "{}"
        case dict():
            return "{ " + ", ".join(f"{k}: {stringify(v)}" for k, v in val.items()) + " }"
        case Function(name=name):
            return f"<fn {name}>"
        case c if callable(c):
            return "<native fn>"
        case unexpected:
            raise EvaluationError(f"Not a runtime value: {unexpected!r}")


def global_environment(out=print):
    env = Environment()
    env.declare("true", True, True)
    env.declare("false", False, True)
    env.declare("null", None, True)

    def _print(args, env):
        out(" ".join(stringify(arg) for arg in args))
        return None

    env.declare("print", _print, True)
    return env


def is_number(val):
    return isinstance(val, float)


def divide(left, right):
    if right == 0:
        if left == 0 or math.isnan(left):
            return math.nan
        return math.copysign(math.inf, left) * math.copysign(1.0, right)
    return left / right


def remainder(left, right):
    try:
        return math.fmod(left, right)
    except ValueError:
        return math.nan


ARITHMETIC = {
    "+": lambda l, r: l + r,
    "-": lambda l, r: l - r,
    "*": lambda l, r: l * r,
    "/": divide,
    "%": remainder,
}


class Evaluator:
    def evaluate(self, node, env):
        match node:
            case Program(body):
                return self._evaluate_body(body, env)
            case NumericLiteral(value):
                return value
            case Identifier(symbol):
                return env.lookup(symbol)
            case ObjectLiteral(properties):
                return self._evaluate_object(properties, env)
            case BinaryExpression(left, right, op):
                return self._evaluate_binary(left, right, op, env)
            case AssignmentExpression(Identifier(symbol), value):
                return env.assign(symbol, self.evaluate(value, env))
            case AssignmentExpression(assignee, _):
                raise EvaluationError(f"Invalid assignment target: {assignee}")
            case CallExpression(callee, args):
                return self._evaluate_call(callee, args, env)
            case MemberExpression(obj, prop, computed):
                return self._evaluate_member(obj, prop, computed, env)
            case VariableDeclaration(name, value, constant):
                val = None if value is None else self.evaluate(value, env)
                return env.declare(name, val, constant)
            case FunctionDeclaration(name, params, body):
                return env.declare(name, Function(name, params, env, body), True)
            case unexpected:
                raise EvaluationError(f"Unexpected node @ evaluate(): {unexpected!r}")

    def _evaluate_body(self, statements, env):
        val = None
        for statement in statements:
            val = self.evaluate(statement, env)
        return val

    def _evaluate_object(self, properties, env):
        obj = {}
        for key, value in ((p.key, p.value) for p in properties):
            obj[key] = env.lookup(key) if value is None else self.evaluate(value, env)
        return obj

    def _evaluate_binary(self, left, right, op, env):
        left_val = self.evaluate(left, env)
        right_val = self.evaluate(right, env)
        if is_number(left_val) and is_number(right_val):
            return ARITHMETIC[op](left_val, right_val)
        return None

    def _evaluate_call(self, callee, args, env):
        func = self.evaluate(callee, env)
        args_val = [self.evaluate(arg, env) for arg in args]

        match func:
            case Function(name, params, declaration_env, body):
                logger.debug("Calling %s with %d argument(s)", name, len(args_val))
                scope = Environment(declaration_env)
                for i, param in enumerate(params):
                    scope.declare(param, args_val[i] if i < len(args_val) else None)
                return self._evaluate_body(body, scope)
            case c if callable(c):
                return c(args_val, env)
            case _:
                raise EvaluationError(f"Cannot call value that is not a function: {stringify(func)}")

    def _evaluate_member(self, obj, prop, computed, env):
        obj_val = self.evaluate(obj, env)
        if not isinstance(obj_val, dict):
            raise EvaluationError(f"Cannot read property of non-object: {stringify(obj_val)}")

        if not computed:
            return obj_val.get(prop.symbol)

        match self.evaluate(prop, env):
            case float() as key:
                return obj_val.get(stringify(key))
            case key:
                raise EvaluationError(f"Invalid computed property key: {stringify(key)}")


class Interpreter:
    def __init__(self, out=print):
        self._env = Environment(global_environment(out))

    def scan(self, src):
        return tokenize(src)

    def parse(self, tokens):
        return Parser(tokens).parse()

    def ast(self, src):
        return self.parse(self.scan(src))

    def evaluate(self, node):
        try:
            return Evaluator().evaluate(node, self._env)
        except RecursionError:
            raise EvaluationError("Maximum call depth exceeded") from None

    def go(self, src):
        program = self.ast(src)
        logger.debug("Running program with %d statement(s)", len(program.body))
        return self.evaluate(program)


def main(argv=None):
    parser = argparse.ArgumentParser(prog="pebble", description="Run a pebble program.")
    parser.add_argument("file", help="source file to run")
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug output")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s:%(name)s:%(message)s")

    try:
        src = Path(args.file).read_text(encoding="utf-8")
    except OSError as e:
        print(f"error: cannot read {args.file}: {e.strerror}", file=sys.stderr)
        return 1

    try:
        Interpreter().go(src)
    except PebbleError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
