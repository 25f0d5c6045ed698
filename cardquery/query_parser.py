"""Scryfall-style query syntax parser.

Compiles a query string into an immutable filter expression tree.
Supports: field comparisons (every attribute of the card schema, plus the
costs shorthand), bare-word fuzzy terms, implicit AND, explicit OR, negation
(-) and parentheses. Precedence: NOT > AND > OR.

Field names and value types are checked against the card schema here, so
a bad query fails before it ever touches the store.
"""

import re
from dataclasses import dataclass
from typing import Union

from cardquery.card_model import (
    COST_TYPES,
    FIELD_SCHEMA,
    MOX_COLOURS,
    FieldType,
    Rarity,
    Temple,
    UnknownAttributeError,
    resolve_field,
)
from cardquery.import_utils import to_number


# Supported syntax for error messages
SUPPORTED_SYNTAX = [
    'name search: "Lightning Bolt" (fuzzy phrase) or bolt (fuzzy word)',
    "name: name:stoat, n=\"Stoat\" (exact)",
    "cost: cost:2, c<=3, cost>1",
    "attack: attack>=2, a:1, power<3",
    "health: health>=4, h:2, toughness<3",
    "tags: tags:airborne, sigil:\"touch of death\", -t:rare",
    "text: text:draw, d:\"when played\"",
    "rarity: rarity:rare, r:c, r!=unique",
    "set: set:imf, s:aug",
    "temple: temple:beast, tp:u, -tp:tech",
    "tribe: tribe:canine, tb:insect",
    "special attack: spatk:mirror, sp:ant",
    "cost components: blood:2, bone>=3, energy<2, mox:green",
    "costs: costs:2b, costs:1o2e, costs:g (b blood, o bone, e energy, r/g/u/y mox gems)",
    "cost type: costtype:blood, ct:bo (b blood, o bone, e energy, m mox)",
    "boolean: implicit AND, OR, - (negation), parentheses",
    'literal names: quote names with a glued hyphen or quotes, e.g. name:"Wolf -Cub"',
]

SYNTAX_SUMMARY = (
    "Fields: name, cost, attack, health, tags, text, rarity, set, temple, tribe, "
    "spatk, blood, bone, energy, mox, costtype, costs. "
    "Operators: : = != < <= > >=. Combine with spaces (AND), OR, - (NOT) and parentheses."
)

# Pseudo-field searched by bare words
FUZZY_FIELD = "name_or_text"

# Keyword expanded into one comparison per cost component
COSTS_KEYWORD = "costs"
COST_FIELDS = frozenset({"blood", "bone", "energy", "mox"})

OPERATORS = (":", "=", "!=", "<", "<=", ">", ">=")
ORDERING_OPERATORS = frozenset({"<", "<=", ">", ">="})


class QueryError(Exception):
    """Error in a query with helpful hints."""

    def __init__(self, message: str, hint: str | None = None):
        super().__init__(message)
        self.message = message
        self.hint = hint or "Check the query syntax"

    def __str__(self) -> str:
        return f"{self.message}. Hint: {self.hint}"


class ParseError(QueryError):
    """A query the user can correct."""

    def __init__(
        self,
        message: str,
        hint: str | None = None,
        supported_syntax: list[str] | None = None,
        position: int | None = None,
    ):
        super().__init__(message, hint)
        self.supported_syntax = supported_syntax or SUPPORTED_SYNTAX
        self.position = position


class EmptyQuery(ParseError):
    """The query string is empty or blank."""


class UnknownField(ParseError):
    """The query names a field the card schema does not have."""

    def __init__(self, field_name: str, position: int | None = None):
        super().__init__(
            f"Unknown field '{field_name}'",
            hint="Known fields: " + ", ".join(sorted(FIELD_SCHEMA)),
            position=position,
        )
        self.field_name = field_name


class TypeMismatch(ParseError):
    """Operator or value does not fit the field's type."""


class QuerySyntaxError(ParseError):
    """Malformed query structure."""


@dataclass(frozen=True)
class Comparison:
    field: str
    operator: str
    value: object


@dataclass(frozen=True)
class FuzzyText:
    field: str
    pattern: str


@dataclass(frozen=True)
class And:
    children: tuple["FilterExpression", ...]


@dataclass(frozen=True)
class Or:
    children: tuple["FilterExpression", ...]


@dataclass(frozen=True)
class Not:
    child: "FilterExpression"


FilterExpression = Union[Comparison, FuzzyText, And, Or, Not]


# Token kinds
LPAREN = "LPAREN"
RPAREN = "RPAREN"
NOT = "NOT"
OR = "OR"
WORD = "WORD"
STRING = "STRING"
TERM = "TERM"
EOF = "EOF"


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int
    operator: str | None = None
    value: str | None = None


_WORD_RE = re.compile(r'[^\s()":=<>!]+')
_OPERATOR_RE = re.compile(r"!=|<=|>=|[:=<>]")
_VALUE_RE = re.compile(r'[^\s()"]+')
_QUOTED_RE = re.compile(r'"([^"]*)"')
_SYMBOL_RE = re.compile(r"[:=<>!]+")
_COSTS_RE = re.compile(r"(?:\d*[boergyu])+")
_COST_PART_RE = re.compile(r"(\d*)([boergyu])")


def _skip_spaces(query: str, pos: int) -> int:
    while pos < len(query) and query[pos].isspace():
        pos += 1
    return pos


def tokenize(query: str) -> list[Token]:
    """Split a query into tokens.

    A word followed by an operator (optionally separated by spaces) becomes a
    single TERM token carrying field, operator and value.

    Punctuation that cannot start anything else is read as a literal word, so
    card names such as "Stoat - Gold", "Gold)" or "Cat < Dog" still match
    their own name: a '-' standing alone, a ')' with no open '(' and operator
    characters that follow no field name. A '-' glued to a word still negates
    it, so a name like "Wolf -Cub" has to be quoted: name:"Wolf -Cub".

    Raises:
        QuerySyntaxError: On quotes that cannot be tokenized
    """
    tokens: list[Token] = []
    pos = 0
    depth = 0

    while pos < len(query):
        ch = query[pos]

        if ch.isspace():
            pos += 1
            continue

        if ch == "(":
            tokens.append(Token(LPAREN, ch, pos))
            depth += 1
            pos += 1
            continue

        if ch == ")":
            if depth:
                tokens.append(Token(RPAREN, ch, pos))
                depth -= 1
            else:
                tokens.append(Token(WORD, ch, pos))
            pos += 1
            continue

        if ch == "-":
            nxt = query[pos + 1] if pos + 1 < len(query) else ""
            if not nxt or nxt.isspace() or nxt == ")":
                tokens.append(Token(WORD, ch, pos))
            else:
                tokens.append(Token(NOT, ch, pos))
            pos += 1
            continue

        if ch == '"':
            match = _QUOTED_RE.match(query, pos)
            if not match:
                raise QuerySyntaxError(
                    f"Unterminated quote at position {pos}",
                    hint='Close the phrase with a second "',
                    position=pos,
                )
            if not match.group(1).strip():
                raise QuerySyntaxError(
                    f"Empty quoted phrase at position {pos}",
                    hint="Put some text between the quotes",
                    position=pos,
                )
            tokens.append(Token(STRING, match.group(1), pos))
            pos = match.end()
            continue

        match = _WORD_RE.match(query, pos)
        if not match:
            symbols = _SYMBOL_RE.match(query, pos)
            tokens.append(Token(WORD, symbols.group(0), pos))
            pos = symbols.end()
            continue

        word = match.group(0)
        operator = _OPERATOR_RE.match(query, _skip_spaces(query, match.end()))
        if operator:
            value, pos = _read_value(query, word, operator, pos)
            tokens.append(Token(TERM, word, match.start(), operator.group(0), value))
            continue

        tokens.append(Token(OR if word.lower() == "or" else WORD, word, pos))
        pos = match.end()

    tokens.append(Token(EOF, "", len(query)))
    return tokens


def _read_value(query: str, field: str, operator: re.Match, start: int) -> tuple[str, int]:
    """Read the value following field+operator; returns (value, end)."""
    pos = _skip_spaces(query, operator.end())
    op = operator.group(0)

    if pos < len(query) and query[pos] == '"':
        quoted = _QUOTED_RE.match(query, pos)
        if not quoted:
            raise QuerySyntaxError(
                f"Unterminated quote at position {pos}",
                hint='Close the value with a second "',
                position=pos,
            )
        if not quoted.group(1).strip():
            raise QuerySyntaxError(
                f"Empty value for '{field}{op}'",
                hint=f'Give a value, e.g. {field}{op}"some text"',
                position=pos,
            )
        return quoted.group(1), quoted.end()

    value = _VALUE_RE.match(query, pos)
    if not value:
        raise QuerySyntaxError(
            f"Missing value after '{field}{op}'",
            hint=f"Give a value, e.g. {field}{op}2",
            position=start,
        )
    return value.group(0), value.end()


def _combine(cls: type, children: list[FilterExpression]) -> FilterExpression:
    """Build And/Or, flattening nested nodes of the same kind."""
    flat: list[FilterExpression] = []
    for child in children:
        if isinstance(child, cls):
            flat.extend(child.children)
        else:
            flat.append(child)
    if len(flat) == 1:
        return flat[0]
    return cls(tuple(flat))


class _TokenStream:
    """Cursor over a token list for one parse."""

    def __init__(self, tokens: list[Token]):
        self.tokens = tokens
        self.index = 0

    def peek(self) -> Token:
        return self.tokens[self.index]

    def next(self) -> Token:
        token = self.tokens[self.index]
        if token.kind != EOF:
            self.index += 1
        return token


class QueryParser:
    """Recursive-descent parser for the query language.

    Stateless between calls, so one instance can serve concurrent callers.
    """

    def __init__(self, schema: dict[str, FieldType] | None = None):
        """Initialize parser.

        Args:
            schema: Attribute schema used to validate fields (defaults to
                the card model's FIELD_SCHEMA)
        """
        self.schema = FIELD_SCHEMA if schema is None else schema

    def parse(self, query: str) -> FilterExpression:
        """Parse a query string into a filter expression tree.

        Raises:
            EmptyQuery: Query is empty or blank
            UnknownField: Query names a field outside the schema
            TypeMismatch: Operator or value does not fit the field's type
            QuerySyntaxError: Query structure is malformed
        """
        if not query or not query.strip():
            raise EmptyQuery(
                "Query is empty",
                hint="Type a card name or a filter such as cost<3",
            )

        # tokenize only emits RPAREN for an open '(', so the top level runs to EOF
        return self._parse_or(_TokenStream(tokenize(query)))

    def _parse_or(self, stream: _TokenStream) -> FilterExpression:
        children = [self._parse_and(stream)]
        while stream.peek().kind == OR:
            stream.next()
            children.append(self._parse_and(stream))
        return _combine(Or, children)

    def _parse_and(self, stream: _TokenStream) -> FilterExpression:
        children = []
        while stream.peek().kind not in (OR, RPAREN, EOF):
            children.append(self._parse_unary(stream))
        if not children:
            raise self._unexpected(stream.peek())
        return _combine(And, children)

    def _parse_unary(self, stream: _TokenStream) -> FilterExpression:
        if stream.peek().kind == NOT:
            stream.next()
            return Not(self._parse_unary(stream))
        return self._parse_primary(stream)

    def _parse_primary(self, stream: _TokenStream) -> FilterExpression:
        token = stream.next()

        if token.kind == LPAREN:
            expr = self._parse_or(stream)
            closing = stream.next()
            if closing.kind != RPAREN:
                raise QuerySyntaxError(
                    f"Unclosed '(' at position {token.position}",
                    hint="Add a matching ')'",
                    position=token.position,
                )
            return expr

        if token.kind == TERM:
            return self._comparison(token)

        if token.kind in (WORD, STRING):
            return FuzzyText(FUZZY_FIELD, token.text)

        raise self._unexpected(token)

    def _unexpected(self, token: Token) -> QuerySyntaxError:
        if token.kind == OR:
            message = f"OR at position {token.position} needs a term on both sides"
        elif token.kind == RPAREN:
            message = f"Unexpected ')' at position {token.position}"
        else:
            message = "Query ended where a term was expected"
        return QuerySyntaxError(
            message,
            hint="Each OR, '-' and '(' must be followed by a term",
            position=token.position,
        )

    def _comparison(self, token: Token) -> FilterExpression:
        if token.text.lower() == COSTS_KEYWORD and self.schema.keys() >= COST_FIELDS:
            return self._costs(token)

        try:
            field = resolve_field(token.text, self.schema)
        except UnknownAttributeError:
            raise UnknownField(token.text, position=token.position) from None

        kind = self.schema[field]
        operator = token.operator
        raw = token.value

        if kind == FieldType.NUMBER:
            try:
                value: object = to_number(raw)
            except ValueError:
                raise TypeMismatch(
                    f"'{field}' is numeric but got '{raw}'",
                    hint=f"Use a number, e.g. {field}{operator}2",
                    position=token.position,
                ) from None
            return Comparison(field, operator, value)

        if operator in ORDERING_OPERATORS:
            raise TypeMismatch(
                f"Operator '{operator}' needs a numeric field, but '{field}' is {kind.value}",
                hint=f"Use '{field}:' or '{field}=' instead",
                position=token.position,
            )

        if kind == FieldType.RARITY:
            try:
                value = Rarity.parse(raw)
            except ValueError:
                raise TypeMismatch(
                    f"'{raw}' is not a rarity",
                    hint="Rarities: " + ", ".join(r.value for r in Rarity),
                    position=token.position,
                ) from None
            return Comparison(field, operator, value)

        if field == "temple":
            try:
                return Comparison(field, operator, Temple.parse(raw).value)
            except ValueError:
                raise TypeMismatch(
                    f"'{raw}' is not a temple",
                    hint="Temples: " + ", ".join(t.value for t in Temple),
                    position=token.position,
                ) from None

        if field == "costtype":
            return self._cost_types(token, operator, raw)

        return Comparison(field, operator, raw)

    def _cost_types(self, token: Token, operator: str, raw: str) -> FilterExpression:
        """costtype:bo means the card costs blood and bones."""
        key = raw.strip().lower()
        if key in COST_TYPES.values():
            names = [key]
        elif key and all(ch in COST_TYPES for ch in key):
            names = list(dict.fromkeys(COST_TYPES[ch] for ch in key))
        else:
            raise TypeMismatch(
                f"'{raw}' is not a cost type",
                hint="Use blood, bone, energy, mox or their letters b, o, e, m (e.g. ct:bo)",
                position=token.position,
            )

        comparisons = [Comparison("costtype", operator, name) for name in names]
        # != on several types: the card lacks at least one of them
        return _combine(Or if operator == "!=" else And, comparisons)

    def _costs(self, token: Token) -> FilterExpression:
        """costs:2b1o means exactly 2 blood and 1 bone; gem letters require a mox colour."""
        raw = token.value.strip().lower()
        if token.operator not in (":", "=") or not _COSTS_RE.fullmatch(raw):
            raise TypeMismatch(
                f"'{token.text}{token.operator}{token.value}' is not a cost",
                hint="Write counts and letters, e.g. costs:2b (b blood, o bone, "
                     "e energy, r/g/u/y mox gems)",
                position=token.position,
            )

        comparisons: list[FilterExpression] = []
        for count, letter in _COST_PART_RE.findall(raw):
            if letter in MOX_COLOURS:
                comparisons.append(Comparison("mox", ":", MOX_COLOURS[letter]))
            else:
                comparisons.append(Comparison(COST_TYPES[letter], "=", int(count or 1)))
        return _combine(And, comparisons)


def _format_value(value: object) -> str:
    if isinstance(value, Rarity):
        return value.value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return repr(value)
    text = str(value)
    if not text or _VALUE_RE.fullmatch(text) is None:
        return f'"{text}"'
    return text


def _format_pattern(pattern: str) -> str:
    bare = (
        _WORD_RE.fullmatch(pattern) is not None
        and not pattern.startswith("-")
        and pattern.lower() != "or"
    )
    return pattern if bare else f'"{pattern}"'


def to_query_string(expr: FilterExpression) -> str:
    """Serialize an expression tree back into query text.

    Parsing the result yields an equal tree for any tree the parser produced.

    Raises:
        ValueError: For nodes the query language cannot express
    """
    if isinstance(expr, Comparison):
        return f"{expr.field}{expr.operator}{_format_value(expr.value)}"

    if isinstance(expr, FuzzyText):
        if expr.field != FUZZY_FIELD:
            raise ValueError(f"Fuzzy match on '{expr.field}' has no query syntax")
        return _format_pattern(expr.pattern)

    if isinstance(expr, Not):
        inner = to_query_string(expr.child)
        if isinstance(expr.child, (And, Or)):
            inner = f"({inner})"
        return f"-{inner}"

    if isinstance(expr, And):
        parts = []
        for child in expr.children:
            text = to_query_string(child)
            parts.append(f"({text})" if isinstance(child, (And, Or)) else text)
        return " ".join(parts)

    if isinstance(expr, Or):
        parts = []
        for child in expr.children:
            text = to_query_string(child)
            parts.append(f"({text})" if isinstance(child, Or) else text)
        return " OR ".join(parts)

    raise ValueError(f"Not a filter expression: {expr!r}")
