"""Token-level view of a SQL statement built on the sqlparse lexer.

String literals, quoted identifiers and comments are kept apart from words so
that policy checks only ever match real keywords and identifiers.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import sqlparse
from sqlparse import tokens as T

logger = logging.getLogger(__name__)

WORD = "word"
STRING = "string"
QUOTED = "quoted"
NUMBER = "number"
OPERATOR = "operator"
PUNCT = "punct"

# Keywords after which a table name appears
TABLE_INTRODUCERS = {"from", "join", "update", "into"}
# Words that can follow a table name but are not an alias
NON_ALIAS_WORDS = {
    "where", "join", "inner", "left", "right", "full", "outer", "cross", "on",
    "group", "order", "limit", "offset", "having", "union", "except",
    "intersect", "natural", "using", "window", "for", "lateral", "as",
}


@dataclass(frozen=True)
class SqlToken:
    kind: str
    value: str  # words are lowercased, string literals unquoted


def _string_value(raw: str) -> str:
    if len(raw) >= 2 and raw[0] == raw[-1] == "'":
        return raw[1:-1].replace("''", "'")
    if raw[:2].upper() == "E'" and raw.endswith("'"):
        return raw[2:-1]
    return raw


def tokenize(sql: str) -> List[SqlToken]:
    """Flatten ``sql`` into significant tokens, dropping whitespace and comments."""
    scanned: List[SqlToken] = []
    for statement in sqlparse.parse(sql or ""):
        for token in statement.flatten():
            ttype = token.ttype
            if ttype is None or ttype in T.Whitespace or ttype in T.Comment:
                continue
            if ttype in T.String.Symbol:
                scanned.append(SqlToken(QUOTED, token.value.strip('"').lower()))
            elif ttype in T.String:
                scanned.append(SqlToken(STRING, _string_value(token.value)))
            elif ttype in T.Number:
                scanned.append(SqlToken(NUMBER, token.value))
            elif ttype in T.Operator or ttype in T.Comparison:
                scanned.append(SqlToken(OPERATOR, token.value))
            elif ttype in T.Punctuation:
                scanned.append(SqlToken(PUNCT, token.value))
            elif ttype in T.Keyword or ttype in T.Name or ttype in T.Name.Builtin:
                # Multi-word keywords ("LEFT  JOIN", "GROUP BY") come as one token
                scanned.append(SqlToken(WORD, " ".join(token.value.lower().split())))
            else:
                # Wildcards, placeholders and the like keep their raw text
                scanned.append(SqlToken(PUNCT, token.value))
    return scanned


def words(tokens: List[SqlToken]) -> List[str]:
    return [t.value for t in tokens if t.kind == WORD]


def introduces_table(word: str) -> bool:
    parts = word.split()
    return bool(parts) and parts[-1] in TABLE_INTRODUCERS


def cte_names(tokens: List[SqlToken]) -> List[str]:
    """Names defined by ``WITH name AS (...)`` clauses."""
    names = []
    for i in range(len(tokens) - 2):
        if tokens[i].kind in (WORD, QUOTED) and tokens[i + 1].value == "as" and tokens[i + 2].value == "(":
            names.append(tokens[i].value)
    return names


def _is_alias(token: SqlToken) -> bool:
    if token.kind == QUOTED:
        return True
    return token.kind == WORD and " " not in token.value and token.value not in NON_ALIAS_WORDS


def table_aliases(tokens: List[SqlToken]) -> Dict[str, str]:
    """Map every alias (and bare table name) to the table it refers to.

    Only the simple ``FROM schema.table [AS] alias`` shape is understood, which
    is what the policy needs to attribute qualified columns to tables.
    """
    aliases: Dict[str, str] = {}
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if token.kind == WORD and introduces_table(token.value):
            j = i + 1
            name: Optional[str] = None
            while j < len(tokens) and tokens[j].kind in (WORD, QUOTED):
                name = tokens[j].value
                if j + 1 < len(tokens) and tokens[j + 1].value == ".":
                    j += 2
                    continue
                j += 1
                break
            if name and name not in TABLE_INTRODUCERS:
                aliases[name] = name
                if j < len(tokens) and tokens[j].kind == WORD and tokens[j].value == "as":
                    j += 1
                if j < len(tokens) and _is_alias(tokens[j]):
                    aliases[tokens[j].value] = name
            i = j
            continue
        i += 1
    return aliases


@dataclass(frozen=True)
class Comparison:
    """``qualifier.column = literal`` found in the statement."""
    qualifier: Optional[str]
    column: str
    literal_kind: str
    literal: str


def _read_column_ref(tokens: List[SqlToken], end: int) -> Optional[tuple]:
    """Read a column reference ending at index ``end`` (inclusive), backwards."""
    if end < 0 or tokens[end].kind not in (WORD, QUOTED):
        return None
    column = tokens[end].value
    if end >= 2 and tokens[end - 1].value == "." and tokens[end - 2].kind in (WORD, QUOTED):
        return tokens[end - 2].value, column
    return None, column


def equality_comparisons(tokens: List[SqlToken]) -> List[Comparison]:
    """Every ``column = literal`` or ``literal = column`` pair, in either spacing."""
    found: List[Comparison] = []
    for i, token in enumerate(tokens):
        if token.kind != OPERATOR or token.value != "=":
            continue
        left = tokens[i - 1] if i > 0 else None
        right = tokens[i + 1] if i + 1 < len(tokens) else None
        if left is None or right is None:
            continue
        if right.kind in (NUMBER, STRING):
            ref = _read_column_ref(tokens, i - 1)
            if ref:
                found.append(Comparison(ref[0], ref[1], right.kind, right.value))
        elif left.kind in (NUMBER, STRING) and right.kind in (WORD, QUOTED):
            j = i + 1
            if j + 2 < len(tokens) and tokens[j + 1].value == "." and tokens[j + 2].kind in (WORD, QUOTED):
                found.append(Comparison(right.value, tokens[j + 2].value, left.kind, left.value))
            else:
                found.append(Comparison(None, right.value, left.kind, left.value))
    return found
