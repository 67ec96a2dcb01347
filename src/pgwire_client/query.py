"""
Query handles and bound parameters.

A ``Query`` is an immutable, engine-specific handle over one or more native
statements. Its text has been scanned once: statements are split on top-level
semicolons and, for parameterized queries, ``?`` placeholders are rewritten to
the server's ``$n`` form. The scanner only tracks quoting and comments; it is
not a SQL parser.

A ``ParameterList`` holds the values for one execution of one Query. Values
carry an optional text form and an optional binary form; the engine picks the
wire format per slot from the binary format registry.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .exceptions import CallerContractError, ForeignQueryError
from .formats import FormatSnapshot, Oid
from .protocol import FORMAT_BINARY, FORMAT_TEXT

_CALL_ESCAPE = re.compile(
    r'^\s*\{\s*(?:\?\s*=\s*)?call\s+([^\s(]+)\s*(\((.*)\))?\s*\}\s*;?\s*$',
    re.IGNORECASE | re.DOTALL,
)
_RETURNING_COMMANDS = frozenset({'INSERT', 'UPDATE', 'DELETE', 'MERGE'})
_ROW_COMMANDS = frozenset({'SELECT', 'WITH', 'VALUES', 'SHOW', 'TABLE', 'FETCH', 'EXPLAIN'})
_DOLLAR_TAG = re.compile(r'\$([A-Za-z_][A-Za-z0-9_]*)?\$')
_PLACEHOLDER = re.compile(r'\$(\d+)')


@dataclass(frozen=True)
class NativeStatement:
    """One server-level statement with ``$n`` placeholders."""

    sql: str
    bind_count: int
    command: str

    @property
    def returns_rows_hint(self) -> bool:
        return self.command in _ROW_COMMANDS

    @property
    def is_empty(self) -> bool:
        return not self.sql.strip()


def _leading_keyword(sql: str) -> str:
    match = re.match(r'[\s(]*(?:--[^\n]*\n\s*|/\*.*?\*/\s*)*([A-Za-z]+)', sql, re.DOTALL)
    return match.group(1).upper() if match else ''


def _literal_end(sql: str, i: int) -> Optional[int]:
    """
    End of the string literal, quoted identifier, comment or dollar-quoted
    body starting at ``i``, or None when none starts there.

    An unterminated one runs to the end of the text.
    """
    length = len(sql)
    char = sql[i]
    if char == "'":
        j = i + 1
        while j < length:
            if sql[j] == "'":
                if sql[j + 1:j + 2] != "'":
                    return j + 1
                j += 1
            j += 1
        return length
    if char == '"':
        end = sql.find('"', i + 1)
        return length if end < 0 else end + 1
    if sql.startswith('--', i):
        end = sql.find('\n', i + 2)
        return length if end < 0 else end + 1
    if sql.startswith('/*', i):
        depth = 1
        j = i + 2
        while j < length and depth:
            if sql.startswith('/*', j):
                depth += 1
                j += 2
            elif sql.startswith('*/', j):
                depth -= 1
                j += 2
            else:
                j += 1
        return j
    if char == '$' and not (i > 0 and (sql[i - 1].isalnum() or sql[i - 1] == '_')):
        tag = _DOLLAR_TAG.match(sql, i)
        if tag:
            end = sql.find(tag.group(0), tag.end())
            return length if end < 0 else end + len(tag.group(0))
    return None


def parse_sql(sql: str, is_parameterized: bool, split_statements: bool = True) -> List[NativeStatement]:
    """
    Split SQL text into native statements, respecting quotes and comments.

    Semicolons inside string literals, quoted identifiers, dollar-quoted
    bodies and comments are not statement separators. For parameterized text
    each ``?`` becomes ``$1``, ``$2``, ... numbered per statement, and ``??``
    becomes a literal ``?``.

    Args:
        sql: SQL text as supplied by the caller
        is_parameterized: rewrite ``?`` placeholders
        split_statements: split on top-level semicolons

    Returns:
        List of native statements (at least one, possibly empty)
    """
    statements: List[NativeStatement] = []
    current: List[str] = []
    bind_count = 0
    highest_dollar = 0
    i = 0
    length = len(sql)

    def end_statement():
        nonlocal current, bind_count, highest_dollar
        text = ''.join(current).strip()
        if text:
            count = bind_count if is_parameterized else highest_dollar
            statements.append(NativeStatement(text, count, _leading_keyword(text)))
        current = []
        bind_count = 0
        highest_dollar = 0

    while i < length:
        end = _literal_end(sql, i)
        if end is not None:
            current.append(sql[i:end])
            i = end
            continue

        char = sql[i]
        if char == '$':
            digits = _PLACEHOLDER.match(sql, i)
            if digits:
                highest_dollar = max(highest_dollar, int(digits.group(1)))
        elif char == '?' and is_parameterized:
            if sql.startswith('??', i):
                current.append('?')
                i += 2
                continue
            bind_count += 1
            current.append(f'${bind_count}')
            i += 1
            continue
        elif char == ';' and split_statements:
            end_statement()
            i += 1
            continue

        current.append(char)
        i += 1

    end_statement()
    if not statements:
        statements.append(NativeStatement('', 0, ''))
    return statements


def rewrite_call_escape(sql: str) -> str:
    """
    Convert a ``{call f(...)}`` / ``{? = call f(...)}`` escape into a SELECT.

    Text that is not a call escape is returned unchanged.
    """
    match = _CALL_ESCAPE.match(sql)
    if not match:
        return sql
    function = match.group(1)
    arguments = match.group(3) or ''
    return f"select * from {function}({arguments.strip()}) as result"


def add_returning(sql: str, column_names: Sequence[str]) -> str:
    """
    Append a RETURNING clause for generated-key style calls.

    Only DML statements without an existing RETURNING clause are changed;
    ``*`` requests every column.
    """
    if not column_names:
        return sql
    statements = parse_sql(sql, is_parameterized=False)
    if len(statements) != 1 or statements[0].command not in _RETURNING_COMMANDS:
        return sql
    if re.search(r'\bRETURNING\b', sql, re.IGNORECASE):
        return sql
    if list(column_names) == ['*']:
        columns = '*'
    else:
        columns = ', '.join('"' + name.replace('"', '""') + '"' for name in column_names)
    return f"{sql.rstrip().rstrip(';')} RETURNING {columns}"


class ParameterList:
    """
    Values bound for one execution of a Query.

    Slots are addressed by their 1-based placeholder number, like ``$1``.

    Args:
        query_id: id of the owning query, or None for fastpath parameters
        engine_token: identity token of the engine that created the query
        count: number of parameter slots
    """

    def __init__(self, query_id: Optional[int], engine_token: object, count: int):
        self.query_id = query_id
        self.engine_token = engine_token
        self._text: List[Optional[str]] = [None] * count
        self._binary: List[Optional[bytes]] = [None] * count
        self._oids: List[int] = [Oid.UNSPECIFIED] * count
        self._set: List[bool] = [False] * count
        self._null: List[bool] = [False] * count

    def __len__(self) -> int:
        return len(self._oids)

    @property
    def parameter_count(self) -> int:
        return len(self._oids)

    def _slot(self, index: int) -> int:
        if index < 1 or index > len(self._oids):
            raise CallerContractError(
                f"The column index is out of range: {index}, number of columns: {len(self._oids)}.",
                '22023')
        return index - 1

    def set_null(self, index: int, oid: int = Oid.UNSPECIFIED):
        slot = self._slot(index)
        self._text[slot] = None
        self._binary[slot] = None
        self._oids[slot] = oid
        self._null[slot] = True
        self._set[slot] = True

    def set_text(self, index: int, value: str, oid: int = Oid.UNSPECIFIED):
        self.set_value(index, value, oid)

    def set_binary(self, index: int, value: bytes, oid: int):
        self.set_value(index, None, oid, binary=value)

    def set_value(self, index: int, text: Optional[str], oid: int = Oid.UNSPECIFIED,
                  binary: Optional[bytes] = None):
        """
        Bind a value given in text form, binary form, or both.

        The engine sends the binary form when the type is in the registry's
        send set; otherwise the text form is used.
        """
        if text is None and binary is None:
            self.set_null(index, oid)
            return
        slot = self._slot(index)
        self._text[slot] = text
        self._binary[slot] = bytes(binary) if binary is not None else None
        self._oids[slot] = oid
        self._null[slot] = False
        self._set[slot] = True

    def set_resolved_type(self, index: int, oid: int):
        """Record the server-inferred type of an untyped slot."""
        slot = self._slot(index)
        if self._oids[slot] == Oid.UNSPECIFIED:
            self._oids[slot] = oid

    def type_oids(self) -> Tuple[int, ...]:
        return tuple(self._oids)

    def type_oids_for(self, start: int, count: int) -> Tuple[int, ...]:
        return tuple(self._oids[start:start + count])

    def is_null(self, index: int) -> bool:
        return self._null[self._slot(index)]

    def check_all_set(self):
        for slot, is_set in enumerate(self._set):
            if not is_set:
                raise CallerContractError(f"No value specified for parameter {slot + 1}.", '22023')

    def clear(self):
        count = len(self._oids)
        self._text = [None] * count
        self._binary = [None] * count
        self._oids = [Oid.UNSPECIFIED] * count
        self._set = [False] * count
        self._null = [False] * count

    def copy(self) -> 'ParameterList':
        other = ParameterList(self.query_id, self.engine_token, len(self._oids))
        other._text = list(self._text)
        other._binary = list(self._binary)
        other._oids = list(self._oids)
        other._set = list(self._set)
        other._null = list(self._null)
        return other

    def encode(self, snapshot: FormatSnapshot, start: int = 0,
               count: Optional[int] = None) -> Tuple[List[int], List[Optional[bytes]]]:
        """
        Wire format codes and values for a slice of the slots.

        Returns:
            Tuple of (format_codes, values); format_codes is empty when every
            value goes as text
        """
        end = len(self._oids) if count is None else start + count
        formats: List[int] = []
        values: List[Optional[bytes]] = []
        for slot in range(start, end):
            if self._null[slot]:
                formats.append(FORMAT_TEXT)
                values.append(None)
                continue
            binary = self._binary[slot]
            text = self._text[slot]
            oid = self._oids[slot]
            if binary is not None:
                if snapshot.use_binary_send(oid):
                    formats.append(FORMAT_BINARY)
                    values.append(binary)
                    continue
                if text is None:
                    if oid != Oid.BYTEA:
                        raise CallerContractError(
                            f"Parameter {slot + 1} has only a binary value and type {oid} "
                            f"is not sent in binary for this execution.", '22023')
                    formats.append(FORMAT_TEXT)
                    values.append(b'\\x' + binary.hex().encode('ascii'))
                    continue
            formats.append(FORMAT_TEXT)
            values.append(text.encode('utf-8'))
        if FORMAT_BINARY not in formats:
            formats = []
        return formats, values

    def raw_values(self) -> Tuple[List[int], List[Optional[bytes]]]:
        """Format codes and values exactly as supplied, binary preferred (fastpath)."""
        self.check_all_set()
        formats: List[int] = []
        values: List[Optional[bytes]] = []
        for slot in range(len(self._oids)):
            if self._null[slot]:
                formats.append(FORMAT_BINARY)
                values.append(None)
            elif self._binary[slot] is not None:
                formats.append(FORMAT_BINARY)
                values.append(self._binary[slot])
            else:
                formats.append(FORMAT_TEXT)
                values.append(self._text[slot].encode('utf-8'))
        return formats, values

    def to_literal(self, index: int, standard_conforming_strings: bool = True) -> str:
        """
        SQL literal for inlining a value into simple-dialect text.

        Raises:
            CallerContractError: the value only exists in binary form
        """
        slot = self._slot(index)
        if self._null[slot]:
            return 'NULL'
        text = self._text[slot]
        if text is None:
            binary = self._binary[slot]
            if self._oids[slot] == Oid.BYTEA and binary is not None:
                text = '\\x' + binary.hex()
            else:
                raise CallerContractError(
                    f"Parameter {index} has no text form and cannot be inlined "
                    f"for the simple query protocol.", '22023')
        escaped = text.replace("'", "''")
        if not standard_conforming_strings and '\\' in escaped:
            return "E'" + escaped.replace('\\', '\\\\') + "'"
        return "'" + escaped + "'"

    def __str__(self) -> str:
        shown = []
        for slot in range(len(self._oids)):
            if not self._set[slot]:
                shown.append('?')
            elif self._null[slot]:
                shown.append('NULL')
            elif self._text[slot] is not None:
                shown.append(repr(self._text[slot]))
            else:
                shown.append(f'<binary {len(self._binary[slot])} bytes>')
        return '(' + ', '.join(shown) + ')'


@dataclass(frozen=True, eq=False)
class Query:
    """
    Immutable handle for a scanned statement.

    ``query_id`` addresses the engine's record for this query (statement
    names, described result shape); ``engine_token`` identifies the engine
    that created it.
    """

    query_id: int
    statements: Tuple[NativeStatement, ...]
    engine_token: object
    is_parameterized: bool = True

    @property
    def parameter_count(self) -> int:
        return sum(s.bind_count for s in self.statements)

    @property
    def native_sql(self) -> str:
        return '; '.join(s.sql for s in self.statements)

    @property
    def is_composite(self) -> bool:
        return len(self.statements) > 1

    @property
    def is_empty(self) -> bool:
        return all(s.is_empty for s in self.statements)

    def create_parameter_list(self) -> ParameterList:
        return ParameterList(self.query_id, self.engine_token, self.parameter_count)

    def check_parameters(self, parameters: Optional[ParameterList],
                         require_values: bool = True) -> ParameterList:
        """
        Validate ownership and completeness of a parameter list.

        Args:
            parameters: list from ``create_parameter_list`` or None
            require_values: every slot must be bound (False for describe-only)

        Returns:
            The list itself, or an empty list for parameterless queries
        """
        if parameters is None:
            if self.parameter_count and require_values:
                raise CallerContractError(
                    f"No value specified for parameter 1 of {self.parameter_count}.", '22023')
            return self.create_parameter_list()
        if parameters.engine_token is not self.engine_token or parameters.query_id != self.query_id:
            raise ForeignQueryError(
                "This ParameterList was not created by the query it is being executed with.")
        if require_values:
            parameters.check_all_set()
        return parameters

    def to_simple_sql(self, parameters: ParameterList, standard_conforming_strings: bool = True) -> str:
        """Render the query text with parameters inlined as literals."""
        rendered = []
        offset = 0
        for statement in self.statements:
            def substitute(match, base=offset):
                number = int(match.group(1))
                if number < 1 or number > statement.bind_count:
                    return match.group(0)
                return parameters.to_literal(base + number, standard_conforming_strings)

            if statement.bind_count:
                rendered.append(_substitute_placeholders(statement.sql, substitute))
            else:
                rendered.append(statement.sql)
            offset += statement.bind_count
        return ';'.join(rendered)

    def __str__(self) -> str:
        return self.native_sql


def _substitute_placeholders(sql: str, substitute) -> str:
    """Replace ``$n`` tokens outside quotes, comments and dollar-quoted bodies."""
    out: List[str] = []
    i = 0
    length = len(sql)
    while i < length:
        end = _literal_end(sql, i)
        if end is not None:
            out.append(sql[i:end])
            i = end
            continue
        match = _PLACEHOLDER.match(sql, i)
        if match and not (i > 0 and (sql[i - 1].isalnum() or sql[i - 1] == '_')):
            out.append(substitute(match))
            i = match.end()
            continue
        out.append(sql[i])
        i += 1
    return ''.join(out)
