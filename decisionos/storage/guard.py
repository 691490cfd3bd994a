"""
Tenant-safety query guard.

Static inspection of literal SQL text before it is handed to the driver.
The dialect is closed and self-imposed: ``$1`` is always the household
key for tenant-scoped statements, every tenant table is bound by
``<alias>.household_key = $1``, upserts name household_key in their
conflict target, and statements never delete, alter or chain.

Pattern matching over normalized text is enough for that dialect; this is
not a general SQL parser.
"""

import logging
import re

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

TENANT_TABLES = frozenset(
    {
        "decision_events",
        "taste_meal_scores",
        "taste_signals",
        "inventory_items",
        "receipt_imports",
    }
)

TENANT_COLUMN = "household_key"

# Error codes are part of the contract; callers and dashboards grep for them.
CODE_HOUSEHOLD_KEY_MISSING = "household_key_missing"
CODE_ON_CONFLICT_UNSAFE = "on_conflict_unsafe"
CODE_SQL_CONTRACT_VIOLATION = "sql_contract_violation"
CODE_READONLY_MODE = "readonly_mode"

BANNED_TOKENS = ("delete", "alter", "drop", "truncate", "create")

# Words that can follow a table reference but are never an alias.
_RESERVED = frozenset(
    {
        "where", "join", "inner", "left", "right", "full", "outer", "cross",
        "natural", "on", "using", "set", "values", "select", "group", "order",
        "limit", "offset", "having", "returning", "union", "intersect",
        "except", "default", "as", "lateral", "window", "for", "fetch",
        "do", "conflict", "only",
    }
)

_IDENT = r'(?:"[^"]+"|[a-z_][a-z0-9_$]*)'
_QUALIFIED = _IDENT + r"(?:\s*\.\s*" + _IDENT + r")*"
_ALIAS = r"(?!(?:" + "|".join(sorted(_RESERVED)) + r")\b)" + _IDENT

_TABLE_REF = re.compile(
    r"\b(from|join|update|into)\s+(" + _QUALIFIED + r")"
    r"(?:\s+(?:as\s+)?(" + _ALIAS + r"))?"
)
_TABLE_LIST_CONT = re.compile(
    r"\s*,\s*(" + _QUALIFIED + r")(?:\s+(?:as\s+)?(" + _ALIAS + r"))?"
)

# Qualified or bare tenant predicate bound to exactly $1.
_TENANT_PREDICATE = re.compile(
    r"(?<![\w$])(?:(" + _QUALIFIED + r")\s*\.\s*)?\"?household_key\"?"
    r"\s*=\s*\$1(?!\d)"
)
_BARE_TENANT_COMPARISON = re.compile(
    r"(?<![\w.\"$])\"?household_key\"?\s*(?:=|<>|!=|\bin\b|\bis\b|\bnot\b)"
)
_REVERSED_PREDICATE = re.compile(
    r"\$\d+\s*=\s*(?:" + _QUALIFIED + r"\s*\.\s*)?\"?household_key\"?"
)
_SET_PREDICATE = re.compile(
    r"\"?household_key\"?\s*(?:(?:not\s+)?in\s*\(|=\s*(?:any|some|all)\s*\()"
)
_WRONG_PARAM = re.compile(r"\"?household_key\"?\s*=\s*\$(\d+)")
_LITERAL_BINDING = re.compile(
    r"\"?household_key\"?\s*=\s*(?:''|[-+]?\d|e''|null\b|true\b|false\b)"
)
_ON_CONFLICT_TARGET = re.compile(r"\bon\s+conflict\s*\(([^)]*)\)")
_ON_CONFLICT_CONSTRAINT = re.compile(r"\bon\s+conflict\s+on\s+constraint\b")
_SUBQUERY = re.compile(r"\(\s*select\b")
_OR_TOKEN = re.compile(r"\bor\b")
_CLAUSE_START = re.compile(r"\b(?:where|on|having)\b")
_CLAUSE_END = re.compile(
    r"\b(?:group\s+by|order\s+by|limit|offset|returning|join|inner|left|right|"
    r"full|cross|where|having|union|on\s+conflict|do)\b"
)
# Last keyword before a predicate decides whether it filters rows.
_CLAUSE_KEYWORD = re.compile(
    r"\b(where|on|having|select|from|join|set|values|group\s+by|order\s+by|"
    r"returning|limit|offset|do|union|intersect|except)\b"
)
_FILTER_CLAUSES = frozenset({"where", "on", "having"})
_NEGATION_BEFORE = re.compile(r"(?:\bnot|\bis|=|<>|!=|<|>)\s*$")
_COMPARISON_AFTER = re.compile(r"\s*(?:is\b|=|<>|!=|<|>)")
_SELECT = re.compile(r"\bselect\b")


class TableReference(BaseModel):
    """A table named in FROM/JOIN/UPDATE/INSERT INTO, schema and quoting removed."""

    table: str
    alias: str | None = None

    @property
    def qualifier(self) -> str:
        """Name other clauses must use to refer to this table."""
        return self.alias or self.table

    @property
    def is_tenant_table(self) -> bool:
        return self.table in TENANT_TABLES


class SqlViolation(BaseModel):
    """One failed rule."""

    rule: str
    detail: str


class TenantSafetyResult(BaseModel):
    """Per-statement outcome of the tenant predicate check."""

    safe: bool
    statement_kind: str
    missing_tables: list[str] = Field(default_factory=list)


class TenantSafetyError(Exception):
    """A statement failed the guard and was not executed."""

    def __init__(self, code: str, detail: str, violations: list[SqlViolation] | None = None):
        self.code = code
        self.detail = detail
        self.violations = violations or []
        super().__init__(f"{code}: {detail}")


class ReadonlyModeError(Exception):
    """A write statement was refused because the database is in read-only mode."""

    code = CODE_READONLY_MODE

    def __init__(self, detail: str = "writes are disabled"):
        self.detail = detail
        super().__init__(f"{CODE_READONLY_MODE}: {detail}")


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def normalize_sql(sql: str) -> str:
    """
    Strip comments, empty out single-quoted literals and collapse whitespace.

    Literal contents become ``''`` so no rule fires on, or is fooled by,
    text inside a string. An unterminated comment or literal runs to the
    end of the input.
    """
    out: list[str] = []
    i = 0
    n = len(sql)
    while i < n:
        ch = sql[i]
        if ch == "-" and sql.startswith("--", i):
            end = sql.find("\n", i)
            i = n if end == -1 else end
            out.append(" ")
        elif ch == "/" and sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            i = n if end == -1 else end + 2
            out.append(" ")
        elif ch == "'":
            i += 1
            while i < n:
                if sql[i] == "'":
                    if i + 1 < n and sql[i + 1] == "'":
                        i += 2
                        continue
                    break
                i += 1
            i += 1
            out.append("''")
        else:
            out.append(ch)
            i += 1
    return " ".join("".join(out).split())


def normalize_table_name(raw: str) -> str:
    """public."Decision_Events" -> decision_events"""
    last = re.split(r"\s*\.\s*", raw.strip())[-1]
    return last.strip('"').lower()


def _normalize_alias(raw: str | None) -> str | None:
    if raw is None:
        return None
    alias = raw.strip('"').lower()
    if alias in _RESERVED:
        return None
    return alias


def _lowered(sql: str) -> str:
    return normalize_sql(sql).lower()


def statement_kind(sql: str) -> str:
    """First keyword of the statement, lower-cased ('' for empty input)."""
    normalized = _lowered(sql)
    match = re.match(r"\(*\s*([a-z]+)", normalized)
    return match.group(1) if match else ""


# ---------------------------------------------------------------------------
# Table references and predicates
# ---------------------------------------------------------------------------


def _extract_from_normalized(normalized: str) -> list[TableReference]:
    refs: list[TableReference] = []
    seen: set[tuple[str, str | None]] = set()

    def _add(raw_table: str, raw_alias: str | None) -> None:
        table = normalize_table_name(raw_table)
        if table in _RESERVED:
            return
        ref = TableReference(table=table, alias=_normalize_alias(raw_alias))
        key = (ref.table, ref.alias)
        if key not in seen:
            seen.add(key)
            refs.append(ref)

    for match in _TABLE_REF.finditer(normalized):
        keyword, raw_table, raw_alias = match.groups()
        _add(raw_table, raw_alias)
        if keyword != "from":
            continue
        # FROM a x, b y
        pos = match.end()
        while True:
            cont = _TABLE_LIST_CONT.match(normalized, pos)
            if not cont:
                break
            _add(cont.group(1), cont.group(2))
            pos = cont.end()
    return refs


def extract_table_references(sql: str) -> list[TableReference]:
    """Tables referenced by FROM, JOIN, UPDATE and INSERT INTO, in order of appearance."""
    return _extract_from_normalized(_lowered(sql))


def _in_filter_clause(normalized: str, start: int) -> bool:
    last = None
    for match in _CLAUSE_KEYWORD.finditer(normalized, 0, start):
        last = match.group(1)
    return last is not None and last.split()[0] in _FILTER_CLAUSES


def _predicate_negated(normalized: str, start: int, end: int) -> bool:
    """
    True when the predicate, or any group around it, is negated or compared.

    ``NOT p``, ``NOT (... AND p)``, ``p IS NOT TRUE`` and ``(p) = false``
    all stop p from restricting rows to the tenant.
    """
    while True:
        if _NEGATION_BEFORE.search(normalized, 0, start):
            return True
        if _COMPARISON_AFTER.match(normalized, end):
            return True
        group = _enclosing_group(normalized, start, end)
        if group is None:
            return False
        start, end = group[0], group[1] + 1


def _binding_predicates(normalized: str):
    """Tenant predicates that actually restrict rows: positive conjuncts of WHERE/ON/HAVING."""
    for match in _TENANT_PREDICATE.finditer(normalized):
        start, end = match.span()
        if not _in_filter_clause(normalized, start):
            continue
        if _predicate_negated(normalized, start, end):
            continue
        if _predicate_in_disjunction(normalized, start, end):
            continue
        yield match


def has_predicate_for_table_or_alias(sql: str, table_or_alias: str, is_sole_table: bool) -> bool:
    """
    True iff the statement binds table_or_alias to the tenant parameter.

    Accepts ``<qualifier>.household_key = $1`` with a case-insensitive
    qualifier match, or bare ``household_key = $1`` when the statement has
    exactly one table. The parameter must be $1 itself: $2+, literals,
    IN (...) and = ANY (...) never count. Only predicates that filter rows
    count: a match in the select list, under NOT, compared again with
    IS/=, or inside an OR is ignored.
    """
    target = table_or_alias.strip('"').lower()
    for match in _binding_predicates(_lowered(sql)):
        qualifier = match.group(1)
        if qualifier is None:
            if is_sole_table:
                return True
            continue
        if normalize_table_name(qualifier) == target:
            return True
    return False


def check_tenant_safety(sql: str) -> TenantSafetyResult:
    """
    Every tenant table read or updated must carry its own predicate.

    Applies to SELECT (including WITH) and UPDATE, and to the tables an
    ``INSERT ... SELECT`` reads from. A join where only one of two tenant
    tables is bound leaks the other, so each reference is checked on its
    own and every unbound table is reported.
    """
    kind = statement_kind(sql)
    if kind in ("select", "with", "update"):
        refs = extract_table_references(sql)
    elif kind == "insert":
        # The INSERT INTO target is covered by the conflict check; what the
        # SELECT part reads must be bound like any other read.
        normalized = _lowered(sql)
        select = _SELECT.search(normalized)
        if select is None:
            return TenantSafetyResult(safe=True, statement_kind=kind)
        refs = _extract_from_normalized(normalized[select.start() :])
    else:
        return TenantSafetyResult(safe=True, statement_kind=kind)

    is_sole = len(refs) == 1
    missing: list[str] = []
    for ref in refs:
        if not ref.is_tenant_table:
            continue
        if has_predicate_for_table_or_alias(sql, ref.qualifier, is_sole):
            continue
        if ref.table not in missing:
            missing.append(ref.table)
    return TenantSafetyResult(safe=not missing, statement_kind=kind, missing_tables=missing)


def check_on_conflict_safety(sql: str) -> list[SqlViolation]:
    """
    Upserts on tenant tables must name household_key in the conflict target.

    ON CONFLICT ON CONSTRAINT cannot be proven safe from the text and is
    always refused for tenant tables. Other tables and plain inserts pass.
    """
    normalized = _lowered(sql)
    if statement_kind(sql) != "insert" or "on conflict" not in normalized:
        return []
    targets = [ref for ref in _extract_from_normalized(normalized) if ref.is_tenant_table]
    if not targets:
        return []
    table = targets[0].table

    violations: list[SqlViolation] = []
    if _ON_CONFLICT_CONSTRAINT.search(normalized):
        violations.append(
            SqlViolation(
                rule="on_conflict_on_constraint",
                detail=f"ON CONFLICT ON CONSTRAINT on tenant table {table}",
            )
        )
    for match in _ON_CONFLICT_TARGET.finditer(normalized):
        columns = [c.strip().strip('"') for c in match.group(1).split(",")]
        if TENANT_COLUMN not in columns:
            violations.append(
                SqlViolation(
                    rule="on_conflict_missing_household_key",
                    detail=f"conflict target ({match.group(1)}) on {table} lacks household_key",
                )
            )
    return violations


# ---------------------------------------------------------------------------
# Style contract rules
# ---------------------------------------------------------------------------


def _mask_nested(text: str) -> str:
    """Blank out everything inside parentheses, keeping offsets."""
    out = []
    depth = 0
    for ch in text:
        if ch == "(":
            depth += 1
            out.append(" ")
        elif ch == ")":
            depth = max(depth - 1, 0)
            out.append(" ")
        else:
            out.append(" " if depth else ch)
    return "".join(out)


def _enclosing_group(text: str, start: int, end: int) -> tuple[int, int] | None:
    """Offsets of the innermost parenthesized group around [start, end)."""
    depth = 0
    left = None
    for i in range(start - 1, -1, -1):
        if text[i] == ")":
            depth += 1
        elif text[i] == "(":
            if depth == 0:
                left = i
                break
            depth -= 1
    if left is None:
        return None
    depth = 0
    for i in range(end, len(text)):
        if text[i] == "(":
            depth += 1
        elif text[i] == ")":
            if depth == 0:
                return left, i
            depth -= 1
    return None


def _predicate_in_disjunction(normalized: str, start: int, end: int) -> bool:
    """Walk outwards from a predicate; any OR at a sibling level makes it optional."""
    while True:
        group = _enclosing_group(normalized, start, end)
        if group is None:
            break
        left, right = group
        segment = _mask_nested(normalized[left + 1 : right])
        if _OR_TOKEN.search(segment):
            return True
        start, end = left, right + 1

    masked = _mask_nested(normalized)
    clause_start = 0
    for match in _CLAUSE_START.finditer(masked, 0, start):
        clause_start = match.end()
    clause_end = len(masked)
    match = _CLAUSE_END.search(masked, end)
    if match:
        clause_end = match.start()
    return bool(_OR_TOKEN.search(masked, clause_start, clause_end))


def _rule_banned_tokens(normalized: str, refs: list[TableReference]) -> list[SqlViolation]:
    found = [t for t in BANNED_TOKENS if re.search(rf"\b{t}\b", normalized)]
    return [SqlViolation(rule="banned_token", detail=f"banned token {t.upper()}") for t in found]


def _rule_multi_statement(normalized: str, refs: list[TableReference]) -> list[SqlViolation]:
    if ";" in normalized:
        return [SqlViolation(rule="multi_statement", detail="';' outside a string literal")]
    return []


def _rule_reversed_predicate(normalized: str, refs: list[TableReference]) -> list[SqlViolation]:
    if _REVERSED_PREDICATE.search(normalized):
        return [
            SqlViolation(
                rule="reversed_predicate",
                detail="tenant predicate must read <alias>.household_key = $1",
            )
        ]
    return []


def _rule_set_predicate(normalized: str, refs: list[TableReference]) -> list[SqlViolation]:
    if _SET_PREDICATE.search(normalized):
        return [
            SqlViolation(
                rule="set_predicate",
                detail="household_key compared with IN/ANY; bind a single $1",
            )
        ]
    return []


def _rule_predicate_in_or(normalized: str, refs: list[TableReference]) -> list[SqlViolation]:
    for match in _TENANT_PREDICATE.finditer(normalized):
        if _predicate_in_disjunction(normalized, match.start(), match.end()):
            return [
                SqlViolation(
                    rule="predicate_in_or",
                    detail="tenant predicate appears inside an OR",
                )
            ]
    return []


def _rule_negated_predicate(normalized: str, refs: list[TableReference]) -> list[SqlViolation]:
    for match in _TENANT_PREDICATE.finditer(normalized):
        if _predicate_negated(normalized, match.start(), match.end()):
            return [
                SqlViolation(
                    rule="negated_predicate",
                    detail="tenant predicate is negated or compared with IS/=",
                )
            ]
    return []


def _rule_unqualified_multi_table(normalized: str, refs: list[TableReference]) -> list[SqlViolation]:
    if len(refs) > 1 and _BARE_TENANT_COMPARISON.search(normalized):
        return [
            SqlViolation(
                rule="unqualified_household_key",
                detail="unqualified household_key in a multi-table statement",
            )
        ]
    return []


def _rule_wrong_param_index(normalized: str, refs: list[TableReference]) -> list[SqlViolation]:
    wrong = sorted({f"${m.group(1)}" for m in _WRONG_PARAM.finditer(normalized) if m.group(1) != "1"})
    if wrong:
        return [
            SqlViolation(
                rule="wrong_param_index",
                detail=f"household_key bound to {', '.join(wrong)} instead of $1",
            )
        ]
    return []


def _rule_literal_binding(normalized: str, refs: list[TableReference]) -> list[SqlViolation]:
    if _LITERAL_BINDING.search(normalized):
        return [
            SqlViolation(
                rule="literal_binding",
                detail="household_key compared with a literal value",
            )
        ]
    return []


def _rule_update_missing_where(normalized: str, refs: list[TableReference]) -> list[SqlViolation]:
    if not normalized.startswith("update "):
        return []
    if not refs or not refs[0].is_tenant_table:
        return []
    target = refs[0]
    qualifiers = {target.table, target.qualifier}
    match = re.search(r"\bwhere\s+(?:(" + _QUALIFIED + r")\s*\.\s*)?\"?household_key\"?\s*=\s*\$1(?!\d)", normalized)
    if match and (match.group(1) is None or normalize_table_name(match.group(1)) in qualifiers):
        return []
    return [
        SqlViolation(
            rule="update_missing_tenant_where",
            detail=f"UPDATE {target.table} must open its WHERE with household_key = $1",
        )
    ]


def _rule_cte(normalized: str, refs: list[TableReference]) -> list[SqlViolation]:
    if normalized.startswith("with ") and any(r.is_tenant_table for r in refs):
        return [SqlViolation(rule="cte_not_allowed", detail="CTE over a tenant table")]
    return []


def _rule_subquery(normalized: str, refs: list[TableReference]) -> list[SqlViolation]:
    if _SUBQUERY.search(normalized) and any(r.is_tenant_table for r in refs):
        return [SqlViolation(rule="subquery_not_allowed", detail="subquery over a tenant table")]
    return []


STYLE_RULES = (
    ("banned_token", _rule_banned_tokens),
    ("multi_statement", _rule_multi_statement),
    ("reversed_predicate", _rule_reversed_predicate),
    ("set_predicate", _rule_set_predicate),
    ("predicate_in_or", _rule_predicate_in_or),
    ("negated_predicate", _rule_negated_predicate),
    ("unqualified_household_key", _rule_unqualified_multi_table),
    ("wrong_param_index", _rule_wrong_param_index),
    ("literal_binding", _rule_literal_binding),
    ("update_missing_tenant_where", _rule_update_missing_where),
    ("cte_not_allowed", _rule_cte),
    ("subquery_not_allowed", _rule_subquery),
)


def check_sql_style_contract(sql: str) -> list[SqlViolation]:
    """Run every style rule and return all violations, in rule order."""
    normalized = _lowered(sql)
    refs = _extract_from_normalized(normalized)
    violations: list[SqlViolation] = []
    for _name, rule in STYLE_RULES:
        violations.extend(rule(normalized, refs))
    return violations


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------


def _abort(code: str, detail: str, sql: str, violations: list[SqlViolation] | None = None):
    logger.error("SQL aborted [%s] %s :: %s", code, detail, normalize_sql(sql)[:200])
    raise TenantSafetyError(code, detail, violations)


def assert_tenant_safe(sql: str) -> None:
    """
    Raise TenantSafetyError unless the statement is tenant-safe.

    Checks run in order and the first failure wins: missing tenant
    predicates (household_key_missing), unsafe upserts (on_conflict_unsafe),
    then the style contract (sql_contract_violation).
    """
    result = check_tenant_safety(sql)
    if not result.safe:
        _abort(
            CODE_HOUSEHOLD_KEY_MISSING,
            f"no household_key = $1 predicate for: {', '.join(result.missing_tables)}",
            sql,
        )

    conflict_violations = check_on_conflict_safety(sql)
    if conflict_violations:
        _abort(CODE_ON_CONFLICT_UNSAFE, conflict_violations[0].detail, sql, conflict_violations)

    assert_sql_style_contract(sql)


def assert_sql_style_contract(sql: str) -> None:
    """Raise TenantSafetyError (sql_contract_violation) on the first style violation."""
    violations = check_sql_style_contract(sql)
    if violations:
        first = violations[0]
        _abort(CODE_SQL_CONTRACT_VIOLATION, f"{first.rule}: {first.detail}", sql, violations)


def is_read_only_sql(sql: str) -> bool:
    """
    True only for a single SELECT/WITH statement.

    DML/DDL words anywhere in the raw text, including inside literals,
    make it not read-only. So does any ';'.
    """
    normalized = _lowered(sql)
    if not normalized:
        return False
    if ";" in sql:
        return False
    if not (normalized.startswith("select") or normalized.startswith("with")):
        return False
    raw = normalize_sql(sql.replace("'", " ")).lower()
    write_tokens = ("insert", "update", "delete", "merge", "upsert") + BANNED_TOKENS
    return not any(re.search(rf"\b{t}\b", raw) for t in write_tokens)


def assert_writable(sql: str, readonly: bool) -> None:
    """Raise ReadonlyModeError when readonly is on and sql would write."""
    if readonly and not is_read_only_sql(sql):
        logger.warning("Write refused in readonly mode: %s", normalize_sql(sql)[:200])
        raise ReadonlyModeError()


# ---------------------------------------------------------------------------
# Dialect helpers
# ---------------------------------------------------------------------------

TABLE_ALIASES = {
    "decision_events": "de",
    "receipt_imports": "ri",
    "inventory_items": "ii",
    "taste_signals": "ts",
    "taste_meal_scores": "tms",
}


def tenant_where(alias: str) -> str:
    """WHERE fragment for a single-table statement."""
    return f"{alias}.household_key = $1"


def tenant_and(alias: str) -> str:
    """Additional tenant predicate for each joined tenant table."""
    return f"AND {alias}.household_key = $1"


def tenant_conflict(*columns: str) -> str:
    """ON CONFLICT target with household_key first."""
    return f"ON CONFLICT ({', '.join((TENANT_COLUMN,) + columns)})"


def tenant_update_where(alias: str | None = None) -> str:
    if alias:
        return f"WHERE {alias}.household_key = $1"
    return "WHERE household_key = $1"
