"""Formula engine for PacurHoja sheets.

Supports: =, +, -, *, /, ^, parentheses, cell refs (A1),
SUM(range), AVERAGE(range) and their Spanish names SUMA(range), PROMEDIO(range).

Results shown in cells:
  #CIRCULAR          the formula depends on itself
  #ERROR             division by zero or a non-finite result
  #FÓRMULA_INVÁLIDA  the substituted expression is not valid arithmetic

Text and empty cells read as 0 when referenced directly and are skipped by
SUM/AVERAGE. Error cells behave like text, except #CIRCULAR which spreads to
every formula that reads it.
"""

import logging
import math
import re
from collections import deque
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from pacurhoja import config
from pacurhoja.formats import format_number
from pacurhoja.models import CellResult, FormatTag, ResultKind

logger = logging.getLogger(__name__)

Bounds = Tuple[int, int]  # (max_rows, max_cols)


# ── Error types ───────────────────────────────────────────────────

class FormulaError(Exception):
    """Base for all formula errors. `kind` is the result the cell reports."""
    kind: ResultKind = ResultKind.INVALID_FORMULA

class FormulaSyntaxError(FormulaError):
    kind = ResultKind.INVALID_FORMULA

class MathDomainError(FormulaError):
    kind = ResultKind.MATH_ERROR

class CircularReferenceError(FormulaError):
    kind = ResultKind.CIRCULAR

class MalformedAddress(FormulaError, ValueError):
    kind = ResultKind.INVALID_FORMULA


# ── Addresses ─────────────────────────────────────────────────────

_ADDRESS_RE = re.compile(r'([A-Z]+)([0-9]+)')
_FUNC_RE = re.compile(r'\b(SUM|SUMA|AVERAGE|PROMEDIO)\(([^()]*)\)', re.IGNORECASE)
_BARE_REF_RE = re.compile(r'\b[A-Za-z]+[0-9]+\b')
_NUMBER_RE = re.compile(r'(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?')
_NUMERIC_TEXT_RE = re.compile(r'\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?\s*')

_AVERAGE_NAMES = ('AVERAGE', 'PROMEDIO')


def column_letters(n: int) -> str:
    """1->A, 26->Z, 27->AA, 703->AAA."""
    if n < 1:
        raise MalformedAddress(f"Column must be >= 1: {n}")
    letters = ""
    while n > 0:
        n, rem = divmod(n - 1, 26)
        letters = chr(rem + ord('A')) + letters
    return letters


def column_number(letters: str) -> int:
    """A->1, Z->26, AA->27."""
    n = 0
    for ch in letters:
        n = n * 26 + (ord(ch) - ord('A') + 1)
    return n


def encode(column: int, row: int) -> str:
    """(column=1, row=1) -> 'A1'."""
    if row < 1:
        raise MalformedAddress(f"Row must be >= 1: {row}")
    return f"{column_letters(column)}{row}"


def decode(address: str) -> Tuple[int, int]:
    """'A1' -> (column=1, row=1). Raises MalformedAddress on bad input."""
    m = _ADDRESS_RE.fullmatch(address) if isinstance(address, str) else None
    if not m:
        raise MalformedAddress(f"Bad cell reference: {address!r}")
    row = int(m.group(2))
    if row < 1:
        raise MalformedAddress(f"Row must be >= 1: {address}")
    return column_number(m.group(1)), row


def canonical(address: str) -> str:
    """'A01' -> 'A1'. Raises MalformedAddress on bad input."""
    return encode(*decode(address))


def in_bounds(address: str, bounds: Bounds) -> bool:
    try:
        col, row = decode(address)
    except MalformedAddress:
        return False
    max_rows, max_cols = bounds
    return row <= max_rows and col <= max_cols


def resolve_range(range_str: str, bounds: Optional[Bounds] = None) -> List[str]:
    """'A1:B3' -> addresses covering the rectangle, column-outer, row-inner.

    A single address is a range of one cell. Malformed specs yield no cells.
    With `bounds`, the rectangle is clipped to the grid.
    """
    parts = range_str.split(":")
    if len(parts) == 1:
        parts = parts * 2
    if len(parts) != 2:
        return []
    try:
        c1, r1 = decode(parts[0].strip())
        c2, r2 = decode(parts[1].strip())
    except MalformedAddress:
        return []
    min_col, max_col = min(c1, c2), max(c1, c2)
    min_row, max_row = min(r1, r2), max(r1, r2)
    if bounds is not None:
        max_row = min(max_row, bounds[0])
        max_col = min(max_col, bounds[1])
    return [
        encode(c, r)
        for c in range(min_col, max_col + 1)
        for r in range(min_row, max_row + 1)
    ]


def parse_number(text: str) -> Optional[float]:
    """Numeric value of literal cell content, or None for text."""
    if not text or not _NUMERIC_TEXT_RE.fullmatch(text):
        return None
    value = float(text)
    return value if math.isfinite(value) else None


def _literal(value: float) -> str:
    if not math.isfinite(value):
        raise MathDomainError("Non-finite operand")
    text = repr(float(value))
    return f"({text})" if value < 0 else text


# ── Reference extraction ─────────────────────────────────────────

def extract_refs(formula: str, bounds: Optional[Bounds] = None) -> Set[str]:
    """Return the set of addresses a formula reads."""
    body = formula[1:] if formula.startswith('=') else formula
    bounds = bounds or (config.MAX_ROWS, config.MAX_COLS)
    refs: Set[str] = set()

    for m in _FUNC_RE.finditer(body):
        refs.update(resolve_range(m.group(2).upper(), bounds))

    # Refs inside function calls were counted above
    reduced = _FUNC_RE.sub('0', body)
    for m in _BARE_REF_RE.finditer(reduced):
        try:
            refs.add(canonical(m.group(0).upper()))
        except MalformedAddress:
            continue

    return refs


# ── Dependency graph ──────────────────────────────────────────────

class DependencyGraph:
    """Tracks which formulas depend on which cells.

    forward:  formula address -> set of addresses it reads
    reverse:  address         -> set of formula addresses that read it
    """

    def __init__(self, formulas: Mapping[str, str], bounds: Optional[Bounds] = None):
        self.forward: Dict[str, Set[str]] = {}
        self.reverse: Dict[str, Set[str]] = {}

        for address, formula in formulas.items():
            refs = extract_refs(formula, bounds)
            self.forward[address] = refs
            for ref in refs:
                self.reverse.setdefault(ref, set()).add(address)

    def affected(self, changed: Iterable[str]) -> Set[str]:
        """Formula addresses that transitively read any of *changed*."""
        affected: Set[str] = set()
        queue = deque(changed)
        while queue:
            cell = queue.popleft()
            for dep in self.reverse.get(cell, ()):
                if dep not in affected:
                    affected.add(dep)
                    queue.append(dep)
        return affected

    def precedents(self, address: str) -> Set[str]:
        """Formula addresses that *address* transitively reads, itself excluded."""
        seen: Set[str] = set()
        queue = deque(self.forward.get(address, ()))
        while queue:
            cell = queue.popleft()
            if cell in seen or cell not in self.forward:
                continue
            seen.add(cell)
            queue.extend(self.forward[cell])
        seen.discard(address)
        return seen

    def topo_order(self, keys: Iterable[str]) -> List[str]:
        """Kahn's algorithm on a subset of formula addresses.

        Formulas involved in cycles are appended at the end
        (they will report #CIRCULAR during evaluation).
        """
        keys = set(keys)
        if not keys:
            return []

        in_degree: Dict[str, int] = {k: 0 for k in keys}
        adj: Dict[str, List[str]] = {k: [] for k in keys}
        for k in keys:
            for ref in self.forward.get(k, ()):
                if ref in keys and ref != k:
                    adj[ref].append(k)
                    in_degree[k] += 1

        queue = deque(sorted(k for k in keys if in_degree[k] == 0))
        result: List[str] = []
        while queue:
            node = queue.popleft()
            result.append(node)
            for neighbor in adj[node]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        done = set(result)
        result.extend(sorted(k for k in keys if k not in done))
        return result


# ── Arithmetic parser (recursive descent, no eval()) ──────────────

def _pow(base: float, exponent: float) -> float:
    try:
        result = base ** exponent
    except ZeroDivisionError:
        raise MathDomainError("Zero raised to a negative power")
    except OverflowError:
        raise MathDomainError("Numeric overflow")
    if isinstance(result, complex):
        raise MathDomainError("Result is not a real number")
    return result


class _Parser:
    """Parses and evaluates: + - * / ^, unary +/-, parentheses, numbers.

    ^ binds tightest and is right-associative; unary minus binds looser
    than ^, so -2^2 is -4.
    """
    __slots__ = ('text', 'pos')

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def _peek(self):
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1
        return self.text[self.pos] if self.pos < len(self.text) else None

    def _eat(self, expected=None):
        ch = self._peek()
        if ch is None:
            raise FormulaSyntaxError("Unexpected end of expression")
        if expected and ch != expected:
            raise FormulaSyntaxError(f"Expected '{expected}', got '{ch}'")
        self.pos += 1
        return ch

    def _number(self) -> float:
        ch = self._peek()
        m = _NUMBER_RE.match(self.text, self.pos)
        if not m:
            raise FormulaSyntaxError(
                f"Expected number at pos {self.pos}"
                + (f", got '{ch}'" if ch is not None else "")
            )
        self.pos = m.end()
        return float(m.group(0))

    def _primary(self) -> float:
        if self._peek() == '(':
            self._eat('(')
            val = self._expr()
            self._eat(')')
            return val
        return self._number()

    def _power(self) -> float:
        base = self._primary()
        if self._peek() == '^':
            self._eat()
            return _pow(base, self._unary())
        return base

    def _unary(self) -> float:
        if self._peek() == '-':
            self._eat()
            return -self._unary()
        if self._peek() == '+':
            self._eat()
            return self._unary()
        return self._power()

    def _term(self) -> float:
        left = self._unary()
        while self._peek() in ('*', '/'):
            op = self._eat()
            right = self._unary()
            if op == '*':
                left *= right
            else:
                if right == 0:
                    raise MathDomainError("Division by zero")
                left /= right
        return left

    def _expr(self) -> float:
        left = self._term()
        while self._peek() in ('+', '-'):
            op = self._eat()
            right = self._term()
            left = left + right if op == '+' else left - right
        return left

    def parse(self) -> float:
        if self._peek() is None:
            raise FormulaSyntaxError("Empty expression")
        result = self._expr()
        if self._peek() is not None:
            raise FormulaSyntaxError(f"Unexpected '{self.text[self.pos]}' at pos {self.pos}")
        if not math.isfinite(result):
            raise MathDomainError("Non-finite result")
        return result


def evaluate_arithmetic(expression: str) -> float:
    """Evaluate a reference-free arithmetic expression."""
    return _Parser(expression).parse()


# ── Formula evaluation ────────────────────────────────────────────

class _Evaluator:
    """Resolves cells of one snapshot. `cache` is optional memoization."""

    def __init__(self, cells: Mapping[str, str], formats: Mapping[str, FormatTag],
                 bounds: Bounds, cache: Optional[Dict[str, CellResult]]):
        self.cells = cells
        self.formats = formats
        self.bounds = bounds
        self.cache = cache

    def evaluate(self, address: str, path: Tuple[str, ...]) -> CellResult:
        if address in path:
            logger.debug("Circular reference at %s via %s", address, " -> ".join(path))
            return CellResult.error(ResultKind.CIRCULAR)
        if self.cache is not None and address in self.cache:
            return self.cache[address]
        result = self._compute(address, path)
        if self.cache is not None:
            self.cache[address] = result
        return result

    def _compute(self, address: str, path: Tuple[str, ...]) -> CellResult:
        raw = self.cells.get(address) or ""
        if not raw.startswith('='):
            return CellResult.value(raw, parse_number(raw))

        try:
            expr = self._substitute(raw[1:].strip(), path + (address,))
            value = evaluate_arithmetic(expr)
        except FormulaError as e:
            logger.debug("%s evaluated to %s: %s", address, e.kind.value, e)
            return CellResult.error(e.kind)
        try:
            display = format_number(value, self.formats.get(address))
        except OverflowError as e:
            logger.debug("%s evaluated to %s: %s", address, ResultKind.MATH_ERROR.value, e)
            return CellResult.error(ResultKind.MATH_ERROR)
        return CellResult.value(display, value)

    def _operand(self, ref: str, path: Tuple[str, ...]) -> Optional[float]:
        result = self.evaluate(ref, path)
        if result.kind == ResultKind.CIRCULAR:
            raise CircularReferenceError(f"{ref} is part of a cycle")
        return result.number

    def _substitute(self, body: str, path: Tuple[str, ...]) -> str:
        """Replace function calls, then bare refs, with numeric literals."""

        def _func_sub(m):
            name = m.group(1).upper()
            values = []
            for ref in resolve_range(m.group(2).upper(), self.bounds):
                number = self._operand(ref, path)
                if number is not None:
                    values.append(number)
            if not values:
                return '0'
            total = sum(values)
            if name in _AVERAGE_NAMES:
                total /= len(values)
            return _literal(total)

        expr = _FUNC_RE.sub(_func_sub, body)

        def _ref_sub(m):
            try:
                ref = canonical(m.group(0).upper())
            except MalformedAddress:
                return '0'
            number = self._operand(ref, path)
            # Text and error cells read as 0 in arithmetic
            return _literal(number) if number is not None else '0'

        # '^' is already the parser's power operator
        return _BARE_REF_RE.sub(_ref_sub, expr)

    def warm(self, address: str, graph: DependencyGraph, path: Tuple[str, ...]) -> None:
        """Evaluate the precedents of *address* in dependency order.

        Keeps recursion shallow on long reference chains; needs a cache.
        A result under guard *path* equals the one reached through any longer
        chain starting with *path*, so the cached entries stay valid.
        """
        for dep in graph.topo_order(graph.precedents(address)):
            self.evaluate(dep, path)


def _safe_evaluate(evaluator: _Evaluator, address: str, path: Tuple[str, ...],
                   graph: Optional[DependencyGraph] = None) -> CellResult:
    try:
        if graph is not None:
            evaluator.warm(address, graph, path)
        return evaluator.evaluate(address, path)
    except RecursionError:
        logger.warning("Reference chain too deep while evaluating %s", address)
        return CellResult.error(ResultKind.INVALID_FORMULA)


def _formulas(cells: Mapping[str, str]) -> Dict[str, str]:
    return {a: raw for a, raw in cells.items() if raw and raw.startswith('=')}


def evaluate(cells: Mapping[str, str], address: str,
             formats: Optional[Mapping[str, FormatTag]] = None, *,
             path: Iterable[str] = (), bounds: Optional[Bounds] = None,
             memoize: bool = True,
             cache: Optional[Dict[str, CellResult]] = None) -> CellResult:
    """Evaluate one cell of a snapshot.

    cells:    address -> raw content; missing addresses are empty
    formats:  address -> FormatTag for display
    path:     addresses already being resolved (cycle guard)
    memoize:  share *cache* with the caller; never changes a result
    cache:    caller-owned memo shared across calls on the same snapshot

    Precedents are always resolved once each in dependency order, so a long
    reference chain gives the same result with or without *memoize*. With a
    guard path or memoize=False that work goes to a private per-call cache.
    """
    bounds = bounds or (config.MAX_ROWS, config.MAX_COLS)
    if in_bounds(address, (math.inf, math.inf)):
        address = canonical(address)
    path = tuple(path)
    if path or not memoize or cache is None:
        # Results under a guard path are not valid for other calls
        cache = {}
    evaluator = _Evaluator(cells, formats or {}, bounds, cache)
    graph = None
    if (cells.get(address) or "").startswith('='):
        graph = DependencyGraph(_formulas(cells), bounds)
    return _safe_evaluate(evaluator, address, path, graph)


# ── Sheet recalculation ───────────────────────────────────────────

def recalculate(cells: Mapping[str, str],
                formats: Optional[Mapping[str, FormatTag]] = None, *,
                changed: Optional[Iterable[str]] = None,
                previous: Optional[Mapping[str, CellResult]] = None,
                bounds: Optional[Bounds] = None) -> Dict[str, CellResult]:
    """Compute a result for every non-empty cell.

    changed=None or previous=None: full recalculation.
    changed={..}, previous={..}: only cells in *changed* and the formulas
    that transitively read them are recomputed; other results are taken from
    *previous*, which must be the results of the prior snapshot.
    """
    bounds = bounds or (config.MAX_ROWS, config.MAX_COLS)
    present = {a: raw for a, raw in cells.items() if raw}
    formulas = _formulas(present)
    graph = DependencyGraph(formulas, bounds)

    if changed is None or previous is None:
        targets = set(present)
        cache: Dict[str, CellResult] = {}
    else:
        changed = set(changed)
        targets = (graph.affected(changed) | changed) & set(present)
        targets |= {a for a in present if a not in previous}
        cache = {a: r for a, r in previous.items() if a in present and a not in targets}

    evaluator = _Evaluator(cells, formats or {}, bounds, cache)
    ordered = graph.topo_order(t for t in targets if t in formulas)
    ordered.extend(sorted(t for t in targets if t not in formulas))

    for address in ordered:
        try:
            cache[address] = _safe_evaluate(evaluator, address, ())
        except Exception:
            # One broken cell must not stop the pass
            logger.exception("Unexpected failure evaluating %s", address)
            cache[address] = CellResult.error(ResultKind.INVALID_FORMULA)

    logger.debug("Recalculated %d of %d cells", len(targets), len(present))
    return {a: cache[a] for a in present}
