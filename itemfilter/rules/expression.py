#!/usr/bin/env python3
"""Compilation of rule expressions into item predicates.

Rule text uses a small LINQ-flavoured expression language:
- Field references by simple name (``BaseName``, ``SocketInfo.LargestLinkSize``)
- Boolean connectives ``and``/``or``/``not`` and ``&&``/``||``/``!``
- Comparisons ``== = != <> < <= > >= in``, arithmetic ``+ - * / %``
- String and collection helpers (``BaseName.Contains("Orb")``, ``Mods.Count``)
- Functions ``len``, ``abs``, ``min``, ``max``, ``round``, ``int``, ``float``,
  ``str`` and ``matches(text, pattern)``
- Enum members (``ItemRarity.Unique``, or ``Rarity == "Unique"``)

The text is rewritten onto Python expression syntax, parsed with :mod:`ast`
and checked against the record schema. Each node is turned into a closure
once, so evaluating a predicate never touches the source text again.

Example:
    >>> predicate = compile_predicate('BaseName == "Chaos Orb" && StackSize >= 10')
    >>> predicate(ItemData(base_name="Chaos Orb", stack_size=20))
    True
"""

import ast
import operator
import re
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

from itemfilter.core.constants import ErrorCode, FilterError
from itemfilter.schema import (
    ItemData,
    ItemRarity,
    RecordSchema,
    enum_member,
    is_record_type,
    normalize_name,
    schema_for,
)

Predicate = Callable[[Any], bool]


class ParseError(FilterError):
    """Malformed rule expression.

    Attributes:
        position: 0-based index into the rule text, or None when unknown
    """

    def __init__(self, message: str, position: Optional[int] = None):
        super().__init__(message, ErrorCode.INVALID_INPUT)
        self.position = position

    def __str__(self) -> str:
        if self.position is None:
            return self.message
        return f"{self.message} (at index {self.position})"


# Case-insensitive word rewrites
_KEYWORDS = {
    "true": "True",
    "false": "False",
    "null": "None",
    "and": "and",
    "or": "or",
    "not": "not",
    "in": "in",
    "is": "is",
    "if": "if",
    "else": "else",
}

# Longest first
_OPERATORS = (
    ("&&", " and "),
    ("||", " or "),
    ("<>", "!="),
    ("==", "=="),
    ("!=", "!="),
    ("<=", "<="),
    (">=", ">="),
    ("!", " not "),
    ("=", "=="),
)


def normalize_expression(text: str) -> Tuple[str, List[int]]:
    """Rewrite rule text into Python expression syntax.

    Args:
        text: Comment-stripped rule text, possibly spanning several lines

    Returns:
        ``(source, offsets)`` where ``offsets[i]`` is the index in ``text``
        that produced ``source[i]``; one trailing entry maps end of input

    Raises:
        ParseError: On an unterminated string literal
    """
    out: List[str] = []
    offsets: List[int] = []

    def copy(start: int, end: int) -> None:
        out.append(text[start:end])
        offsets.extend(range(start, end))

    def replace(replacement: str, position: int) -> None:
        out.append(replacement)
        offsets.extend([position] * len(replacement))

    i = 0
    n = len(text)
    while i < n:
        ch = text[i]

        if ch in "\"'":
            j = i + 1
            while j < n and text[j] != ch and text[j] != "\n":
                j += 2 if text[j] == "\\" else 1
            if j >= n or text[j] != ch:
                raise ParseError("Unterminated string literal", i)
            copy(i, j + 1)
            i = j + 1
            continue

        if ch.isalpha() or ch == "_":
            j = i + 1
            while j < n and (text[j].isalnum() or text[j] == "_"):
                j += 1
            word = text[i:j]
            keyword = _KEYWORDS.get(word.lower())
            # Keep member names such as ItemRarity.NONE intact
            if keyword is not None and not text[:i].rstrip().endswith("."):
                replace(keyword, i)
            else:
                copy(i, j)
            i = j
            continue

        if ch.isdigit():
            j = i + 1
            while j < n and (text[j].isalnum() or text[j] in "._"):
                j += 1
            copy(i, j)
            i = j
            continue

        if ch in "\r\n\t":
            replace(" ", i)
            i += 1
            continue

        for symbol, replacement in _OPERATORS:
            if text.startswith(symbol, i):
                # "=" only stands alone; "<", ">" and "!" pair with it above
                replace(replacement, i)
                i += len(symbol)
                break
        else:
            copy(i, i + 1)
            i += 1

    source = "".join(out)
    offsets.append(n)

    lead = len(source) - len(source.lstrip())
    return source[lead:], offsets[lead:]


class _Node(NamedTuple):
    """A compiled sub-expression."""

    fn: Callable[[Any], Any]
    kind: Optional[type]  # Static result type, None when unknown
    constant: bool = False


def _constant(value: Any) -> Callable[[Any], Any]:
    return lambda item: value


def _is_numeric(kind: Optional[type]) -> bool:
    return kind is not None and issubclass(kind, (int, float))


def _is_text(kind: Optional[type]) -> bool:
    return kind is not None and issubclass(kind, str)


def _type_name(kind: Optional[type]) -> str:
    return "object" if kind is None else kind.__name__


def _incompatible(left: Optional[type], right: Optional[type]) -> bool:
    """True when one operand is text and the other is numeric."""
    return (_is_numeric(left) and _is_text(right)) or (_is_text(left) and _is_numeric(right))


def _regex_search(text: Any, pattern: Any) -> bool:
    return re.search(pattern, text) is not None


# name -> (implementation, result kind, min args, max args)
_FUNCTIONS: Dict[str, Tuple[Callable[..., Any], Optional[type], int, int]] = {
    "len": (len, int, 1, 1),
    "abs": (abs, None, 1, 1),
    "min": (min, None, 1, 8),
    "max": (max, None, 1, 8),
    "round": (round, None, 1, 2),
    "int": (int, int, 1, 1),
    "float": (float, float, 1, 1),
    "str": (str, str, 1, 1),
    "matches": (_regex_search, bool, 2, 2),
}

_STRING_METHODS: Dict[str, Tuple[Callable[..., Any], Optional[type], int, int]] = {
    "contains": (lambda s, sub: sub in s, bool, 1, 1),
    "startswith": (lambda s, prefix: s.startswith(prefix), bool, 1, 1),
    "endswith": (lambda s, suffix: s.endswith(suffix), bool, 1, 1),
    "equals": (lambda s, other: s == other, bool, 1, 1),
    "tolower": (str.lower, str, 0, 0),
    "lower": (str.lower, str, 0, 0),
    "toupper": (str.upper, str, 0, 0),
    "upper": (str.upper, str, 0, 0),
    "trim": (str.strip, str, 0, 0),
    "strip": (str.strip, str, 0, 0),
}

_SEQUENCE_METHODS: Dict[str, Tuple[Callable[..., Any], Optional[type], int, int]] = {
    "contains": (lambda seq, value: value in seq, bool, 1, 1),
    "any": (lambda seq: len(seq) > 0, bool, 0, 0),
    "count": (len, int, 0, 0),
}

_MAPPING_METHODS: Dict[str, Tuple[Callable[..., Any], Optional[type], int, int]] = {
    "containskey": (lambda mapping, key: key in mapping, bool, 1, 1),
    "get": (lambda mapping, key, default=None: mapping.get(key, default), None, 1, 2),
}

_BINARY_OPERATORS = {
    ast.Add: ("+", operator.add),
    ast.Sub: ("-", operator.sub),
    ast.Mult: ("*", operator.mul),
    ast.Div: ("/", operator.truediv),
    ast.Mod: ("%", operator.mod),
}

_COMPARISONS = {
    ast.Eq: ("==", operator.eq),
    ast.NotEq: ("!=", operator.ne),
    ast.Lt: ("<", operator.lt),
    ast.LtE: ("<=", operator.le),
    ast.Gt: (">", operator.gt),
    ast.GtE: (">=", operator.ge),
    ast.In: ("in", lambda a, b: a in b),
    ast.NotIn: ("not in", lambda a, b: a not in b),
    ast.Is: ("is", operator.is_),
    ast.IsNot: ("is not", operator.is_not),
}


class _PredicateBuilder(ast.NodeVisitor):
    """Turns a parsed expression into closures over a record.

    Only the node types with a ``visit_`` method are accepted; anything else
    (lambdas, comprehensions, attribute access to private names...) is a
    ParseError.
    """

    def __init__(self, schema: RecordSchema, types: Dict[str, type], source: str, offsets: Sequence[int]):
        self.schema = schema
        self.types = types
        self.source = source
        self.offsets = offsets

    def position(self, column: Optional[int]) -> Optional[int]:
        """Map a column of the rewritten source back to the rule text."""
        if column is None:
            return None
        column = max(0, min(column, len(self.offsets) - 1))
        return self.offsets[column]

    def error(self, message: str, node: Optional[ast.AST] = None) -> ParseError:
        column = None
        if node is not None and hasattr(node, "col_offset"):
            # ast columns are UTF-8 byte offsets
            column = len(self.source.encode("utf-8")[: node.col_offset].decode("utf-8", "ignore"))
        return ParseError(message, self.position(column))

    def visit(self, node: ast.AST) -> _Node:
        visitor = getattr(self, "visit_" + node.__class__.__name__, None)
        if visitor is None:
            raise self.error(f"Unsupported expression element '{node.__class__.__name__}'", node)
        return visitor(node)

    def visit_Expression(self, node: ast.Expression) -> _Node:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> _Node:
        if node.value is not None and not isinstance(node.value, (str, int, float, bool)):
            raise self.error(f"Unsupported constant type '{type(node.value).__name__}'", node)
        return _Node(_constant(node.value), type(node.value), True)

    def visit_Name(self, node: ast.Name) -> _Node:
        info = self.schema.resolve(node.id)
        if info is not None:
            return _Node(operator.attrgetter(info.name), info.kind)

        folded = normalize_name(node.id)
        if folded in self.types:
            return _Node(_constant(self.types[folded]), type, True)
        if folded == "it":
            return _Node(lambda item: item, self.schema.record_type)

        raise self.error(f"Unknown identifier '{node.id}' in type '{self.schema.type_name}'", node)

    def visit_Attribute(self, node: ast.Attribute) -> _Node:
        attr = node.attr
        if attr.startswith("_"):
            raise self.error(f"Access to '{attr}' is not allowed", node)

        base = self.visit(node.value)

        if base.kind is type:
            enum_type = base.fn(None)
            member = enum_member(enum_type, attr)
            if member is None:
                raise self.error(f"'{attr}' is not a member of '{enum_type.__name__}'", node)
            return _Node(_constant(member), enum_type, True)

        get_base = base.fn

        if is_record_type(base.kind):
            info = schema_for(base.kind).resolve(attr)
            if info is None:
                raise self.error(f"No field '{attr}' exists in type '{base.kind.__name__}'", node)
            get_attr = operator.attrgetter(info.name)
            return _Node(lambda item: get_attr(get_base(item)), info.kind)

        if base.kind in (str, tuple, dict) and normalize_name(attr) in ("length", "count"):
            return _Node(lambda item: len(get_base(item)), int)

        if base.kind is None:
            return _Node(lambda item: getattr(get_base(item), attr), None)

        raise self.error(f"No property '{attr}' exists in type '{_type_name(base.kind)}'", node)

    def visit_Call(self, node: ast.Call) -> _Node:
        if node.keywords:
            raise self.error("Keyword arguments are not supported", node)

        if isinstance(node.func, ast.Name):
            return self._function(node, node.func.id)
        if isinstance(node.func, ast.Attribute):
            return self._method(node, node.func)

        raise self.error("Only functions and methods can be called", node)

    def _arguments(self, node: ast.Call, name: str, min_args: int, max_args: int) -> List[_Node]:
        if not min_args <= len(node.args) <= max_args:
            expected = str(min_args) if min_args == max_args else f"{min_args} to {max_args}"
            raise self.error(f"'{name}' takes {expected} argument(s), {len(node.args)} given", node)
        return [self.visit(arg) for arg in node.args]

    def _function(self, node: ast.Call, name: str) -> _Node:
        folded = normalize_name(name)
        if folded not in _FUNCTIONS:
            raise self.error(f"Unknown function '{name}'", node)

        impl, kind, min_args, max_args = _FUNCTIONS[folded]
        args = self._arguments(node, name, min_args, max_args)

        if folded == "matches":
            return self._regex(node, args)

        if kind is None and args and all(_is_numeric(arg.kind) for arg in args):
            if folded == "round":
                kind = int if len(args) == 1 else float
            else:
                kind = float if any(issubclass(arg.kind, float) for arg in args) else int

        fns = tuple(arg.fn for arg in args)
        return _Node(lambda item: impl(*[fn(item) for fn in fns]), kind)

    def _regex(self, node: ast.Call, args: List[_Node]) -> _Node:
        text, pattern = args
        get_text = text.fn

        if pattern.constant:
            try:
                compiled = re.compile(pattern.fn(None))
            except (re.error, TypeError) as e:
                raise self.error(f"Invalid regular expression: {e}", node.args[1]) from None
            return _Node(lambda item: compiled.search(get_text(item)) is not None, bool)

        get_pattern = pattern.fn
        return _Node(lambda item: _regex_search(get_text(item), get_pattern(item)), bool)

    def _method(self, node: ast.Call, func: ast.Attribute) -> _Node:
        name = func.attr
        if name.startswith("_"):
            raise self.error(f"Access to '{name}' is not allowed", func)

        receiver = self.visit(func.value)
        kind = receiver.kind

        if _is_text(kind):
            table = _STRING_METHODS
        elif kind is tuple:
            table = _SEQUENCE_METHODS
        elif kind is dict:
            table = _MAPPING_METHODS
        elif kind is None:
            args = [self.visit(arg) for arg in node.args]
            fns = tuple(arg.fn for arg in args)
            get_receiver = receiver.fn
            return _Node(lambda item: getattr(get_receiver(item), name)(*[fn(item) for fn in fns]), None)
        else:
            table = {}

        folded = normalize_name(name)
        if folded not in table:
            raise self.error(f"No applicable method '{name}' exists in type '{_type_name(kind)}'", func)

        impl, result_kind, min_args, max_args = table[folded]
        args = self._arguments(node, name, min_args, max_args)

        if table is _STRING_METHODS:
            for arg, arg_node in zip(args, node.args):
                if arg.kind is not None and not _is_text(arg.kind):
                    raise self.error(
                        f"Argument of '{name}' must be of type 'str', not '{_type_name(arg.kind)}'", arg_node
                    )

        get_receiver = receiver.fn
        fns = tuple(arg.fn for arg in args)
        return _Node(lambda item: impl(get_receiver(item), *[fn(item) for fn in fns]), result_kind)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> _Node:
        operand = self.visit(node.operand)
        get_operand = operand.fn

        if isinstance(node.op, ast.Not):
            return _Node(lambda item: not get_operand(item), bool)

        if isinstance(node.op, (ast.USub, ast.UAdd)):
            symbol = "-" if isinstance(node.op, ast.USub) else "+"
            if operand.kind is not None and not _is_numeric(operand.kind):
                raise self.error(
                    f"Operator '{symbol}' incompatible with operand type '{_type_name(operand.kind)}'", node
                )
            kind = None
            if operand.kind is not None:
                kind = float if issubclass(operand.kind, float) else int
            if isinstance(node.op, ast.USub):
                return _Node(lambda item: -get_operand(item), kind)
            return _Node(lambda item: +get_operand(item), kind)

        raise self.error(f"Unsupported operator '{node.op.__class__.__name__}'", node)

    def visit_BoolOp(self, node: ast.BoolOp) -> _Node:
        fns = tuple(self.visit(value).fn for value in node.values)

        if isinstance(node.op, ast.And):
            return _Node(lambda item: all(fn(item) for fn in fns), bool)
        return _Node(lambda item: any(fn(item) for fn in fns), bool)

    def visit_BinOp(self, node: ast.BinOp) -> _Node:
        if type(node.op) not in _BINARY_OPERATORS:
            raise self.error(f"Unsupported operator '{node.op.__class__.__name__}'", node)

        symbol, op = _BINARY_OPERATORS[type(node.op)]
        left = self.visit(node.left)
        right = self.visit(node.right)

        kind: Optional[type] = None
        if left.kind is not None and right.kind is not None:
            if _is_numeric(left.kind) and _is_numeric(right.kind):
                floats = issubclass(left.kind, float) or issubclass(right.kind, float)
                kind = float if floats or symbol == "/" else int
            elif symbol == "+" and left.kind is right.kind and left.kind in (str, tuple):
                kind = left.kind
            else:
                raise self.error(
                    f"Operator '{symbol}' incompatible with operand types "
                    f"'{_type_name(left.kind)}' and '{_type_name(right.kind)}'",
                    node,
                )

        get_left, get_right = left.fn, right.fn
        return _Node(lambda item: op(get_left(item), get_right(item)), kind)

    def _coerce_enum(self, enum_type: type, other: _Node, node: ast.AST) -> _Node:
        """Resolve string constants compared with an enum field to members."""
        if not other.constant:
            return other

        value = other.fn(None)

        def member(name: Any) -> Any:
            if not isinstance(name, str):
                return name
            found = enum_member(enum_type, name)
            if found is None:
                raise self.error(f"'{name}' is not a member of '{enum_type.__name__}'", node)
            return found

        if isinstance(value, str):
            return _Node(_constant(member(value)), enum_type, True)
        if isinstance(value, tuple):
            return _Node(_constant(tuple(member(v) for v in value)), tuple, True)
        if isinstance(value, frozenset):
            return _Node(_constant(frozenset(member(v) for v in value)), tuple, True)
        return other

    def visit_Compare(self, node: ast.Compare) -> _Node:
        operands = [self.visit(node.left)] + [self.visit(c) for c in node.comparators]
        ast_operands = [node.left] + list(node.comparators)
        ops = []

        for index, op_node in enumerate(node.ops):
            if type(op_node) not in _COMPARISONS:
                raise self.error(f"Unsupported comparison '{op_node.__class__.__name__}'", node)
            symbol, op = _COMPARISONS[type(op_node)]
            left, right = operands[index], operands[index + 1]

            if left.kind is not None and issubclass(left.kind, Enum):
                right = operands[index + 1] = self._coerce_enum(left.kind, right, ast_operands[index + 1])
            elif right.kind is not None and issubclass(right.kind, Enum) and symbol not in ("in", "not in"):
                left = operands[index] = self._coerce_enum(right.kind, left, ast_operands[index])

            if symbol in ("in", "not in"):
                if right.kind is not None and not (_is_text(right.kind) or right.kind in (tuple, dict)):
                    raise self.error(
                        f"Operator '{symbol}' requires a collection, not '{_type_name(right.kind)}'", node
                    )
                if _is_text(right.kind) and left.kind is not None and not _is_text(left.kind):
                    raise self.error(
                        f"Operator '{symbol}' incompatible with operand types "
                        f"'{_type_name(left.kind)}' and 'str'",
                        node,
                    )
            elif symbol not in ("is", "is not") and _incompatible(left.kind, right.kind):
                raise self.error(
                    f"Operator '{symbol}' incompatible with operand types "
                    f"'{_type_name(left.kind)}' and '{_type_name(right.kind)}'",
                    node,
                )
            ops.append(op)

        fns = tuple(operand.fn for operand in operands)

        if len(ops) == 1:
            op, get_left, get_right = ops[0], fns[0], fns[1]
            return _Node(lambda item: op(get_left(item), get_right(item)), bool)

        pairs = tuple(zip(ops, fns[1:]))
        first = fns[0]

        def compare(item: Any) -> bool:
            left = first(item)
            for op, get_right in pairs:
                right = get_right(item)
                if not op(left, right):
                    return False
                left = right
            return True

        return _Node(compare, bool)

    def visit_IfExp(self, node: ast.IfExp) -> _Node:
        test, body, orelse = self.visit(node.test), self.visit(node.body), self.visit(node.orelse)
        get_test, get_body, get_orelse = test.fn, body.fn, orelse.fn
        kind = body.kind if body.kind is orelse.kind else None
        return _Node(lambda item: get_body(item) if get_test(item) else get_orelse(item), kind)

    def visit_Subscript(self, node: ast.Subscript) -> _Node:
        if isinstance(node.slice, ast.Slice):
            raise self.error("Slices are not supported", node)

        value = self.visit(node.value)
        if value.kind is not None and not (_is_text(value.kind) or value.kind in (tuple, dict)):
            raise self.error(f"Cannot index into type '{_type_name(value.kind)}'", node)

        index = self.visit(node.slice)
        get_value, get_index = value.fn, index.fn
        kind = str if _is_text(value.kind) else None
        return _Node(lambda item: get_value(item)[get_index(item)], kind)

    def _collection(self, node: ast.AST, elements: List[ast.expr], factory: Callable[[Iterable], Any]) -> _Node:
        items = [self.visit(element) for element in elements]
        if all(item.constant for item in items):
            return _Node(_constant(factory(item.fn(None) for item in items)), tuple, True)
        fns = tuple(item.fn for item in items)
        return _Node(lambda item: factory(fn(item) for fn in fns), tuple)

    def visit_List(self, node: ast.List) -> _Node:
        return self._collection(node, node.elts, tuple)

    def visit_Tuple(self, node: ast.Tuple) -> _Node:
        return self._collection(node, node.elts, tuple)

    def visit_Set(self, node: ast.Set) -> _Node:
        return self._collection(node, node.elts, frozenset)


class ExpressionCompiler:
    """Compiles rule text into predicates over one record type.

    Example:
        >>> compiler = ExpressionCompiler(ItemData)
        >>> is_unique = compiler.compile("Rarity == ItemRarity.Unique")
    """

    def __init__(self, item_type: type = ItemData, types: Iterable[type] = (ItemRarity,)):
        """Initialize compiler.

        Args:
            item_type: Record type rules are evaluated against
            types: Enum types rules may name (``ItemRarity.Unique``)

        Raises:
            TypeError: If a named type is not an Enum
        """
        self.item_type = item_type
        self.schema = schema_for(item_type)
        self.types: Dict[str, type] = {}
        for named in types:
            if not (isinstance(named, type) and issubclass(named, Enum)):
                raise TypeError(f"Only Enum types can be named in rules, got {named!r}")
            self.types[normalize_name(named.__name__)] = named

    def compile(self, text: str) -> Predicate:
        """Compile rule text into a predicate.

        Args:
            text: Comment-stripped rule text

        Returns:
            Function from a record to bool

        Raises:
            ParseError: On malformed syntax, unknown names or type mismatches
        """
        source, offsets = normalize_expression(text)
        if not source.strip():
            raise ParseError("Empty expression", 0)

        try:
            tree = ast.parse(source, mode="eval")
        except SyntaxError as e:
            column = e.offset - 1 if e.offset else None
            builder = _PredicateBuilder(self.schema, self.types, source, offsets)
            raise ParseError(f"Syntax error: {e.msg}", builder.position(column)) from None
        except ValueError as e:
            raise ParseError(f"Syntax error: {e}", None) from None

        root = _PredicateBuilder(self.schema, self.types, source, offsets).visit(tree)

        if root.kind is not None and not issubclass(root.kind, bool):
            raise ParseError(f"Expression of type '{_type_name(root.kind)}' expected to be of type 'bool'", 0)

        evaluate = root.fn

        def predicate(item: Any) -> bool:
            return bool(evaluate(item))

        return predicate


_default_compilers: Dict[type, ExpressionCompiler] = {}


def compile_predicate(text: str, item_type: type = ItemData) -> Predicate:
    """Compile rule text with a shared compiler for ``item_type``."""
    compiler = _default_compilers.get(item_type)
    if compiler is None:
        compiler = _default_compilers[item_type] = ExpressionCompiler(item_type)
    return compiler.compile(text)
