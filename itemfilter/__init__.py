"""itemfilter - Rule-based item filtering.

Loads a text file of boolean rules over item records, compiles each rule
once, and decides per item whether it should be picked up.

Example:
    >>> import itemfilter
    >>> rules = itemfilter.load("pickit.ifl")
    >>> itemfilter.matches(rules, itemfilter.ItemData(base_name="Chaos Orb"))
"""

from itemfilter.core.constants import ITEMFILTER_VERSION as __version__
from itemfilter.rules import (
    EvaluationError,
    ExpressionCompiler,
    FilterManager,
    ItemFilter,
    MatchResult,
    MatchStatus,
    ParseError,
    Rule,
    RuleLoadError,
    load,
    matches,
)
from itemfilter.schema import ItemData, ItemRarity, SchemaError, SocketInfo

__all__ = [
    "__version__",
    "ItemData",
    "ItemRarity",
    "SocketInfo",
    "SchemaError",
    "ExpressionCompiler",
    "ParseError",
    "EvaluationError",
    "Rule",
    "RuleLoadError",
    "MatchStatus",
    "MatchResult",
    "ItemFilter",
    "FilterManager",
    "load",
    "matches",
]
