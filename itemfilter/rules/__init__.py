"""itemfilter Rules System.

This module turns a filter file into executable item predicates:
- split_sections: Filter text to rule blocks
- ExpressionCompiler: Rule text to predicate
- ItemFilter: Ordered compiled rules with first-match-wins evaluation
- FilterManager: Published filter with build-then-swap reload

Rules decide whether an item is selected. A block that fails to compile is
reported and skipped; a rule that fails while evaluating ends the scan for
that item with no match.
"""

from .engine import (
    EvaluationError,
    ItemFilter,
    MatchResult,
    MatchStatus,
    Rule,
    RuleLoadError,
    load,
    matches,
)
from .expression import ExpressionCompiler, ParseError, Predicate, compile_predicate, normalize_expression
from .manager import FilterManager
from .sections import Section, split_sections, strip_comment

__all__ = [
    # Sections
    "Section",
    "split_sections",
    "strip_comment",
    # Expressions
    "ParseError",
    "Predicate",
    "ExpressionCompiler",
    "compile_predicate",
    "normalize_expression",
    # Engine
    "Rule",
    "RuleLoadError",
    "MatchStatus",
    "MatchResult",
    "EvaluationError",
    "ItemFilter",
    "load",
    "matches",
    # Manager
    "FilterManager",
]
