#!/usr/bin/env python3
"""Rule loading and first-match-wins evaluation.

This module turns a filter file into an immutable :class:`ItemFilter`:
- Blocks that fail to compile are logged and skipped, never fatal
- Rules keep file order; the first matching rule decides
- A rule that raises while evaluating stops the scan with no match

Example:
    >>> item_filter = ItemFilter.load("pickit.ifl")
    >>> item_filter.matches(ItemData(base_name="Chaos Orb"))
    True
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional, Tuple, Union

from itemfilter.core.constants import (
    DEFAULT_IDENTITY_FIELD,
    FILE_ENCODING,
    FILE_ERRORS,
    ErrorCode,
    FilterError,
)
from itemfilter.core.logging import Logger, get_logger
from itemfilter.rules.expression import ExpressionCompiler, ParseError, Predicate
from itemfilter.rules.sections import split_sections


@dataclass(frozen=True)
class Rule:
    """A compiled filter entry."""

    query: str  # Comment-stripped text
    raw_query: str  # Original text, comments included
    predicate: Predicate = field(repr=False, compare=False)
    start_line: int = 0


@dataclass(frozen=True)
class RuleLoadError:
    """A block that failed to compile."""

    query: str
    raw_query: str
    start_line: int
    message: str
    position: Optional[int] = None


class MatchStatus(Enum):
    """Outcome of evaluating an item."""

    MATCHED = "matched"
    NO_MATCH = "no_match"
    ERROR = "error"


class EvaluationError(FilterError):
    """A rule raised while being evaluated against an item.

    The original exception is chained as ``__cause__``.
    """

    def __init__(self, rule: Rule, item_name: Any, cause: BaseException):
        super().__init__(
            f"Evaluation of line {rule.start_line} failed on item {item_name!r}: "
            f"{type(cause).__name__}: {cause}",
            ErrorCode.INVALID_INPUT,
        )
        self.rule = rule
        self.item_name = item_name
        self.__cause__ = cause


@dataclass(frozen=True)
class MatchResult:
    """Result of :meth:`ItemFilter.evaluate`."""

    status: MatchStatus
    rule: Optional[Rule] = None
    error: Optional[EvaluationError] = None

    @property
    def matched(self) -> bool:
        return self.status is MatchStatus.MATCHED


_NO_MATCH = MatchResult(MatchStatus.NO_MATCH)


class ItemFilter:
    """Immutable, ordered set of compiled rules.

    Instances are built once per load and replaced wholesale on reload, so
    any number of threads may evaluate items against one concurrently.
    """

    def __init__(
        self,
        rules: Iterable[Rule] = (),
        errors: Iterable[RuleLoadError] = (),
        source: Optional[str] = None,
        logger: Optional[Logger] = None,
        identity_field: str = DEFAULT_IDENTITY_FIELD,
    ):
        """Initialize filter.

        Args:
            rules: Compiled rules in evaluation order
            errors: Blocks that failed to compile
            source: Path the rules were loaded from
            logger: Logger for match and evaluation diagnostics
            identity_field: Item attribute named in diagnostics
        """
        self._rules: Tuple[Rule, ...] = tuple(rules)
        self._errors: Tuple[RuleLoadError, ...] = tuple(errors)
        self._source = source
        self._logger = logger or get_logger()
        self._identity_field = identity_field

    @classmethod
    def load(
        cls,
        path: Union[str, Path],
        compiler: Optional[ExpressionCompiler] = None,
        logger: Optional[Logger] = None,
        keep_comment_only: bool = False,
        identity_field: str = DEFAULT_IDENTITY_FIELD,
    ) -> "ItemFilter":
        """Load and compile a filter file.

        Args:
            path: Filter file path
            compiler: Expression compiler (default: ItemData schema)
            logger: Logger for diagnostics
            keep_comment_only: Report all-comment blocks as parse failures
            identity_field: Item attribute named in match diagnostics

        Returns:
            New filter; empty when no block compiled

        Raises:
            OSError: If the file cannot be read
        """
        # Universal newlines; only \r, \n and \r\n end a line
        with open(path, "r", encoding=FILE_ENCODING, errors=FILE_ERRORS) as f:
            lines = f.read().split("\n")

        return cls.from_lines(
            lines,
            source=str(path),
            compiler=compiler,
            logger=logger,
            keep_comment_only=keep_comment_only,
            identity_field=identity_field,
        )

    @classmethod
    def from_lines(
        cls,
        lines: Iterable[str],
        source: Optional[str] = None,
        compiler: Optional[ExpressionCompiler] = None,
        logger: Optional[Logger] = None,
        keep_comment_only: bool = False,
        identity_field: str = DEFAULT_IDENTITY_FIELD,
    ) -> "ItemFilter":
        """Compile filter text already split into lines.

        Args:
            lines: Filter file lines
            source: Name used in diagnostics
            compiler: Expression compiler (default: ItemData schema)
            logger: Logger for diagnostics
            keep_comment_only: Report all-comment blocks as parse failures
            identity_field: Item attribute named in match diagnostics

        Returns:
            New filter
        """
        compiler = compiler or ExpressionCompiler()
        logger = logger or get_logger()
        rules: List[Rule] = []
        errors: List[RuleLoadError] = []

        for section in split_sections(lines, keep_comment_only=keep_comment_only):
            try:
                predicate = compiler.compile(section.text)
            except ParseError as e:
                errors.append(
                    RuleLoadError(section.text, section.raw_text, section.start_line, e.message, e.position)
                )
                logger.error(
                    f"Error processing query on line # {section.start_line}: {e}",
                    query=section.raw_text,
                    line=section.start_line,
                    position=e.position,
                )
                continue
            except Exception as e:
                errors.append(RuleLoadError(section.text, section.raw_text, section.start_line, str(e)))
                logger.exception(
                    f"Error processing query on line # {section.start_line}",
                    e,
                    query=section.raw_text,
                    line=section.start_line,
                )
                continue

            rules.append(Rule(section.text, section.raw_text, predicate, section.start_line))

        name = Path(source).name if source else "<filter>"
        logger.info(f"Processed {name} with {len(rules)} queries", file=name, errors=len(errors))

        return cls(rules, errors, source=source, logger=logger, identity_field=identity_field)

    @property
    def rules(self) -> Tuple[Rule, ...]:
        return self._rules

    @property
    def errors(self) -> Tuple[RuleLoadError, ...]:
        return self._errors

    @property
    def source(self) -> Optional[str]:
        return self._source

    def _item_name(self, item: Any) -> Any:
        return getattr(item, self._identity_field, None) or repr(item)

    def evaluate(self, item: Any) -> MatchResult:
        """Evaluate rules in order against an item.

        The first rule returning true wins. A rule that raises ends the scan
        with an ERROR result; later rules are not tried.

        Args:
            item: Record to evaluate

        Returns:
            MatchResult describing the outcome
        """
        for rule in self._rules:
            try:
                matched = rule.predicate(item)
            except Exception as e:
                error = EvaluationError(rule, self._item_name(item), e)
                self._logger.error(
                    f"Evaluation Error! Line # {rule.start_line} Entry: '{rule.query.strip()}' "
                    f"Item {self._item_name(item)}",
                    error=f"{type(e).__name__}: {e}",
                )
                return MatchResult(MatchStatus.ERROR, rule, error)

            if matched:
                self._logger.info(
                    f"Matched line # {rule.start_line} Entry({rule.query.strip()}) "
                    f"on Item({self._item_name(item)})"
                )
                return MatchResult(MatchStatus.MATCHED, rule)

        return _NO_MATCH

    def matches(self, item: Any) -> bool:
        """Determine if any rule selects the item.

        Args:
            item: Record to evaluate

        Returns:
            True if the first deciding rule matched
        """
        return self.evaluate(item).matched

    def get_matching_rules(self, item: Any) -> List[Rule]:
        """Get every rule whose predicate accepts the item.

        Rules that raise are skipped. Used for explaining decisions; the
        match decision itself comes from :meth:`evaluate`.
        """
        matching = []
        for rule in self._rules:
            try:
                if rule.predicate(item):
                    matching.append(rule)
            except Exception as e:
                self._logger.debug(
                    f"Skipping line # {rule.start_line} while listing matches",
                    error=f"{type(e).__name__}: {e}",
                )
        return matching

    def __len__(self) -> int:
        """Return number of rules."""
        return len(self._rules)

    def __iter__(self) -> Iterator[Rule]:
        return iter(self._rules)

    def __repr__(self) -> str:
        return f"ItemFilter(source={self._source!r}, rules={len(self._rules)}, errors={len(self._errors)})"


def load(path: Union[str, Path], **kwargs) -> ItemFilter:
    """Load a filter file; see :meth:`ItemFilter.load`."""
    return ItemFilter.load(path, **kwargs)


def matches(item_filter: ItemFilter, item: Any) -> bool:
    """Check an item against a filter; see :meth:`ItemFilter.matches`."""
    return item_filter.matches(item)
