#!/usr/bin/env python3
"""Tests for loading filters and first-match-wins evaluation."""

import logging

import pytest

from itemfilter.core.constants import ErrorCode
from itemfilter.rules.engine import (
    EvaluationError,
    ItemFilter,
    MatchResult,
    MatchStatus,
    Rule,
    RuleLoadError,
    load,
    matches,
)
from itemfilter.rules.expression import ExpressionCompiler
from itemfilter.schema import ItemData, ItemRarity

FILTER_TEXT = """\
// Currency
BaseName == "Chaos Orb" // test

Rarity == ItemRarity.Unique &&
    !IsCorrupted

SocketInfo.LargestLinkSize >= 6
"""


class TestRule:
    """Tests for Rule dataclass."""

    def test_creation(self):
        """Test creating Rule."""
        rule = Rule("true\n", "true", lambda item: True, 4)

        assert rule.query == "true\n"
        assert rule.raw_query == "true"
        assert rule.start_line == 4
        assert rule.predicate(None) is True

    def test_equality_ignores_predicate(self):
        """Test rules compare by text and line only."""
        first = Rule("a", "a", lambda item: True, 1)
        second = Rule("a", "a", lambda item: False, 1)

        assert first == second

    def test_immutable(self):
        """Test rules cannot be modified."""
        rule = Rule("a", "a", lambda item: True, 1)

        with pytest.raises(AttributeError):
            rule.start_line = 2


class TestMatchResult:
    """Tests for MatchResult."""

    def test_matched_property(self):
        """Test only MATCHED counts as a match."""
        assert MatchResult(MatchStatus.MATCHED).matched is True
        assert MatchResult(MatchStatus.NO_MATCH).matched is False
        assert MatchResult(MatchStatus.ERROR).matched is False

    def test_status_values(self):
        """Test status values."""
        assert MatchStatus.MATCHED.value == "matched"
        assert MatchStatus.NO_MATCH.value == "no_match"
        assert MatchStatus.ERROR.value == "error"


class TestLoad:
    """Tests for ItemFilter.load."""

    def test_order_preserved(self, write_filter, log):
        """Test rules keep top-to-bottom file order."""
        item_filter = ItemFilter.load(write_filter(FILTER_TEXT), logger=log)

        assert len(item_filter) == 3
        assert [rule.start_line for rule in item_filter.rules] == [1, 4, 7]
        assert item_filter.rules[0].query == '\nBaseName == "Chaos Orb" \n'
        assert item_filter.rules[1].query == "Rarity == ItemRarity.Unique &&\n    !IsCorrupted\n"

    def test_order_not_sorted_or_deduplicated(self, write_filter, log):
        """Test identical and out-of-order rules are kept as written."""
        text = "Quality > 5\n\nQuality > 1\n\nQuality > 5\n"
        item_filter = ItemFilter.load(write_filter(text), logger=log)

        assert [rule.query for rule in item_filter] == ["Quality > 5\n", "Quality > 1\n", "Quality > 5\n"]

    def test_comment_kept_in_raw_query(self, write_filter, log):
        """Test raw query keeps the comment verbatim."""
        item_filter = ItemFilter.load(write_filter('BaseName == "Chaos Orb" // test\n'), logger=log)

        (rule,) = item_filter.rules
        assert rule.raw_query == 'BaseName == "Chaos Orb" // test'
        assert "//" not in rule.query

    def test_comment_stripping_does_not_change_result(self, write_filter, log, chaos_orb, unique_ring):
        """Test a commented rule behaves like the uncommented one."""
        commented = ItemFilter.load(write_filter('BaseName == "Chaos Orb" // test\n', "a.ifl"), logger=log)
        plain = ItemFilter.load(write_filter('BaseName == "Chaos Orb"\n', "b.ifl"), logger=log)

        for item in (chaos_orb, unique_ring):
            assert commented.matches(item) == plain.matches(item)
        assert commented.rules[0].query.strip() == plain.rules[0].query.strip()

    def test_malformed_rule_isolated(self, write_filter, log, log_handler):
        """Test a bad block is skipped and reported while the rest load."""
        text = 'BaseName == "Chaos Orb"\n\nQuality >> > 5\n\nIsCorrupted\n'
        item_filter = ItemFilter.load(write_filter(text), logger=log)

        assert [rule.start_line for rule in item_filter.rules] == [1, 5]
        assert len(item_filter.errors) == 1

        error = item_filter.errors[0]
        assert isinstance(error, RuleLoadError)
        assert error.start_line == 3
        assert error.raw_query == "Quality >> > 5"
        assert error.position is not None

        errors = log_handler.messages(logging.ERROR)
        assert len(errors) == 1
        assert "line # 3" in errors[0]
        assert "Quality >> > 5" in errors[0]

    def test_unknown_field_reported_with_position(self, write_filter, log):
        """Test unknown identifier is reported with its index in the block."""
        item_filter = ItemFilter.load(write_filter("Quality > 5 && Foo == 1\n"), logger=log)

        assert len(item_filter) == 0
        assert item_filter.errors[0].position == 15
        assert "Foo" in item_filter.errors[0].message

    def test_summary_logged(self, write_filter, log, log_handler):
        """Test load summary names the file and the rule count."""
        ItemFilter.load(write_filter(FILTER_TEXT, "league.ifl"), logger=log)

        infos = log_handler.messages(logging.INFO)
        assert any("league.ifl" in message and "3 queries" in message for message in infos)

    def test_empty_file(self, write_filter, log, chaos_orb):
        """Test empty file yields an empty filter that matches nothing."""
        item_filter = ItemFilter.load(write_filter(""), logger=log)

        assert len(item_filter) == 0
        assert item_filter.errors == ()
        assert item_filter.matches(chaos_orb) is False

    def test_fully_invalid_file(self, write_filter, log):
        """Test a file where nothing compiles still loads."""
        item_filter = ItemFilter.load(write_filter("Foo\n\nBar ==\n"), logger=log)

        assert len(item_filter) == 0
        assert [error.start_line for error in item_filter.errors] == [1, 3]

    def test_comment_only_blocks_dropped(self, write_filter, log):
        """Test all-comment blocks produce neither rules nor errors."""
        item_filter = ItemFilter.load(write_filter("// header\n// more\n\nIsCorrupted\n"), logger=log)

        assert [rule.start_line for rule in item_filter.rules] == [4]
        assert item_filter.errors == ()

    def test_comment_only_blocks_reported(self, write_filter, log):
        """Test keep_comment_only reports all-comment blocks as failures."""
        item_filter = ItemFilter.load(
            write_filter("// header\n\nIsCorrupted\n"), logger=log, keep_comment_only=True
        )

        assert len(item_filter) == 1
        assert item_filter.errors[0].start_line == 1
        assert item_filter.errors[0].message == "Empty expression"

    def test_missing_file_raises(self, temp_dir, log):
        """Test I/O errors propagate."""
        with pytest.raises(FileNotFoundError):
            ItemFilter.load(temp_dir / "missing.ifl", logger=log)

    def test_byte_order_mark(self, temp_dir, log, chaos_orb):
        """Test a leading BOM is ignored."""
        path = temp_dir / "bom.ifl"
        path.write_bytes('\ufeffBaseName == "Chaos Orb"\n'.encode("utf-8"))

        item_filter = ItemFilter.load(path, logger=log)

        assert item_filter.matches(chaos_orb) is True

    def test_crlf_line_endings(self, temp_dir, log):
        """Test Windows line endings split the same way."""
        path = temp_dir / "crlf.ifl"
        path.write_bytes(b"IsCorrupted\r\n\r\nIsIdentified\r\n")

        item_filter = ItemFilter.load(path, logger=log)

        assert [rule.start_line for rule in item_filter.rules] == [1, 3]

    def test_old_mac_line_endings(self, temp_dir, log):
        """Test a bare carriage return also ends a line."""
        path = temp_dir / "cr.ifl"
        path.write_bytes(b"IsCorrupted\r\rIsIdentified\r")

        item_filter = ItemFilter.load(path, logger=log)

        assert [rule.start_line for rule in item_filter.rules] == [1, 3]

    @pytest.mark.parametrize("separator", ["\x0b", "\x0c", "\x1c", "\x1d", "\x1e", "\x85", "\u2028", "\u2029"])
    def test_other_line_separators_stay_in_line(self, write_filter, log, separator):
        """Test only CR and LF end lines; other separators stay inside the comment."""
        path = write_filter(f"Quality > 1 // a{separator}b\n\nQuality > 2\n")

        item_filter = ItemFilter.load(path, logger=log)

        assert item_filter.errors == ()
        assert [rule.start_line for rule in item_filter.rules] == [1, 3]
        assert item_filter.rules[0].query == "Quality > 1 \n"

    def test_undecodable_bytes_replaced(self, temp_dir, log, chaos_orb):
        """Test non-UTF-8 bytes do not prevent loading."""
        path = temp_dir / "latin1.ifl"
        path.write_bytes(b'BaseName == "Chaos Orb" // \xe9t\xe9\n\nIsCorrupted\n')

        item_filter = ItemFilter.load(path, logger=log)

        assert [rule.start_line for rule in item_filter.rules] == [1, 3]
        assert "\ufffd" in item_filter.rules[0].raw_query
        assert item_filter.matches(chaos_orb) is True

    def test_undecodable_bytes_in_rule_reported(self, temp_dir, log):
        """Test a replaced byte inside rule text is an ordinary parse failure."""
        path = temp_dir / "latin1.ifl"
        path.write_bytes(b"Quality > \xe9\n\nIsCorrupted\n")

        item_filter = ItemFilter.load(path, logger=log)

        assert len(item_filter) == 1
        assert item_filter.errors[0].start_line == 1

    def test_idempotent_reload(self, write_filter, log):
        """Test loading the same file twice gives equivalent filters."""
        path = write_filter(FILTER_TEXT)

        first = ItemFilter.load(path, logger=log)
        second = ItemFilter.load(path, logger=log)

        assert len(first) == len(second)
        assert [rule.query for rule in first] == [rule.query for rule in second]
        assert [rule.start_line for rule in first] == [rule.start_line for rule in second]
        assert first.rules == second.rules

    def test_source_recorded(self, write_filter, log):
        """Test the filter remembers its file."""
        path = write_filter("IsCorrupted\n")

        assert ItemFilter.load(path, logger=log).source == str(path)

    def test_unexpected_compiler_failure_isolated(self, log):
        """Test any compiler exception only drops its block."""

        class FlakyCompiler(ExpressionCompiler):
            def compile(self, text):
                if "boom" in text:
                    raise RuntimeError("compiler bug")
                return super().compile(text)

        item_filter = ItemFilter.from_lines(["boom", "", "IsCorrupted"], compiler=FlakyCompiler(), logger=log)

        assert len(item_filter) == 1
        assert item_filter.errors[0].message == "compiler bug"
        assert item_filter.errors[0].position is None


class TestEvaluate:
    """Tests for ItemFilter.evaluate and matches."""

    def test_first_match_wins(self, log, log_handler, chaos_orb):
        """Test the earliest matching rule decides and is the one logged."""
        item_filter = ItemFilter.from_lines(
            ['ClassName == "StackableCurrency"', "", 'BaseName == "Chaos Orb"'], logger=log
        )

        result = item_filter.evaluate(chaos_orb)

        assert result.status is MatchStatus.MATCHED
        assert result.rule.start_line == 1

        matched = [m for m in log_handler.messages(logging.INFO) if m.startswith("Matched")]
        assert len(matched) == 1
        assert "line # 1" in matched[0]
        assert "Chaos Orb" in matched[0]

    def test_later_rules_not_evaluated_after_match(self, log, chaos_orb):
        """Test evaluation stops at the first match."""
        calls = []
        rules = [
            Rule("a", "a", lambda item: calls.append("a") or True, 1),
            Rule("b", "b", lambda item: calls.append("b") or True, 3),
        ]

        assert ItemFilter(rules, logger=log).matches(chaos_orb) is True
        assert calls == ["a"]

    def test_no_match(self, log, unique_ring):
        """Test NO_MATCH when no rule accepts the item."""
        item_filter = ItemFilter.from_lines(['BaseName == "Chaos Orb"'], logger=log)

        result = item_filter.evaluate(unique_ring)

        assert result.status is MatchStatus.NO_MATCH
        assert result.rule is None
        assert item_filter.matches(unique_ring) is False

    def test_later_rule_matches(self, log, six_link):
        """Test non-matching rules fall through to later ones."""
        item_filter = ItemFilter.from_lines(
            ['BaseName == "Chaos Orb"', "", "SocketInfo.LargestLinkSize >= 6"], logger=log
        )

        result = item_filter.evaluate(six_link)

        assert result.matched
        assert result.rule.start_line == 3

    def test_evaluation_fault_stops_scan(self, log, log_handler):
        """Test a faulting rule ends the scan with no match."""
        item_filter = ItemFilter.from_lines(['Mods[0] == "X"', "", "true"], logger=log)
        item = ItemData(base_name="Wand")

        result = item_filter.evaluate(item)

        assert result.status is MatchStatus.ERROR
        assert result.rule.start_line == 1
        assert isinstance(result.error, EvaluationError)
        assert isinstance(result.error.__cause__, IndexError)
        assert result.error.item_name == "Wand"
        assert item_filter.matches(item) is False

        errors = log_handler.messages(logging.ERROR)
        assert errors and "Line # 1" in errors[0] and "Wand" in errors[0]

    def test_fault_only_for_affected_items(self, log):
        """Test the same rule matches items it can evaluate."""
        item_filter = ItemFilter.from_lines(['Mods[0] == "X"', "", "true"], logger=log)

        assert item_filter.matches(ItemData(mods=("X",))) is True
        assert item_filter.matches(ItemData(mods=("Y",))) is True
        assert item_filter.matches(ItemData()) is False

    def test_rule_after_fault_never_called(self, log, chaos_orb):
        """Test rules after a faulting one are not evaluated."""
        calls = []

        def fault(item):
            raise TypeError("bad operand")

        rules = [
            Rule("a", "a", fault, 1),
            Rule("b", "b", lambda item: calls.append("b") or True, 3),
        ]

        assert ItemFilter(rules, logger=log).matches(chaos_orb) is False
        assert calls == []

    def test_evaluation_error_details(self):
        """Test EvaluationError message and code."""
        rule = Rule("q", "q", lambda item: True, 7)
        error = EvaluationError(rule, "Chaos Orb", KeyError("life"))

        assert error.rule is rule
        assert error.error_code == ErrorCode.INVALID_INPUT
        assert "line 7" in str(error)
        assert "KeyError" in str(error)

    def test_identity_field(self, log, log_handler, unique_ring):
        """Test diagnostics name the configured identity field."""
        item_filter = ItemFilter.from_lines(["IsIdentified"], logger=log, identity_field="name")

        item_filter.matches(unique_ring)

        assert any("Andvarius" in m for m in log_handler.messages(logging.INFO))

    def test_empty_filter(self, log, chaos_orb):
        """Test an empty filter matches nothing."""
        assert ItemFilter(logger=log).matches(chaos_orb) is False

    def test_enum_rule_end_to_end(self, write_filter, log, unique_ring, six_link):
        """Test multi-line enum rule from a file."""
        item_filter = ItemFilter.load(write_filter(FILTER_TEXT), logger=log)

        assert item_filter.evaluate(unique_ring).rule.start_line == 4
        assert item_filter.evaluate(six_link).rule.start_line == 7
        assert item_filter.matches(ItemData(rarity=ItemRarity.UNIQUE, is_corrupted=True)) is False


class TestGetMatchingRules:
    """Tests for listing every matching rule."""

    def test_all_matches_listed(self, log, chaos_orb):
        """Test every accepting rule is returned in order."""
        item_filter = ItemFilter.from_lines(
            ['ClassName == "StackableCurrency"', "", "IsCorrupted", "", 'BaseName == "Chaos Orb"'], logger=log
        )

        assert [rule.start_line for rule in item_filter.get_matching_rules(chaos_orb)] == [1, 5]

    def test_faulting_rules_skipped(self, log):
        """Test faulting rules are left out instead of stopping."""
        item_filter = ItemFilter.from_lines(['Mods[0] == "X"', "", "true"], logger=log)

        assert [rule.start_line for rule in item_filter.get_matching_rules(ItemData())] == [3]


class TestModuleFunctions:
    """Tests for module-level load and matches."""

    def test_load_and_matches(self, write_filter, log, chaos_orb, unique_ring):
        """Test external load/matches signatures."""
        item_filter = load(write_filter('BaseName == "Chaos Orb"\n'), logger=log)

        assert isinstance(item_filter, ItemFilter)
        assert matches(item_filter, chaos_orb) is True
        assert matches(item_filter, unique_ring) is False

    def test_repr(self, log):
        """Test repr summarises the filter."""
        item_filter = ItemFilter.from_lines(["true", "", "Foo"], source="x.ifl", logger=log)

        assert repr(item_filter) == "ItemFilter(source='x.ifl', rules=1, errors=1)"
