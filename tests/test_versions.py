# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Unit Tests for Version Predicates

Tests version parsing, ordering and every predicate form used in
dependency and conflict declarations.
"""

import pytest

from pkgmgr.core.errors import InvalidVersionError
from pkgmgr.services.transaction.versions import (
    ANY,
    EXACT,
    RANGE,
    compare_versions,
    parse_predicate,
    parse_version,
    satisfies,
)


class TestParseVersion:
    """Test suite for version parsing"""

    def test_short_versions_are_coerced(self):
        """Test that "1.0" and "2" are padded to full semantic versions"""
        assert str(parse_version("1.0")) == "1.0.0"
        assert str(parse_version("2")) == "2.0.0"

    def test_leading_v_is_ignored(self):
        """Test that a v prefix is accepted"""
        assert parse_version("v1.2.3") == parse_version("1.2.3")

    def test_invalid_version(self):
        """Test that garbage raises InvalidVersionError"""
        with pytest.raises(InvalidVersionError):
            parse_version("")
        with pytest.raises(InvalidVersionError):
            parse_version("not-a-version")

    def test_compare_versions(self):
        """Test numeric (not lexical) ordering"""
        assert compare_versions("1.10", "1.9") == 1
        assert compare_versions("1.0", "1.0.0") == 0
        assert compare_versions("0.9", "1.0") == -1


class TestParsePredicate:
    """Test suite for predicate parsing"""

    @pytest.mark.parametrize("raw", ["", "*"])
    def test_any(self, raw):
        """Test that empty and star predicates match anything"""
        predicate = parse_predicate(raw)
        assert predicate.kind == ANY
        assert predicate.matches("0.0.1")
        assert predicate.matches("99.0")

    @pytest.mark.parametrize("raw", ["1.2", "==1.2", "=1.2"])
    def test_exact(self, raw):
        """Test bare, == and = forms are exact"""
        predicate = parse_predicate(raw)
        assert predicate.kind == EXACT
        assert predicate.matches("1.2.0")
        assert not predicate.matches("1.2.1")

    def test_comparator_list(self):
        """Test that comma and whitespace separated comparators are AND-ed"""
        for raw in (">=1.0,<2.0", ">=1.0 <2.0", ">=1.0, <2.0"):
            predicate = parse_predicate(raw)
            assert predicate.kind == RANGE
            assert predicate.matches("1.5")
            assert not predicate.matches("2.0")
            assert not predicate.matches("0.9")

    def test_operator_spacing(self):
        """Test whitespace between an operator and its version is allowed"""
        predicate = parse_predicate(">= 1.0, < 2.0")
        assert predicate.matches("1.9.9")
        assert not predicate.matches("2.0.0")

    def test_exact_does_not_widen(self):
        """Test a partial exact version pins the coerced release only"""
        assert satisfies("1.2", "==1.2")
        assert not satisfies("1.2.5", "==1.2")

    def test_wildcard_with_operator_rejected(self):
        with pytest.raises(InvalidVersionError):
            parse_predicate(">=1.*")

    def test_not_equal(self):
        """Test != excludes a single version"""
        assert satisfies("1.4", ">=1.0,!=1.3")
        assert not satisfies("1.3", ">=1.0,!=1.3")

    def test_caret(self):
        """Test caret ranges, including the 0.x narrowing"""
        assert satisfies("1.9.9", "^1.2.3")
        assert not satisfies("2.0.0", "^1.2.3")
        assert not satisfies("1.2.2", "^1.2.3")
        assert satisfies("0.2.9", "^0.2.3")
        assert not satisfies("0.3.0", "^0.2.3")

    def test_tilde(self):
        """Test tilde ranges"""
        assert satisfies("1.2.9", "~1.2.3")
        assert not satisfies("1.3.0", "~1.2.3")
        assert satisfies("1.9.0", "~1")

    def test_wildcard(self):
        """Test 1.* and 1.2.x"""
        assert satisfies("1.7.0", "1.*")
        assert not satisfies("2.0.0", "1.*")
        assert satisfies("1.2.5", "1.2.x")
        assert not satisfies("1.3.0", "1.2.x")

    def test_hyphen_range(self):
        """Test inclusive hyphen ranges"""
        assert satisfies("1.0", "1.0 - 2.0")
        assert satisfies("2.0", "1.0 - 2.0")
        assert not satisfies("2.0.1", "1.0 - 2.0")

    def test_inverted_hyphen_range(self):
        """Test that an upper bound below the lower bound is rejected"""
        with pytest.raises(InvalidVersionError):
            parse_predicate("2.0 - 1.0")

    @pytest.mark.parametrize("raw", [">=", ">=1.0 garbage!", "<<1.0"])
    def test_malformed(self, raw):
        """Test malformed predicates raise InvalidVersionError"""
        with pytest.raises(InvalidVersionError):
            parse_predicate(raw)

    def test_invalid_version_error_is_value_error(self):
        """Test InvalidVersionError can be caught as ValueError"""
        with pytest.raises(ValueError):
            parse_predicate(">=x.y")
