# tests/test_phone.py
"""Tests for fieldops/core/phone.py: Indonesian mobile numbers."""
from __future__ import annotations

import pytest

from fieldops.core.errors import ValidationError
from fieldops.core.phone import is_valid_phone, mask_phone, normalize_phone


class TestNormalizePhone:
    @pytest.mark.parametrize("raw, expected", [
        ("08123456789", "08123456789"),
        ("+628123456789", "08123456789"),
        ("628123456789", "08123456789"),
        ("+62 812-3456-789", "08123456789"),
        ("(0812) 3456.789", "08123456789"),
    ])
    def test_valid_numbers(self, raw, expected):
        assert normalize_phone(raw) == expected

    @pytest.mark.parametrize("raw", [
        "",
        None,
        "12345",
        "0812345",            # too short
        "08123456789012345",  # too long
        "+18005551234",       # not Indonesian
        "0812abc4567",
    ])
    def test_invalid_numbers(self, raw):
        with pytest.raises(ValidationError):
            normalize_phone(raw)

    def test_is_valid_phone(self):
        assert is_valid_phone("+62 812 3456 789")
        assert not is_valid_phone("hello")
        assert not is_valid_phone(None)


class TestMaskPhone:
    def test_masks_middle(self):
        assert mask_phone("08123456789") == "0812***789"

    def test_short_or_missing(self):
        assert mask_phone("0812") == "***"
        assert mask_phone(None) == "***"
