"""
Tests for API key authentication dependencies.
"""

import pytest
from unittest.mock import patch
from fastapi import HTTPException

from auth.dependencies import is_valid_api_key, require_api_key


class TestIsValidApiKey:

    def test_matching_key(self):
        assert is_valid_api_key("key-b", ["key-a", "key-b"]) is True

    def test_non_matching_key(self):
        assert is_valid_api_key("key-c", ["key-a", "key-b"]) is False

    @pytest.mark.parametrize("api_key", [None, ""])
    def test_missing_key(self, api_key):
        assert is_valid_api_key(api_key, ["key-a"]) is False

    def test_no_configured_keys_rejects_everything(self):
        assert is_valid_api_key("anything", []) is False

    def test_uses_configured_keys_by_default(self):
        with patch("core.config.CALENDAR_API_KEYS", ["configured"]):
            assert is_valid_api_key("configured") is True
            assert is_valid_api_key("other") is False


class TestRequireApiKey:

    def test_valid_key_is_returned(self):
        with patch("core.config.CALENDAR_API_KEYS", ["configured"]):
            assert require_api_key("configured") == "configured"

    def test_missing_key(self):
        with pytest.raises(HTTPException) as exc_info:
            require_api_key(None)
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "API key not provided"

    def test_invalid_key(self):
        with patch("core.config.CALENDAR_API_KEYS", ["configured"]):
            with pytest.raises(HTTPException) as exc_info:
                require_api_key("wrong")
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Invalid API key"
