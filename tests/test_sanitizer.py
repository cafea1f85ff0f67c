"""
Tests for input sanitization and redaction.
"""

import time

import pytest

from apishield.shared.security.sanitizer import (
    REDACTION_MARKER,
    Sanitizer,
    redact,
    strip_markup,
)

NESTED_SAMPLES = [
    {"name": "<script>alert(1)</script>Bob", "$where": "sleep(100)"},
    {"user": {"email": {"$gt": ""}, "bio": "<b>hi</b> <<b>script>x"}},
    {"items": [{"$set": {"admin": True}}, "<img src=x onerror=alert(1)>", 3, None]},
    {"description": "<p onclick='steal()'>Nice</p><script>bad()</script>", "tags": ("a", "<i>b</i>")},
    {"a.b": 1, "link": "javascript:javascript:alert(1)", "deep": {"deeper": {"$ne": 1, "ok": "<<>>"}}},
    [("sort", "price"), ("sort", "<b>name</b>")],
    "plain <em>text</em>",
]


@pytest.fixture
def sanitizer() -> Sanitizer:
    return Sanitizer(allowed_html_fields=["description"], allowed_repeated_params=["tag"])


class TestOperatorInjection:
    """Tests for data-store operator stripping."""

    def test_operator_keys_removed(self, sanitizer: Sanitizer) -> None:
        """Keys starting with the operator prefix are dropped."""
        cleaned = sanitizer.clean({"email": {"$gt": ""}, "password": "x"}).body
        assert cleaned == {"email": {}, "password": "x"}

    def test_nested_operator_keys_removed(self, sanitizer: Sanitizer) -> None:
        """Operators are stripped inside lists and nested objects."""
        body = {"filters": [{"price": {"$lt": 5}}, {"$or": [1, 2]}]}
        assert sanitizer.clean(body).body == {"filters": [{"price": {}}, {}]}

    def test_dotted_keys_removed(self, sanitizer: Sanitizer) -> None:
        """Dotted keys cannot reach into nested documents."""
        assert sanitizer.clean({"profile.role": "admin", "name": "x"}).body == {"name": "x"}

    def test_query_and_params_cleaned(self, sanitizer: Sanitizer) -> None:
        """Query and path parameters get the same treatment as the body."""
        result = sanitizer.clean(None, {"$where": "1", "q": "<b>shoes</b>"}, {"id": "<i>42</i>"})
        assert result.query == {"q": "shoes"}
        assert result.params == {"id": "42"}


class TestMarkup:
    """Tests for script and markup stripping."""

    def test_script_block_removed(self) -> None:
        """Script blocks are removed with their content."""
        assert strip_markup("<script>alert('x')</script>Hello") == "Hello"

    def test_tags_removed(self) -> None:
        """Ordinary tags are removed, their text kept."""
        assert strip_markup("<b>bold</b> and <a href='/x'>link</a>") == "bold and link"

    def test_nested_smuggling_removed(self) -> None:
        """Tags rebuilt by a first pass are removed too."""
        assert "<" not in strip_markup("<scr<b>ipt>alert(1)</scr</b>ipt>")

    def test_javascript_scheme_removed(self) -> None:
        """javascript: schemes are removed even when repeated."""
        assert strip_markup("javascript:javascript:alert(1)") == "alert(1)"

    def test_non_strings_untouched(self, sanitizer: Sanitizer) -> None:
        """Numbers, booleans and nulls pass through."""
        body = {"count": 3, "price": 9.5, "active": True, "note": None}
        assert sanitizer.clean(body).body == body

    def test_html_field_keeps_safe_markup(self, sanitizer: Sanitizer) -> None:
        """Allowed HTML fields keep markup but lose active content."""
        body = {"description": "<p onclick='steal()'>Nice <b>shoes</b></p><script>bad()</script>"}
        assert sanitizer.clean(body).body == {"description": "<p>Nice <b>shoes</b></p>"}

    def test_other_fields_lose_markup(self, sanitizer: Sanitizer) -> None:
        """Fields outside the allow-list lose all markup."""
        assert sanitizer.clean({"name": "<p>Nice</p>"}).body == {"name": "Nice"}


class TestParameterPollution:
    """Tests for repeated parameter collapsing."""

    def test_last_value_wins_for_pairs(self, sanitizer: Sanitizer) -> None:
        """Repeated query keys keep their last value."""
        result = sanitizer.clean(None, [("sort", "price"), ("sort", "name"), ("page", "2")])
        assert result.query == {"sort": "name", "page": "2"}

    def test_last_value_wins_for_lists(self, sanitizer: Sanitizer) -> None:
        """Array-valued query keys collapse to a scalar."""
        assert sanitizer.clean(None, {"sort": ["price", "name"]}).query == {"sort": "name"}

    def test_allowed_repeated_param_kept(self, sanitizer: Sanitizer) -> None:
        """Whitelisted keys keep every value."""
        result = sanitizer.clean(None, [("tag", "a"), ("tag", "<b>b</b>")])
        assert result.query == {"tag": ["a", "b"]}

    def test_form_body_collapsed(self, sanitizer: Sanitizer) -> None:
        """A urlencoded body given as pairs is collapsed like a query."""
        result = sanitizer.clean([("role", "user"), ("role", "admin")])
        assert result.body == {"role": "admin"}


class TestIdempotence:
    """Cleaning twice equals cleaning once."""

    @pytest.mark.parametrize("sample", NESTED_SAMPLES)
    def test_clean_is_idempotent(self, sanitizer: Sanitizer, sample) -> None:
        """clean(clean(x)) == clean(x) for nested input."""
        once = sanitizer.clean(sample, sample if isinstance(sample, list) else {}, {"id": "<i>1</i>"})
        twice = sanitizer.clean(once.body, once.query, once.params)
        assert twice == once


class TestRedaction:
    """Tests for password-like field redaction."""

    def test_top_level_password_redacted(self) -> None:
        """password and confirmPassword are masked."""
        body = {"email": "a@b.c", "password": "hunter2", "confirmPassword": "hunter2"}
        assert redact(body) == {
            "email": "a@b.c",
            "password": REDACTION_MARKER,
            "confirmPassword": REDACTION_MARKER,
        }

    def test_nested_secrets_redacted(self) -> None:
        """Secrets one level down and inside lists are masked."""
        body = {"user": {"new_password": "x", "token": "abc"}, "cards": [{"apiKey": "k"}]}
        redacted = redact(body)
        assert redacted["user"] == {"new_password": REDACTION_MARKER, "token": REDACTION_MARKER}
        assert redacted["cards"] == [{"apiKey": REDACTION_MARKER}]

    def test_original_untouched(self) -> None:
        """Redaction returns a copy."""
        body = {"password": "hunter2"}
        redact(body)
        assert body == {"password": "hunter2"}


class TestHostileInput:
    """Cleaning time grows linearly with hostile markup."""

    @pytest.mark.parametrize(
        "text",
        [
            "<script>" * 20_000,
            "<style>" * 20_000,
            "<script" * 20_000,
            "<" * 160_000,
            "<script>" * 10_000 + "</script>",
            "javascript:" * 15_000,
        ],
    )
    def test_large_input_cleaned_quickly(self, sanitizer: Sanitizer, text: str) -> None:
        """160KB of unclosed or repeated tags is cleaned well under a second."""
        started = time.perf_counter()
        sanitizer.clean({"name": text, "description": text})
        assert time.perf_counter() - started < 1.0

    def test_unclosed_script_tags_removed(self) -> None:
        """Opening tags with no closing tag are dropped on their own."""
        assert strip_markup("<script>" * 1_000 + "Hello") == "Hello"

    def test_wide_tag_keeps_no_handler(self, sanitizer: Sanitizer) -> None:
        """Event handlers are removed from tags padded with whitespace."""
        body = {"description": "<p" + " " * 50_000 + "onclick=steal()>Nice</p>"}
        cleaned = sanitizer.clean(body).body["description"]
        assert "onclick" not in cleaned
        assert cleaned.endswith(">Nice</p>")
