"""Unit tests for input sanitization, injection detection and file screening."""

import pytest

from abuseguard.config import FileUploadConfig, ScreeningConfig, ValidationConfig
from abuseguard.exceptions import InvalidInput
from abuseguard.models import RequestContext
from abuseguard.screening import (
    FileScreener,
    InputScreener,
    check_structure,
    find_injection,
    looks_like_injection,
    sanitize,
    sanitize_filename,
)


class TestSanitize:
    """Tests for sanitize."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("<script>alert(1)</script>hello", "hello"),
            ("<SCRIPT src=x>alert(1)</SCRIPT >hi", "hi"),
            ('<iframe src="//evil"></iframe>text', "text"),
            ("<a href=\"javascript:alert(1)\">x</a>", '<a href="alert(1)">x</a>'),
            ('<a href="java\tscript:alert(1)">x</a>', '<a href="alert(1)">x</a>'),
            ("jav\r\nascript :alert(1)", "alert(1)"),
            ('<img src=x onerror="alert(1)">', "<img src=x>"),
            ("<div onclick='go()' class=a>ok</div>", "<div class=a>ok</div>"),
            ("<scr<script></script>ipt>alert(1)</scr<script></script>ipt>", "alert(1)"),
            ("plain text", "plain text"),
        ],
    )
    def test_strings(self, raw, expected):
        assert sanitize(raw) == expected

    def test_nested_values_and_keys(self):
        value = {
            "title": "<script>x</script>Song",
            "<script></script>tags": ["rock", "<b onmouseover=x>jazz</b>"],
            "meta": {"plays": 42, "live": True, "notes": None},
        }

        assert sanitize(value) == {
            "title": "Song",
            "tags": ["rock", "<b>jazz</b>"],
            "meta": {"plays": 42, "live": True, "notes": None},
        }

    def test_idempotent_on_example(self):
        raw = "<scr<script>ipt>x</scr</script>ipt> <a href=JaVaScRiPt:go() onload=x>"
        once = sanitize(raw)

        assert sanitize(once) == once


class TestInjectionDetection:
    """Tests for looks_like_injection and find_injection."""

    @pytest.mark.parametrize(
        "payload",
        [
            "'; DROP TABLE users; --",
            "1; DELETE FROM accounts",
            "admin' OR '1'='1",
            "' or 1=1 --",
            "admin'--",
            "x' UNION SELECT password FROM users --",
            "%3Cscript%3Ealert(1)%3C/script%3E",
            "&lt;script&gt;alert(1)&lt;/script&gt;",
            "\\u003cscript\\u003e",
            "<script>alert(1)</script>",
        ],
    )
    def test_detects_payloads(self, payload):
        assert looks_like_injection(payload) is True

    @pytest.mark.parametrize(
        "text",
        [
            "hello world",
            "Track42",
            "Guns N' Roses - Sweet Child O' Mine",
            "Drop the Beat (Remix) [feat. MC Select]",
            "Don't Stop Me Now",
            "AC/DC - Highway to Hell #1 hit",
            "Select your favourite songs from the album",
            "Rock & Roll; 100% live",
            "user@example.com",
            "C# minor, 120 BPM",
        ],
    )
    def test_ignores_ordinary_text(self, text):
        assert looks_like_injection(text) is False

    def test_find_injection_reports_field(self):
        value = {"track": {"tags": ["ok", "a' OR 'x'='x"]}}

        assert find_injection(value) == ("track.tags[1]", "sql_tautology")

    def test_find_injection_checks_keys(self):
        assert find_injection({"'; drop table t; --": 1}) is not None

    def test_non_strings_are_ignored(self):
        assert find_injection({"n": 1, "f": 1.5, "b": False, "z": None}) is None


class TestCheckStructure:
    """Tests for check_structure."""

    def test_within_limits(self):
        assert check_structure({"a": ["x"] * 100, "b": "y" * 1000}, ValidationConfig()) == []

    def test_reports_every_problem(self):
        limits = ValidationConfig(max_string_length=5, max_array_length=2, max_object_depth=2)
        value = {"long": "abcdefg", "list": [1, 2, 3], "deep": {"deeper": {"x": 1}}}

        problems = check_structure(value, limits)

        assert [p["field"] for p in problems] == ["long", "list", "deep.deeper"]


class TestInputScreener:
    """Tests for InputScreener."""

    @pytest.fixture
    def screener(self, bus):
        return InputScreener(ScreeningConfig(), ValidationConfig(), bus)

    @pytest.fixture
    def context(self):
        return RequestContext(ip="203.0.113.9", path="/api/tracks", method="POST")

    def test_sanitizes_all_parts(self, screener, context, bus):
        screened = screener.screen(
            context,
            body={"title": "<script>x</script>Song"},
            query={"q": ["<b onclick=x>rock</b>"]},
            params=["api", "tracks"],
        )

        assert screened.body == {"title": "Song"}
        assert screened.query == {"q": ["<b>rock</b>"]}
        assert screened.params == ["api", "tracks"]

    def test_rejects_injection(self, screener, context, bus):
        with pytest.raises(InvalidInput) as exc_info:
            screener.screen(context, body={"name": "x'; DROP TABLE users; --"})

        assert exc_info.value.error == "INVALID_INPUT"
        assert exc_info.value.message == "Invalid characters detected in input"
        assert exc_info.value.status_code == 400

    def test_rejects_oversized_input(self, screener, context):
        with pytest.raises(InvalidInput) as exc_info:
            screener.screen(context, body={"tags": list(range(101))})

        assert exc_info.value.error == "VALIDATION_ERROR"
        assert exc_info.value.details == [
            {"field": "tags", "message": "must contain at most 100 items", "location": "body"}
        ]

    def test_disabled_parts_pass_through(self, bus, context):
        screener = InputScreener(
            ScreeningConfig(sanitize_query=False, reject_injection=False),
            ValidationConfig(),
            bus,
        )

        screened = screener.screen(context, query={"q": ["<script>x</script>"]})

        assert screened.query == {"q": ["<script>x</script>"]}

    def test_clean_input_unchanged(self, screener, context):
        body = {"title": "Bohemian Rhapsody", "year": 1975}

        assert screener.screen(context, body=body).body == body


class TestFileScreening:
    """Tests for FileScreener and sanitize_filename."""

    @pytest.fixture
    def screener(self, bus):
        return FileScreener(FileUploadConfig(), bus)

    @pytest.fixture
    def context(self):
        return RequestContext(ip="203.0.113.10", path="/api/upload", method="POST")

    def test_accepts_audio(self, screener, context):
        name = screener.check(context, "my song.mp3", "audio/mpeg", 1024)

        assert name == "my song.mp3"

    def test_rejects_large_file(self, screener, context):
        with pytest.raises(InvalidInput) as exc_info:
            screener.check(context, "big.wav", "audio/wav", 51 * 1024 * 1024)

        assert exc_info.value.error == "FILE_TOO_LARGE"
        assert exc_info.value.message == "File size exceeds 50MB limit"

    def test_rejects_type(self, screener, context):
        with pytest.raises(InvalidInput) as exc_info:
            screener.check(context, "run.exe", "application/x-msdownload", 10)

        assert exc_info.value.error == "INVALID_FILE_TYPE"

    def test_repeated_rejections_mark_source_suspicious(self, screener, context, bus):
        for _ in range(3):
            with pytest.raises(InvalidInput):
                screener.check(context, "run.exe", "application/x-msdownload", 10)

        assert bus.is_suspicious("203.0.113.10")

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("../../etc/passwd", "passwd"),
            ("C:\\Users\\me\\song.mp3", "song.mp3"),
            ("<script>x</script>cover.png", "cover.png"),
            ('bad"name?.jpg', "badname.jpg"),
            (".hidden.png", "hidden.png"),
            ("", "upload"),
        ],
    )
    def test_sanitize_filename(self, raw, expected):
        assert sanitize_filename(raw) == expected

    def test_sanitize_filename_keeps_extension(self):
        name = sanitize_filename("a" * 300 + ".flac", max_length=20)

        assert len(name) == 20
        assert name.endswith(".flac")
