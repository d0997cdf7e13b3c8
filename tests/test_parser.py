"""Tests for response parsing and truncation recovery."""

import json

import pytest

TWO_ISSUES = {
    "issues": [
        {"file": "a.py", "line": 3, "column": 5, "message": "unused import", "severity": "info"},
        {"file": "a.py", "line": 7, "message": "eval on untrusted input", "severity": "critical"},
    ]
}


class TestParseContent:
    """Tests for parse_content."""

    def test_strict_json(self):
        """Test a well-formed response."""
        from agent_review.models.findings import Severity
        from agent_review.parsing.response_parser import parse_content

        result = parse_content(json.dumps(TWO_ISSUES))

        assert not result.truncated
        assert [f.line for f in result.findings] == [3, 7]
        assert result.findings[1].severity == Severity.ERROR
        assert result.findings[1].column == 1

    def test_code_fence(self):
        """Test markdown fences are stripped."""
        from agent_review.parsing.response_parser import parse_content

        result = parse_content("```json\n" + json.dumps(TWO_ISSUES) + "\n```")
        assert len(result.findings) == 2

    def test_prose_around_json(self):
        """Test the first object is extracted from surrounding prose."""
        from agent_review.parsing.response_parser import parse_content

        raw = "Here is my review:\n" + json.dumps(TWO_ISSUES) + "\nHope this helps!"
        result = parse_content(raw)

        assert not result.truncated
        assert len(result.findings) == 2

    def test_unescaped_backslashes_repaired(self):
        """Test Windows paths with bare backslashes still parse."""
        from agent_review.parsing.response_parser import parse_content

        raw = '{"issues": [{"file": "C:\\src\\app.py", "line": 2, "message": "m"}]}'
        result = parse_content(raw)

        assert result.findings[0].file == "C:\\src\\app.py"

    def test_truncated_mid_array(self):
        """Test complete objects before the cut are salvaged."""
        from agent_review.parsing.response_parser import parse_content

        full = json.dumps(TWO_ISSUES)
        cut = full[: full.index('"eval on') + 5]
        result = parse_content(cut)

        assert result.truncated
        assert [f.message for f in result.findings] == ["unused import"]

    def test_truncated_inside_fence(self):
        """Test an opening fence without a closing one."""
        from agent_review.parsing.response_parser import parse_content

        full = json.dumps(TWO_ISSUES, indent=2)
        cut = "```json\n" + full[: full.index("eval")]
        result = parse_content(cut)

        assert result.truncated
        assert len(result.findings) == 1

    def test_truncated_without_complete_object(self):
        """Test truncation before any object closes."""
        from agent_review.parsing.response_parser import NoExtractableContent, parse_content

        with pytest.raises(NoExtractableContent):
            parse_content('{"issues": [{"file": "a.py", "line": 1, "mess')

    def test_garbage(self):
        """Test a response with no JSON at all."""
        from agent_review.parsing.response_parser import ResponseParseError, parse_content

        with pytest.raises(ResponseParseError):
            parse_content("I could not review this code, sorry.")

    def test_missing_issues_key(self):
        """Test an object without an issues array."""
        from agent_review.parsing.response_parser import ResponseParseError, parse_content

        with pytest.raises(ResponseParseError):
            parse_content('{"summary": "fine"}')

    def test_invalid_items_skipped(self):
        """Test items missing required fields are dropped."""
        from agent_review.parsing.response_parser import parse_content

        raw = json.dumps(
            {
                "issues": [
                    {"file": "a.py", "line": 1},
                    {"message": "no file"},
                    "not an object",
                    {"file": "a.py", "line": 2, "message": "ok", "severity": "bogus"},
                    {"file": "a.py", "line": 0, "message": "clamped", "severity": "nitpick"},
                ]
            }
        )
        result = parse_content(raw)

        assert [(f.message, f.line) for f in result.findings] == [("clamped", 1)]


class TestTruncationDetection:
    """Tests for truncation heuristics."""

    @pytest.mark.parametrize(
        "content,expected",
        [
            ('{"issues": []}', False),
            ('{"issues": [', True),
            ('{"issues": [{"message": "a ] } b"}', True),
            ('{"issues": [], "note": "unterminated', True),
            ('{"k": "escaped \\" quote"}', False),
        ],
    )
    def test_is_content_truncated(self, content, expected):
        """Test bracket and string balance checks."""
        from agent_review.parsing.response_parser import is_content_truncated

        assert is_content_truncated(content) is expected

    def test_extract_complete_objects_ignores_braces_in_strings(self):
        """Test the object scanner is string-aware."""
        from agent_review.parsing.response_parser import extract_complete_objects

        content = '{"issues": [{"file": "a.py", "message": "use {} not }"}, {"file": "b'
        objects = extract_complete_objects(content)

        assert objects == [{"file": "a.py", "message": "use {} not }"}]


class TestMergeContinuation:
    """Tests for merging continuation output."""

    def _finding(self, line: int, message: str):
        from agent_review.models.findings import Finding

        return Finding(file="a.py", line=line, column=1, message=message)

    def test_union_dedupes_by_identity(self):
        """Test partial and continuation findings are unioned, first wins."""
        from agent_review.parsing.response_parser import ParseResult, merge_continuation

        partial = [self._finding(1, "a"), self._finding(2, "b")]
        continuation = ParseResult(findings=[self._finding(2, "b"), self._finding(3, "c")])

        merged = merge_continuation(partial, continuation)
        assert [f.message for f in merged] == ["a", "b", "c"]

    def test_covering_continuation_replaces(self):
        """Test a clean continuation that repeats every partial finding wins."""
        import dataclasses

        from agent_review.models.findings import Severity
        from agent_review.parsing.response_parser import ParseResult, merge_continuation

        partial = [self._finding(1, "a")]
        replacement = dataclasses.replace(self._finding(1, "a"), severity=Severity.ERROR)
        continuation = ParseResult(findings=[replacement, self._finding(5, "e")])

        merged = merge_continuation(partial, continuation)
        assert merged[0].severity == Severity.ERROR
        assert [f.line for f in merged] == [1, 5]


class TestFormats:
    """Tests for the response format variants."""

    def test_openai_parse_reads_content_and_usage(self, openai_payload):
        """Test chat completion payloads."""
        from agent_review.parsing.formats import OpenAIFormat

        result = OpenAIFormat(model="m").parse(
            openai_payload(json.dumps(TWO_ISSUES), prompt_tokens=11, completion_tokens=22)
        )

        assert len(result.findings) == 2
        assert (result.prompt_tokens, result.completion_tokens) == (11, 22)

    def test_openai_parse_rejects_bad_shape(self):
        """Test payloads without choices."""
        from agent_review.parsing.formats import OpenAIFormat
        from agent_review.parsing.response_parser import ResponseParseError

        with pytest.raises(ResponseParseError):
            OpenAIFormat(model="m").parse({"error": "nope"})

    def test_openai_continuation_replays_messages(self):
        """Test continuation bodies append the partial answer and a follow-up."""
        from agent_review.models.findings import Finding
        from agent_review.models.units import BatchFile
        from agent_review.parsing.formats import OpenAIFormat

        fmt = OpenAIFormat(model="m", max_tokens=100)
        base = fmt.build_request([BatchFile("a.py", "x = 1")])
        body = fmt.build_continuation(
            base, '{"issues": [{"file"', [Finding(file="a.py", line=1, column=1, message="m")]
        )

        assert body["model"] == "m"
        assert body["max_tokens"] == 100
        assert body["messages"][:2] == base["messages"]
        assert body["messages"][2] == {"role": "assistant", "content": '{"issues": [{"file"'}
        assert "Issues already parsed: 1" in body["messages"][3]["content"]

    def test_custom_format(self):
        """Test the custom variant passes files through and never continues."""
        from agent_review.models.units import BatchFile
        from agent_review.parsing.formats import CustomFormat

        fmt = CustomFormat()
        body = fmt.build_request([BatchFile("a.py", "x = 1")])

        assert body == {"files": [{"path": "a.py", "content": "x = 1"}]}
        assert fmt.build_continuation(body, "", []) is None
        assert len(fmt.parse(TWO_ISSUES).findings) == 2

    def test_get_format(self):
        """Test format selection by name."""
        from agent_review.config import ApiSettings
        from agent_review.errors import ConfigError
        from agent_review.parsing.formats import CustomFormat, OpenAIFormat, get_format

        assert isinstance(get_format(ApiSettings(api_format="openai", model="m")), OpenAIFormat)
        assert isinstance(get_format(ApiSettings(api_format="custom")), CustomFormat)
        with pytest.raises(ConfigError):
            get_format(ApiSettings(api_format="soap"))
