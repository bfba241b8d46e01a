"""Tests for JSON extraction from agent output."""

from codeloop.json_extract import extract_json, iter_json_candidates, strip_ansi


def test_plain_object():
    assert extract_json('{"title": "Add login"}') == {"title": "Add login"}


def test_object_after_prose():
    text = 'Sure! Here is the next task:\n{"title": "Add login", "description": "Use JWT"}\nDone.'
    assert extract_json(text) == {"title": "Add login", "description": "Use JWT"}


def test_fenced_block_preferred_over_bare_json():
    text = (
        'I considered {"title": "wrong"} first.\n'
        "```json\n"
        '{"title": "right"}\n'
        "```\n"
    )
    assert extract_json(text) == {"title": "right"}


def test_fence_without_language_tag():
    text = "```\n[1, 2, 3]\n```"
    assert extract_json(text, expect="array") == [1, 2, 3]


def test_braces_inside_strings_do_not_confuse_scanner():
    text = 'Result: {"description": "use {name} and } here", "n": "a]b"} trailing }'
    assert extract_json(text) == {"description": "use {name} and } here", "n": "a]b"}


def test_escaped_quotes_inside_strings():
    text = r'{"content": "say \"hi\" {not json}"}'
    assert extract_json(text) == {"content": 'say "hi" {not json}'}


def test_stray_brace_before_payload_is_skipped():
    text = 'Use a dict like {name: value} then\n{"approved": true, "issues": []}'
    assert extract_json(text) == {"approved": True, "issues": []}


def test_expect_array_skips_objects():
    text = '{"note": 1} and then [{"category": "pattern"}]'
    assert extract_json(text, expect="array") == [{"category": "pattern"}]
    assert extract_json(text, expect="object") == {"note": 1}


def test_accept_predicate_moves_to_next_candidate():
    text = '{"unrelated": true}\n{"title": "T", "description": "D"}'
    result = extract_json(text, accept=lambda v: "title" in v)
    assert result == {"title": "T", "description": "D"}


def test_empty_array_is_a_result():
    assert extract_json("Nothing to extract: []", expect="array") == []


def test_no_json_returns_none():
    assert extract_json("no structured output here") is None
    assert extract_json("") is None
    assert extract_json(None) is None
    assert extract_json("{unterminated") is None


def test_ansi_sequences_are_stripped():
    text = '\x1b[32m{"approved":\x1b[0m true}\r\n'
    assert extract_json(text) == {"approved": True}
    assert strip_ansi("\x1b]0;title\x07ok\r") == "ok"


def test_nested_candidates_yielded_per_opener():
    assert list(iter_json_candidates('x {"a": [1]} y')) == ['{"a": [1]}', "[1]"]


def test_mismatched_closer_is_not_a_candidate():
    assert list(iter_json_candidates("{ ]")) == []


def test_deterministic():
    text = 'a {"x": 1} b {"y": 2}'
    assert extract_json(text) == extract_json(text) == {"x": 1}
