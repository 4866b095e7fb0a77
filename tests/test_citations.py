"""Tests for chat_server.providers.citations."""

import json

import pytest
from structlog.testing import capture_logs

from chat_server.models import Citation
from chat_server.providers.citations import CitationStream, extract_citations, parse_citation


def _marker(**fields) -> str:
    return json.dumps(fields, ensure_ascii=False)


# ---------------------------------------------------------------------------
# parse_citation
# ---------------------------------------------------------------------------


def test_parse_citation_accepts_full_object():
    citation = parse_citation(_marker(
        chuong=2, dieu=15, khoan=1, noi_dung_da_su_dung="Người lao động có quyền...",
        start_char=120, end_char=180, resource_type="luat",
    ))
    assert citation == Citation(
        chuong=2, dieu=15, khoan=1, noi_dung_da_su_dung="Người lao động có quyền...",
        start_char=120, end_char=180, resource_type="luat",
    )


@pytest.mark.parametrize("candidate", [
    '{"start_char": 0, "end_char": }',          # not JSON
    '{"start_char": 0}',                        # end_char missing
    '{"start_char": "0", "end_char": 5}',       # string offset
    '{"start_char": 1.5, "end_char": 5}',       # non-integer offset
])
def test_parse_citation_rejects_invalid_candidates(candidate):
    assert parse_citation(candidate) is None


def test_parse_citation_drops_malformed_optional_fields():
    citation = parse_citation(
        '{"dieu": "năm", "khoan": [1], "chuong": 3, "resource_type": 7, "start_char": 0, "end_char": 5}'
    )
    assert citation == Citation(chuong=3, start_char=0, end_char=5)


def test_parse_citation_logs_rejection_at_debug():
    with capture_logs() as logs:
        parse_citation('{"start_char": 0}')
    assert [(entry["event"], entry["log_level"]) for entry in logs] == [
        ("citation_candidate_rejected", "debug"),
    ]


# ---------------------------------------------------------------------------
# extract_citations
# ---------------------------------------------------------------------------


def test_extract_removes_marker_and_keeps_surrounding_whitespace():
    cleaned, found = extract_citations('See {"start_char":0,"end_char":5} here')
    assert cleaned == "See  here"
    assert found == [Citation(start_char=0, end_char=5)]


def test_extract_returns_citations_in_marker_order():
    first = _marker(dieu=1, start_char=0, end_char=10)
    second = _marker(dieu=2, start_char=10, end_char=20)
    cleaned, found = extract_citations(f"A{first}B{second}C")
    assert cleaned == "ABC"
    assert [c.dieu for c in found] == [1, 2]


def test_extract_leaves_rejected_candidates_untouched():
    bad = '{"start_char": "x", "end_char": 5}'
    good = _marker(start_char=3, end_char=4)
    text = f"keep {bad} drop {good} end"
    cleaned, found = extract_citations(text)
    assert cleaned == f"keep {bad} drop  end"
    assert found == [Citation(start_char=3, end_char=4)]


def test_extract_removes_marker_with_malformed_coordinate():
    cleaned, found = extract_citations('See {"dieu": "5a", "start_char": 0, "end_char": 5} here')
    assert cleaned == "See  here"
    assert found == [Citation(start_char=0, end_char=5)]


def test_extract_without_candidates_returns_input():
    text = "Điều 5 quy định {không phải trích dẫn}"
    assert extract_citations(text) == (text, [])


def test_extract_cleaned_text_equals_input_minus_accepted_spans():
    markers = [_marker(start_char=i, end_char=i + 1) for i in range(3)]
    pieces = ["Theo ", " và ", " cũng như ", "."]
    text = pieces[0] + markers[0] + pieces[1] + markers[1] + pieces[2] + markers[2] + pieces[3]
    cleaned, found = extract_citations(text)
    assert cleaned == "".join(pieces)
    assert len(found) == 3


# ---------------------------------------------------------------------------
# CitationStream
# ---------------------------------------------------------------------------


def test_stream_holds_marker_split_across_deltas():
    stream = CitationStream()
    assert stream.feed('See {"start_') == ("See ", [])
    text, found = stream.feed('char":0,"end_char":5} here')
    assert text == " here"
    assert found == [Citation(start_char=0, end_char=5)]
    assert stream.flush() == ("", [])


def test_stream_passes_text_without_braces_straight_through():
    stream = CitationStream()
    assert stream.feed("Xin chào") == ("Xin chào", [])
    assert stream.feed(" bạn } ") == (" bạn } ", [])


def test_stream_flush_releases_unclosed_brace():
    stream = CitationStream()
    assert stream.feed("a {unclosed") == ("a ", [])
    assert stream.flush() == ("{unclosed", [])


def test_stream_releases_overlong_unclosed_text():
    stream = CitationStream(max_marker_length=8)
    assert stream.feed("x {aaaaaaaaaa") == ("x {aaaaaaaaaa", [])
    assert stream.flush() == ("", [])


def test_stream_output_matches_whole_text_extraction():
    text = 'Theo {"dieu": 5, "start_char": 1, "end_char": 9} và {"dieu": 6, "start_char": 9, "end_char": 12}.'
    expected = extract_citations(text)

    for size in (1, 2, 5, 11):
        stream = CitationStream()
        out, found = [], []
        for i in range(0, len(text), size):
            chunk_text, chunk_found = stream.feed(text[i:i + size])
            out.append(chunk_text)
            found.extend(chunk_found)
        tail_text, tail_found = stream.flush()
        out.append(tail_text)
        found.extend(tail_found)
        assert ("".join(out), found) == expected
