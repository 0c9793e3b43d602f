"""
Unit tests for text heuristics: headings, citations, fingerprints, excerpts,
quality signals and outline flattening.
"""
import uuid

import pytest

from src.pipeline.text_signals import (
    build_outline_hint,
    build_quality_signals,
    extract_citations,
    extract_heading_candidates,
    file_fingerprint,
    flatten_outline_sections,
    looks_like_heading,
    stratified_excerpts,
)
from tests.fakes import make_chunk, make_file


@pytest.fixture
def doc():
    return make_file(uuid.uuid4(), "networks.pdf")


class TestHeadingDetection:
    """Tests for looks_like_heading."""

    @pytest.mark.parametrize("line", ["3.1 Title", "IV Title", "INTRODUCTION", "TCP HANDSHAKE Flow"])
    def test_accepts_headings(self, line):
        assert looks_like_heading(line)

    @pytest.mark.parametrize(
        "line",
        [
            "abc",
            "X" * 81,
            "This is a regular sentence about routing tables.",
            "A.B.",
            "1234 5678",
            "",
        ],
    )
    def test_rejects_non_headings(self, line):
        assert not looks_like_heading(line)

    def test_candidates_are_deduplicated_and_capped(self, doc):
        """Repeated headings are kept once and the list stops at max_sections."""
        chunks = [
            make_chunk(doc, 0, "INTRODUCTION\nsome body text here", page=1),
            make_chunk(doc, 1, "introduction\n2 Routing Basics\n3 Switching Basics", page=2),
        ]

        found = extract_heading_candidates(chunks, max_sections=2)

        assert [h.title for h in found] == ["INTRODUCTION", "2 Routing Basics"]
        assert found[1].start_page == 2

    def test_outline_hint_prefers_diagnostics(self, doc):
        doc.extraction_diagnostics = {
            "outline_hint": {"title": "Doc", "sections": [{"title": "A"}, {"title": "B"}], "confidence": 0.9}
        }

        hint = build_outline_hint(doc, [], max_sections=1)

        assert hint["sections"] == [{"title": "A"}]
        assert hint["confidence"] == 0.9

    def test_outline_hint_from_headings(self, doc):
        chunks = [make_chunk(doc, 0, "1 Overview\nbody", page=3)]

        hint = build_outline_hint(doc, chunks, max_sections=10)

        assert hint["title"] == "networks.pdf"
        assert hint["sections"][0]["title"] == "1 Overview"
        assert hint["sections"][0]["path"] == "1"


class TestCitations:
    def test_extracts_urls_rfcs_and_dois(self):
        text = "See https://example.com/tcp and RFC 793, also 10.1145/12345 for details."

        found = extract_citations(text)

        assert "https://example.com/tcp" in found
        assert "RFC 793" in found
        assert any(c.startswith("10.1145/12345") for c in found)

    def test_empty_text(self):
        assert extract_citations("   ") == []


class TestFingerprint:
    def test_stable_under_chunk_order(self, doc):
        a = make_chunk(doc, 0, "alpha")
        b = make_chunk(doc, 1, "beta")

        assert file_fingerprint(doc, [a, b]) == file_fingerprint(doc, [b, a])

    def test_changes_with_text_length(self, doc):
        a = make_chunk(doc, 0, "alpha")
        before = file_fingerprint(doc, [a])
        a.text = "alpha beta"

        assert file_fingerprint(doc, [a]) != before

    def test_changes_with_file_size(self, doc):
        chunks = [make_chunk(doc, 0, "alpha")]
        before = file_fingerprint(doc, chunks)
        doc.size_bytes = 2048

        assert file_fingerprint(doc, chunks) != before


class TestStratifiedExcerpts:
    def test_samples_per_file_and_skips_unextractable(self, doc):
        chunks = [make_chunk(doc, i, f"chunk number {i}") for i in range(9)]
        chunks.append(make_chunk(doc, 9, "No extractable text on this page"))

        text, ids = stratified_excerpts(chunks, per_file=3, max_chars=100)

        assert len(ids) == 3
        assert ids[0] == chunks[0].id
        assert "No extractable" not in text
        assert text.startswith(f"[chunk_id={chunks[0].id}]")

    def test_total_budget(self, doc):
        chunks = [make_chunk(doc, i, "x" * 200) for i in range(10)]

        text, ids = stratified_excerpts(chunks, per_file=10, max_chars=200, max_total_chars=500)

        assert len(text) <= 500
        assert 0 < len(ids) < 10

    def test_truncates_long_chunks(self, doc):
        text, _ = stratified_excerpts([make_chunk(doc, 0, "y" * 50)], per_file=1, max_chars=10)

        assert text.endswith("y" * 10 + "...")


class TestQualitySignals:
    def test_low_text_flag(self, doc):
        chunks = [make_chunk(doc, 0, "short text")]

        assert build_quality_signals(chunks, "short", 500)["low_text_signal"] is True
        assert build_quality_signals(chunks, "short", 0)["low_text_signal"] is False

    def test_counts_chunk_kinds(self, doc):
        chunks = [
            make_chunk(doc, 0, "a | b", meta={"kind": "table_text"}),
            make_chunk(doc, 1, "scanned", meta={"kind": "ocr_text"}),
        ]

        q = build_quality_signals(chunks, "", 0)

        assert q["table_chunks"] == 1
        assert q["ocr_chunks"] == 1
        assert q["coverage"] == 0.5
        assert q["chunk_count"] == 2


class TestFlattenOutline:
    def test_caps_at_max_sections_with_dense_index(self):
        outline = {"sections": [{"title": f"S{i}", "start_page": i} for i in range(70)]}

        rows = flatten_outline_sections(outline, 60)

        assert len(rows) == 60
        assert [r["section_index"] for r in rows] == list(range(1, 61))
        assert rows[0]["start_page"] is None
        assert rows[1]["start_page"] == 1
        assert rows[0]["metadata"] == {"source": "outline"}

    def test_skips_non_dict_entries(self):
        rows = flatten_outline_sections({"sections": ["bad", {"title": "Good"}]}, 10)

        assert [(r["section_index"], r["title"]) for r in rows] == [(1, "Good")]

    def test_zero_cap(self):
        assert flatten_outline_sections({"sections": [{"title": "A"}]}, 0) == []
