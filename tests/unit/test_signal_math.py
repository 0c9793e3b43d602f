"""
Unit tests for signal derivations: coverage, file edges, chunk links,
set position and compound weights.
"""
import uuid
from types import SimpleNamespace

import pytest

from src.pipeline.signal_math import (
    MIN_EDGE_STRENGTH,
    build_chunk_batches,
    build_chunk_links,
    build_material_edges,
    build_set_coverage,
    compound_weight,
    compound_weight_updates,
    compound_weights_by_key,
    cross_set_for_keys,
    estimate_intent_alignment,
    fallback_chunk_signal_rows,
    intent_needs_rebuild,
    section_path_by_chunk,
    set_position_score,
    SetPositionContext,
)
from tests.fakes import make_chunk, make_file


def signal(file_id, strength=0.8, role="explanation", **trajectory):
    return SimpleNamespace(
        id=uuid.uuid4(),
        material_chunk_id=uuid.uuid4(),
        material_file_id=file_id,
        signal_strength=strength,
        role=role,
        trajectory={slot: list(keys) for slot, keys in trajectory.items()},
        intent_alignment_score=0.0,
        set_position_score=0.0,
        compound_weight=0.0,
    )


@pytest.fixture
def files():
    return uuid.uuid4(), uuid.uuid4()


class TestCoverage:
    def test_aggregates_trajectories(self, set_id, files):
        a, b = files
        signals = [
            signal(a, 0.9, establishes=["TCP"], points_toward=["congestion"]),
            signal(b, 0.5, reinforces=["tcp"], builds_on=["ip"]),
        ]

        result = build_set_coverage(set_id, None, signals, {}, {})

        by_key = {r["concept_key"]: r for r in result.rows}
        assert [r["concept_key"] for r in result.rows] == ["congestion", "ip", "tcp"]
        assert by_key["tcp"]["coverage_type"] == "introduces"
        assert by_key["tcp"]["score"] == pytest.approx(0.7)
        assert by_key["tcp"]["depth"] == "moderate"
        assert by_key["tcp"]["source_material_file_ids"] == sorted([str(a), str(b)])
        assert by_key["ip"]["coverage_type"] == "assumes"
        assert by_key["congestion"]["depth"] == "thorough"
        assert result.weights["tcp"] == pytest.approx(0.7)

    def test_signature_keys_seed_weak_mentions(self, set_id, files):
        a, _ = files
        signatures = {a: SimpleNamespace(concept_keys=["Routing"])}

        result = build_set_coverage(set_id, None, [], signatures, {})

        (row,) = result.rows
        assert row["concept_key"] == "routing"
        assert row["coverage_type"] == "mentions"
        assert row["depth"] == "surface"

    def test_canonical_concept_lookup(self, set_id, files):
        a, _ = files
        canonical = uuid.uuid4()
        concepts = {"tcp": SimpleNamespace(id=uuid.uuid4(), canonical_concept_id=canonical)}

        result = build_set_coverage(set_id, None, [signal(a, establishes=["tcp"])], {}, concepts)

        assert result.rows[0]["canonical_concept_id"] == canonical


class TestMaterialEdges:
    def test_prerequisite_edge(self, set_id, files):
        a, b = files
        signals = [
            signal(a, establishes=["ip", "routing"]),
            signal(b, builds_on=["ip", "routing"], establishes=["bgp"]),
        ]
        stats = build_set_coverage(set_id, None, signals, {}, {}).file_stats

        edges = build_material_edges(set_id, stats)

        forward = [e for e in edges if e["from_material_file_id"] == a]
        assert len(forward) == 1
        assert forward[0]["edge_type"] == "prerequisite"
        assert forward[0]["strength"] == 1.0
        assert forward[0]["bridging_concepts"] == ["ip", "routing"]

    def test_no_self_loops_and_min_strength(self, set_id, files):
        a, b = files
        signals = [
            signal(a, establishes=["x"]),
            signal(b, builds_on=[f"k{i}" for i in range(9)] + ["x"]),
        ]
        stats = build_set_coverage(set_id, None, signals, {}, {}).file_stats

        edges = build_material_edges(set_id, stats)

        assert all(e["from_material_file_id"] != e["to_material_file_id"] for e in edges)
        assert all(e["strength"] >= MIN_EDGE_STRENGTH for e in edges)
        assert not any(e["from_material_file_id"] == a for e in edges)


class TestChunkLinks:
    def test_links_share_concepts(self, set_id, files):
        a, b = files
        s1 = signal(a, 0.9, role="definition", establishes=["tcp"])
        s2 = signal(b, 0.7, role="definition", reinforces=["tcp"])
        s3 = signal(b, 0.5, role="example", points_toward=["tcp"])

        links = build_chunk_links(set_id, [s1, s2, s3], max_per_concept=6, max_links=100)

        assert len(links) == 3
        first = links[0]
        assert first["from_material_chunk_id"] == s1.material_chunk_id
        assert first["to_material_chunk_id"] == s2.material_chunk_id
        assert first["relation"] == "redundant"
        assert first["strength"] == pytest.approx(0.8)
        assert links[1]["relation"] == "reinforces"

    def test_respects_caps(self, set_id, files):
        a, _ = files
        signals = [signal(a, 0.5, establishes=["tcp"]) for _ in range(10)]

        assert len(build_chunk_links(set_id, signals, max_per_concept=3, max_links=100)) == 3
        assert len(build_chunk_links(set_id, signals, max_per_concept=10, max_links=4)) == 4


class TestSetPosition:
    def test_spine_satellite_default(self, files):
        a, b = files
        ctx = SetPositionContext(spine={str(a)}, satellite={str(b)})

        assert set_position_score(a, [], ctx) == 1.0
        assert set_position_score(b, [], ctx) == 0.6
        assert set_position_score(uuid.uuid4(), [], ctx) == 0.8

    def test_boosts_and_penalty(self, files):
        a, _ = files
        ctx = SetPositionContext(core_thread="reliable tcp delivery", gaps={"qos"}, redundancy="tcp covered twice")

        assert set_position_score(a, ["qos"], ctx) == 1.0
        assert set_position_score(a, ["tcp"], ctx) == pytest.approx(0.8)
        assert set_position_score(a, ["udp"], ctx) == pytest.approx(0.8)

    def test_cross_set_default(self):
        assert cross_set_for_keys(["tcp"], {}) == 0.5
        assert cross_set_for_keys(["tcp", "udp"], {"udp": 0.9}) == 0.9

    def test_compound_weight_is_clamped_product(self):
        assert compound_weight(0.8, 0.5, 1.0, 0.5) == pytest.approx(0.2)
        assert compound_weight(2.0, 1.0, 1.0, 1.0) == 1.0

    def test_compound_updates_use_defaults(self, files):
        a, _ = files
        s = signal(a, 0.8, establishes=["tcp"])

        (row,) = compound_weight_updates([s], None, {"tcp": 0.5})

        assert row["intent_alignment_score"] == 0.5
        assert row["set_position_score"] == pytest.approx(0.8)
        assert row["compound_weight"] == pytest.approx(0.8 * 0.5 * 0.8 * 0.5)

    def test_compound_weights_by_key(self, files):
        a, _ = files
        s1 = signal(a, establishes=["tcp"])
        s1.compound_weight = 0.4
        s2 = signal(a, reinforces=["tcp", "udp"])
        s2.compound_weight = 0.6

        assert compound_weights_by_key([s1, s2]) == {"tcp": 0.6, "udp": 0.6}
        s1.compound_weight = s2.compound_weight = 0.0
        assert compound_weights_by_key([s1, s2]) == {}


class TestIntentsAndBatches:
    def test_intent_needs_rebuild(self):
        assert intent_needs_rebuild(None)
        assert intent_needs_rebuild(SimpleNamespace(core_thread="x", meta={"notes": ["fallback_intent"]}))
        assert intent_needs_rebuild(
            SimpleNamespace(
                core_thread="",
                meta={},
                destination_concepts=[],
                prerequisite_concepts=[],
                assumed_knowledge=[],
            )
        )
        assert not intent_needs_rebuild(SimpleNamespace(core_thread="x", meta={}))

    def test_estimate_alignment(self):
        intent = SimpleNamespace(
            from_state="",
            to_state="",
            core_thread="flow control",
            destination_concepts=["window"],
            prerequisite_concepts=["ack"],
            assumed_knowledge=[],
        )

        assert estimate_intent_alignment(intent, "") == 0.4
        assert estimate_intent_alignment(intent, "unrelated") == 0.5
        assert estimate_intent_alignment(intent, "Flow control uses a window and ACK") == pytest.approx(0.9)
        assert estimate_intent_alignment(None, "anything") == 0.5

    def test_batches_skip_existing_and_empty(self, set_id):
        f = make_file(set_id, "a.pdf")
        chunks = [make_chunk(f, i, "text " * 50, page=i) for i in range(5)]
        chunks[1].text = "   "

        batches = build_chunk_batches(chunks, {}, {chunks[0].id}, batch_size=2, excerpt_chars=20)

        flat = [item for batch in batches for item in batch]
        assert [len(b) for b in batches] == [2, 1]
        assert [item.chunk_id for item in flat] == [str(c.id) for c in chunks[2:]]
        assert all(item.excerpt.endswith("...") for item in flat)

    def test_fallback_rows_are_labelled(self, set_id):
        f = make_file(set_id, "a.pdf")
        chunk = make_chunk(f, 0, "text")
        (batch,) = build_chunk_batches([chunk], {}, set(), 8, 0)

        (row,) = fallback_chunk_signal_rows(f, None, batch)

        assert row["material_chunk_id"] == chunk.id
        assert row["metadata"]["notes"] == ["fallback_signal"]
        assert row["intent_alignment_score"] == 0.5

    def test_section_path_prefers_deepest(self, set_id):
        f = make_file(set_id, "a.pdf")
        chunk = make_chunk(f, 0, "text", page=5)
        sections = [
            SimpleNamespace(path="1", title="Intro", start_page=1, end_page=10, start_sec=None, end_sec=None),
            SimpleNamespace(path="1 > 2", title="Detail", start_page=4, end_page=6, start_sec=None, end_sec=None),
            SimpleNamespace(path="3", title="Other", start_page=20, end_page=30, start_sec=None, end_sec=None),
        ]

        assert section_path_by_chunk([chunk], sections) == {chunk.id: "1 > 2"}
