"""Tests for greedy topic clustering and cluster labeling."""

import logging

import numpy as np
import pytest

from app.core.errors import ScopeViolation
from app.core.schemas_knowledge import ClusterLabel
from app.core.topic_clustering import TopicClusteringEngine, common_tags, greedy_cluster
from tests.fakes.knowledge import ORG_ID, OTHER_ORG_ID, FakeLabeler, FakeVectorStore, make_vector


def _pricing_and_hiring_store() -> FakeVectorStore:
    """Three pricing items, three hiring items, one loner."""
    return FakeVectorStore(
        [
            make_vector("p1", [1.0, 0.0, 0.0], title="Pricing tiers", text_preview="pricing discussion", tags=["pricing"]),
            make_vector("p2", [0.98, 0.1, 0.0], title="Pricing review", text_preview="pricing update", tags=["pricing"]),
            make_vector("p3", [0.97, 0.0, 0.1], title="Pricing launch", text_preview="pricing plan", tags=["pricing", "launch"]),
            make_vector("h1", [0.0, 1.0, 0.0], title="Hiring plan", text_preview="hiring engineers", tags=["hiring"]),
            make_vector("h2", [0.1, 0.98, 0.0], title="Hiring pipeline", text_preview="hiring process", tags=["hiring"]),
            make_vector("h3", [0.0, 0.97, 0.1], title="Hiring budget", text_preview="hiring budget", tags=["hiring"]),
            make_vector("z1", [0.0, 0.0, 1.0], title="Office move", text_preview="new office"),
        ]
    )


class TestGreedyCluster:
    def test_groups_items_above_threshold_with_seed(self):
        matrix = np.array(
            [
                [1.0, 0.8, 0.2],
                [0.8, 1.0, 0.1],
                [0.2, 0.1, 1.0],
            ]
        )
        assert greedy_cluster(matrix, threshold=0.7, max_clusters=10) == [[0, 1], [2]]

    def test_threshold_is_inclusive(self):
        matrix = np.array([[1.0, 0.7], [0.7, 1.0]])
        assert greedy_cluster(matrix, threshold=0.7, max_clusters=10) == [[0, 1]]

    def test_stops_at_max_clusters(self):
        matrix = np.eye(4)
        assert greedy_cluster(matrix, threshold=0.7, max_clusters=2) == [[0], [1]]


class TestCommonTags:
    def test_keeps_tags_shared_by_half(self):
        assert common_tags([["a", "b"], ["a"], ["a", "c"], ["b"]]) == ["a", "b"]

    def test_empty(self):
        assert common_tags([]) == []


class TestTopicClusteringEngine:
    @pytest.mark.asyncio
    async def test_clusters_and_unclustered_items(self):
        engine = TopicClusteringEngine(_pricing_and_hiring_store())

        result = await engine.cluster(ORG_ID, min_cluster_size=3, similarity_threshold=0.7, use_ai=False)

        members = sorted(sorted(c.member_ids) for c in result.clusters)
        assert members == [["h1", "h2", "h3"], ["p1", "p2", "p3"]]
        assert result.unclustered_items == ["z1"]
        assert result.truncated is False

    @pytest.mark.asyncio
    async def test_deterministic_across_runs(self):
        engine = TopicClusteringEngine(_pricing_and_hiring_store())

        first = await engine.cluster(ORG_ID, use_ai=False)
        second = await engine.cluster(ORG_ID, use_ai=False)

        assert first.model_dump() == second.model_dump()

    @pytest.mark.asyncio
    async def test_keyword_labels_and_shared_tags(self):
        engine = TopicClusteringEngine(_pricing_and_hiring_store())

        result = await engine.cluster(ORG_ID, use_ai=False)

        pricing = next(c for c in result.clusters if "p1" in c.member_ids)
        assert "pricing" in pricing.name.lower()
        assert pricing.tags[0] == "pricing"
        assert set(pricing.member_scores) == {"p1", "p2", "p3"}
        assert pricing.centroid is not None

    @pytest.mark.asyncio
    async def test_fewer_items_than_min_size_are_all_unclustered(self):
        store = FakeVectorStore([make_vector("a", [1.0, 0.0]), make_vector("b", [1.0, 0.0])])
        engine = TopicClusteringEngine(store)

        result = await engine.cluster(ORG_ID, min_cluster_size=3, use_ai=False)

        assert result.clusters == []
        assert result.unclustered_items == ["a", "b"]

    @pytest.mark.asyncio
    async def test_small_clusters_dissolve(self):
        engine = TopicClusteringEngine(_pricing_and_hiring_store())

        result = await engine.cluster(ORG_ID, min_cluster_size=4, use_ai=False)

        assert result.clusters == []
        assert len(result.unclustered_items) == 7

    @pytest.mark.asyncio
    async def test_max_clusters_counts_provisional_clusters(self):
        engine = TopicClusteringEngine(_pricing_and_hiring_store())

        result = await engine.cluster(ORG_ID, max_clusters=1, use_ai=False)

        assert [sorted(c.member_ids) for c in result.clusters] == [["h1", "h2", "h3"]]
        assert result.unclustered_items == ["p1", "p2", "p3", "z1"]

    @pytest.mark.asyncio
    async def test_ai_label_used_when_available(self):
        labeler = FakeLabeler(ClusterLabel(name="Hiring Roadmap", description="Team growth", tags=["team"]))
        engine = TopicClusteringEngine(_pricing_and_hiring_store(), labeler=labeler)

        result = await engine.cluster(ORG_ID, use_ai=True)

        assert {c.name for c in result.clusters} == {"Hiring Roadmap"}
        assert all(c.tags[0] == "team" for c in result.clusters)
        assert len(labeler.calls) == 2

    @pytest.mark.asyncio
    async def test_ai_failure_falls_back_to_keyword_labels(self):
        labeler = FakeLabeler(fail=True)
        engine = TopicClusteringEngine(_pricing_and_hiring_store(), labeler=labeler)

        with_ai = await engine.cluster(ORG_ID, use_ai=True)
        without_ai = await engine.cluster(ORG_ID, use_ai=False)

        assert [c.name for c in with_ai.clusters] == [c.name for c in without_ai.clusters]
        assert all(c.description is None for c in with_ai.clusters)

    @pytest.mark.asyncio
    async def test_use_ai_false_never_calls_labeler(self):
        labeler = FakeLabeler()
        engine = TopicClusteringEngine(_pricing_and_hiring_store(), labeler=labeler)

        await engine.cluster(ORG_ID, use_ai=False)

        assert labeler.calls == []

    @pytest.mark.asyncio
    async def test_foreign_vector_raises_scope_violation(self):
        store = _pricing_and_hiring_store()
        store.vectors.append(make_vector("x1", [1.0, 0.0, 0.0], organization_id=OTHER_ORG_ID))
        engine = TopicClusteringEngine(store)

        with pytest.raises(ScopeViolation):
            await engine.cluster(ORG_ID, use_ai=False)

    @pytest.mark.asyncio
    async def test_item_cap_is_reported(self, caplog):
        engine = TopicClusteringEngine(_pricing_and_hiring_store(), max_items=4)

        with caplog.at_level(logging.WARNING, logger="app.core.topic_clustering"):
            result = await engine.cluster(ORG_ID, min_cluster_size=3, use_ai=False)

        # Loaded in entity id order: h1, h2, h3, p1
        assert [sorted(c.member_ids) for c in result.clusters] == [["h1", "h2", "h3"]]
        assert result.unclustered_items == ["p1"]
        assert result.truncated is True
        assert any("capped at 4" in r.getMessage() for r in caplog.records)
