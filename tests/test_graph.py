"""Tests for the relationship graph."""

import pytest

from lessonbase.graph import RelationshipGraph, load_graph
from lessonbase.models import Lesson, LessonRelationship


def _lesson(lesson_id: str, **fields) -> Lesson:
    return Lesson(id=lesson_id, source_project="alpha", type="manual", content=f"Lesson {lesson_id}", **fields)


def _edge(source: str, target: str, relationship_type: str = "related") -> LessonRelationship:
    return LessonRelationship(lesson_id=source, related_lesson_id=target, relationship_type=relationship_type)


@pytest.fixture
def chain_graph():
    """a -> b -> c -> d, plus isolated e."""
    graph = RelationshipGraph()
    graph.load(
        [_lesson(i) for i in "abcde"],
        [_edge("a", "b"), _edge("b", "c", "prerequisite"), _edge("c", "d")],
    )
    return graph


class TestRelationshipGraph:
    def test_related_both_directions(self, chain_graph):
        assert set(chain_graph.related("b")) == {"a", "c"}
        assert chain_graph.related("b", "prerequisite") == ["c"]
        assert chain_graph.related("missing") == []

    def test_multiple_types_between_pair(self):
        graph = RelationshipGraph()
        graph.load([_lesson("a"), _lesson("b")], [_edge("a", "b"), _edge("a", "b", "alternative")])
        assert graph.get_statistics()["edge_types"] == {"related": 1, "alternative": 1}

    def test_prerequisites(self, chain_graph):
        assert chain_graph.prerequisites("b") == ["c"]
        assert chain_graph.prerequisites("a") == []

    def test_spider_respects_depth(self, chain_graph):
        visited, paths = chain_graph.spider("a", depth=2)
        assert set(visited) == {"a", "b", "c"}
        assert ["a", "b", "c"] in paths

    def test_spider_unknown_start(self, chain_graph):
        assert chain_graph.spider("zzz") == ([], [])

    def test_find_path_ignores_direction(self, chain_graph):
        assert chain_graph.find_path("d", "a") == ["d", "c", "b", "a"]
        assert chain_graph.find_path("a", "e") is None

    def test_statistics(self, chain_graph):
        stats = chain_graph.get_statistics()
        assert stats["total_nodes"] == 5
        assert stats["total_edges"] == 3
        assert stats["isolated_nodes"] == 1
        assert stats["connected_components"] == 2

    def test_empty_statistics(self):
        stats = RelationshipGraph().get_statistics()
        assert stats["total_nodes"] == 0
        assert stats["connected_components"] == 0

    def test_edges_to_unknown_lessons_dropped(self):
        graph = RelationshipGraph()
        graph.load([_lesson("a")], [_edge("a", "ghost")])
        assert graph.graph.number_of_edges() == 0

    def test_remove_lesson(self, chain_graph):
        chain_graph.remove_lesson("b")
        assert chain_graph.related("a") == []

    def test_to_dict(self, chain_graph):
        data = chain_graph.to_dict()
        assert len(data["nodes"]) == 5
        assert {"source": "b", "target": "c", "relation": "prerequisite", "weight": None} in data["links"]


class TestLoadGraph:
    @pytest.mark.asyncio
    async def test_load_from_store(self, store, make_lesson):
        a, b = make_lesson("A"), make_lesson("B")
        await store.add_lesson(a)
        await store.add_lesson(b)
        await store.add_relationship(_edge(a.id, b.id))

        graph = await load_graph(store)

        assert graph.related(a.id) == [b.id]
