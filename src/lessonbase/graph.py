"""Graph operations for lesson relationships using NetworkX."""

import networkx as nx

from .models import Lesson, LessonRelationship


class RelationshipGraph:
    """Lesson relationship edges as a directed multigraph.

    Two lessons can be linked by more than one relationship type, so edges
    are keyed by their type.
    """

    def __init__(self):
        self.graph = nx.MultiDiGraph()

    def add_lesson(self, lesson: Lesson) -> None:
        """Add a lesson node to the graph."""
        self.graph.add_node(
            lesson.id,
            title=lesson.title,
            category=lesson.category,
            subcategory=lesson.subcategory,
            tags=lesson.tags,
            relevance_score=lesson.relevance_score,
            is_generic=lesson.is_generic,
        )

    def add_relationship(self, relationship: LessonRelationship) -> None:
        self.graph.add_edge(
            relationship.lesson_id,
            relationship.related_lesson_id,
            key=relationship.relationship_type,
            relation=relationship.relationship_type,
            weight=relationship.relevance_score,
        )

    def remove_lesson(self, lesson_id: str) -> None:
        """Remove a lesson and its edges from the graph."""
        if lesson_id in self.graph:
            self.graph.remove_node(lesson_id)

    def related(self, lesson_id: str, relation_type: str | None = None) -> list[str]:
        """Get related lessons in either direction.

        Args:
            lesson_id: The lesson to get relationships for
            relation_type: Optional filter for a specific relationship type.
        """
        if lesson_id not in self.graph:
            return []
        related: dict[str, None] = {}
        for _, target, rel in self.graph.out_edges(lesson_id, keys=True):
            if relation_type is None or rel == relation_type:
                related[target] = None
        for source, _, rel in self.graph.in_edges(lesson_id, keys=True):
            if relation_type is None or rel == relation_type:
                related[source] = None
        return list(related)

    def prerequisites(self, lesson_id: str) -> list[str]:
        """Lessons this one points at as prerequisites."""
        if lesson_id not in self.graph:
            return []
        return [t for _, t, rel in self.graph.out_edges(lesson_id, keys=True) if rel == "prerequisite"]

    def spider(self, start_id: str, depth: int = 2) -> tuple[list[str], list[list[str]]]:
        """
        Traverse the graph from a starting lesson.

        Returns:
            (visited_ids, paths) - All visited nodes and the paths taken
        """
        if start_id not in self.graph:
            return [], []

        visited: set[str] = set()
        paths: list[list[str]] = []

        def traverse(node_id: str, current_path: list[str], current_depth: int):
            if current_depth > depth or node_id in visited:
                return

            visited.add(node_id)
            current_path = current_path + [node_id]

            if len(current_path) > 1:
                paths.append(current_path.copy())

            for related_id in self.related(node_id):
                traverse(related_id, current_path, current_depth + 1)

        traverse(start_id, [], 0)
        return list(visited), paths

    def find_path(self, from_id: str, to_id: str) -> list[str] | None:
        """Find shortest path between two lessons, ignoring edge direction."""
        try:
            return nx.shortest_path(self.graph.to_undirected(as_view=True), from_id, to_id)
        except (nx.NetworkXNoPath, nx.NodeNotFound):
            return None

    def get_statistics(self) -> dict:
        """Get graph statistics."""
        edge_types: dict[str, int] = {}
        for _, _, rel in self.graph.edges(keys=True):
            edge_types[rel] = edge_types.get(rel, 0) + 1
        return {
            "total_nodes": self.graph.number_of_nodes(),
            "total_edges": self.graph.number_of_edges(),
            "edge_types": edge_types,
            "isolated_nodes": nx.number_of_isolates(self.graph),
            "connected_components": nx.number_weakly_connected_components(self.graph)
            if self.graph.number_of_nodes()
            else 0,
        }

    def to_dict(self) -> dict:
        """Export graph as dictionary for visualization."""
        nodes = []
        for node_id, data in self.graph.nodes(data=True):
            nodes.append({
                "id": node_id,
                "title": data.get("title"),
                "category": data.get("category"),
                "subcategory": data.get("subcategory"),
                "tags": data.get("tags", []),
                "relevance_score": data.get("relevance_score", 0.0),
                "is_generic": data.get("is_generic", True),
            })

        links = []
        for source, target, data in self.graph.edges(data=True):
            links.append({
                "source": source,
                "target": target,
                "relation": data.get("relation", "related"),
                "weight": data.get("weight"),
            })

        return {"nodes": nodes, "links": links}

    def load(self, lessons: list[Lesson], relationships: list[LessonRelationship]) -> None:
        """Rebuild the graph from lessons and their relationship rows."""
        self.graph.clear()
        for lesson in lessons:
            self.add_lesson(lesson)
        known = set(self.graph.nodes)
        for relationship in relationships:
            if relationship.lesson_id in known and relationship.related_lesson_id in known:
                self.add_relationship(relationship)


async def load_graph(store) -> RelationshipGraph:
    """Build a RelationshipGraph from everything currently in a LessonStore."""
    lessons: list[Lesson] = []
    async for page in store.iter_lesson_pages(500):
        lessons.extend(page)
    graph = RelationshipGraph()
    graph.load(lessons, await store.get_relationships())
    return graph
