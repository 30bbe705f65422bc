"""Serialize a finished crawl as a directed GML graph."""
from __future__ import annotations

from typing import Iterable, List, Sequence, Set

import networkx as nx

from ..models import ChildTask, GraphNode

NODE_FIELDS = (
    "user_id",
    "label",
    "type",
    "profile_url",
    "description",
    "profile_image_url",
    "friends",
    "followers",
)


def valid_node_ids(root: GraphNode) -> Set[str]:
    """The root plus every account directly linked to it."""

    return {root.id, *root.friend_ids, *root.follower_ids}


def _node_attributes(node: GraphNode) -> dict:
    return {
        "user_id": node.id,
        "label": node.display_name,
        "type": node.relationship.value,
        "profile_url": node.profile_url,
        "description": node.description,
        "profile_image_url": node.avatar_url,
        "friends": node.friend_count,
        "followers": node.follower_count,
    }


def build_export_graph(root: GraphNode, children: Iterable[ChildTask]) -> nx.DiGraph:
    """Directed graph of the root's neighbourhood.

    Nodes that carry a record have a ``record`` attribute; edge endpoints
    without one (valid but never hydrated) stay bare.
    """
    valid = valid_node_ids(root)
    graph = nx.DiGraph()
    nodes: List[GraphNode] = [root]
    nodes.extend(child.node for child in children if child.node.id in valid and child.node.id != root.id)

    for node in nodes:
        graph.add_node(node.id, record=True, **_node_attributes(node))

    for node in nodes:
        for friend_id in node.friend_ids:
            if friend_id in valid:
                graph.add_edge(node.id, friend_id)
        for follower_id in node.follower_ids:
            if follower_id in valid:
                graph.add_edge(follower_id, node.id)
    return graph


def _escape(value: object) -> str:
    return str(value).replace("&", "&amp;").replace('"', "&quot;")


def write_gml(graph: nx.DiGraph) -> str:
    lines = ["graph [", "  directed 1"]
    for node_id, attrs in graph.nodes(data=True):
        if not attrs.get("record"):
            continue
        lines.append("  node [")
        lines.append(f"    id {node_id}")
        for key in NODE_FIELDS:
            value = attrs[key]
            if isinstance(value, int):
                lines.append(f"    {key} {value}")
            else:
                lines.append(f'    {key} "{_escape(value)}"')
        lines.append("  ]")
    for source, target in sorted(graph.edges()):
        lines.append("  edge [")
        lines.append(f"    source {source}")
        lines.append(f"    target {target}")
        lines.append("  ]")
    lines.append("]")
    return "\n".join(lines) + "\n"


def export_graph(root: GraphNode, children: Sequence[ChildTask]) -> bytes:
    return write_gml(build_export_graph(root, children)).encode("utf-8")
