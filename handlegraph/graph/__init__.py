"""Graph export helpers."""

from .exporter import build_export_graph, export_graph, valid_node_ids, write_gml

__all__ = ["build_export_graph", "export_graph", "valid_node_ids", "write_gml"]
