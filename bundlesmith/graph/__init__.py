"""Resolved dependency graph boundary.

The graph itself is resolved by an external collaborator; this package
validates the run document and exposes immutable Product values.
"""

from bundlesmith.graph.schema import Product, RunDocument

__all__ = ["Product", "RunDocument"]
