"""bundlesmith - Cached multi-platform framework bundles for package graphs.

This package orchestrates an external compiler and merge tool to produce one
multi-architecture framework bundle per product of a resolved dependency
graph, reusing previous outputs through a content-fingerprint cache.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
