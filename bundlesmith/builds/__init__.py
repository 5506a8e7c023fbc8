"""Build orchestration module.

This module handles:
- Build options and platform matrix resolution
- Fingerprint computation and cache decisions
- Cache storage backends
- Running the external compiler
- Bundle assembly and publishing
- Run orchestration and build history
"""

# Lazy imports for submodules to avoid circular imports
# Access via bundlesmith.builds.cache, bundlesmith.builds.service, etc.
