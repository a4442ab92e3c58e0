# tests/property/__init__.py
"""Property-based tests for formulabench.

Property-based testing validates invariants that must hold for ALL inputs,
not just the specific examples we think of.

Test categories:
- test_paths_properties: flatten/reconstruct symmetry for nested inputs
- test_cache_properties: artifact cache size bound and LRU survival
- test_canonical_properties: input fingerprint determinism
"""
