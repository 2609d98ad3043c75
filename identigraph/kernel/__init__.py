"""Kernel utilities shared across the package.

Rules:
- Kernel code must not import from the identity package or the db layer.
- Kernel utilities should stay small and stable; avoid business logic here.
"""
