"""Shared utilities and cross-domain components.

- Exception classes for consistent error handling
- Permission catalog, role registry and the resolution engine
"""
