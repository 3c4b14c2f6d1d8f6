"""Core application components.

- Settings and logging configuration
- Request-scoped dependency accessors
- Container wiring the engine to its collaborators
"""
