"""
Database package initialization.

The package follows a modular structure:
- base: Declarative base, mixins and column helpers
- connection: Async engine and session management
- models: ORM models for orders, couriers and delivery sessions
"""

# Import submodules explicitly when needed to avoid circular dependencies

__all__ = []
