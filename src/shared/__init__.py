"""
Shared Kernel Module
====================

This module contains shared infrastructure used across bounded contexts.

Architecture Pattern: Modular Monolith
- Each module (analysis) is a bounded context
- Shared kernel contains only generic infrastructure (logging, middleware)

DO NOT add analysis business logic to the shared kernel.
"""

__version__ = "1.0.0"
