"""
Analysis Interfaces Layer
=========================

Interface adapters (controllers) for the AI analysis module.

Contains:
- Controllers: FastAPI route handlers

This is the outermost layer - handles HTTP requests/responses and
delegates to the orchestrator.
"""

from src.analysis.interfaces.controllers import analysis_router, get_orchestrator

__all__ = ["analysis_router", "get_orchestrator"]
