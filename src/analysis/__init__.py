"""
AI Analysis Module
==================

Bounded Context for asynchronous AI analysis of support tickets.

Responsibilities:
- Queue analysis and reply-generation work per ticket, singly or in bulk
- Run each attempt against the remote AI agent and normalize its answer
- Retry failed attempts per error class with exponential backoff
- Keep a full debug trail (steps, console logs, request/response bodies)
- Mirror the latest result onto the ticket and its activity trail
- Provide progress polling and job administration APIs
"""

__version__ = "1.0.0"
