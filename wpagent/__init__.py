"""
WP-Agent - conversational WordPress management agent.

Turns free-text requests into conversational replies or explicitly
confirmed site actions, and survives failures of the generative service
and of the remote site.

Packages:
- foundation: dispatch engine, resilient caller, session memory,
  advisory merger, fallback responder, auto-healing, generative clients
- server: FastAPI application, configuration, rate limiting, site client
"""

__version__ = "1.0.0"
