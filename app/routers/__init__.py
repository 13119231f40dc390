"""
ClientDesk - Routers Package

FastAPI route handlers.

Routers:
- clients: Clients, partners/managers and documents
- compliance: Compliance status, alerts and submission deadlines
"""

from app.routers import clients, compliance

__all__ = ["clients", "compliance"]
