"""
ClientDesk - Background Tasks Package

Celery background tasks.
"""
