"""
asgi.py -- ASGI entry point for Shebamiles.

Run with:  uvicorn asgi:app --reload
           uvicorn asgi:app --host 0.0.0.0 --port 8000 --proxy-headers

Kept separate from api/main.py so process managers and tests import the same
object by a stable, framework-neutral path.
"""

from api.main import app

__all__ = ["app"]
