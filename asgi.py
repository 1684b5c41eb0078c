"""
asgi.py -- ASGI entry point for Elixpo Accounts.

Run with:  uvicorn asgi:app --reload
           python main.py serve

The application is assembled in api/main.py; this module only re-exports it
so process managers have a stable import path.
"""

from api.main import app

__all__ = ["app"]
