"""
BILLSWEEP - API Module

FastAPI server exposing:
- Billing sweeps
- Lifecycle hooks (creation / termination)
- Owner statements
- Timeline verification
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
