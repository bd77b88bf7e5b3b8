"""
Circle Access Service
=====================

Access-control decisions for judicial cases shared across circles:
1. Which circles are entitled on a case (primary + collaborators)
2. Whether an actor may view or change a case, thread, message or document
3. An append-only audit trail of every decision

The datastore is SQLAlchemy; the HTTP surface is FastAPI.
"""

__version__ = "1.0.0"
