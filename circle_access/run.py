#!/usr/bin/env python3
"""
Quick runner for the Circle Access Service
==========================================

Usage:
    python -m circle_access.run
"""

import uvicorn

from .config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    print(f"Starting Circle Access Service v{settings.service_version}...")
    print("API docs: http://localhost:8000/docs")
    print("Health:   http://localhost:8000/health")
    print()

    uvicorn.run(
        "circle_access.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
