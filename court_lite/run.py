#!/usr/bin/env python3
"""
Quick runner for the Case Court Service
=======================================

Usage:
    python -m court_lite.run
    # or
    python court_lite/run.py

Environment:
    HOST / PORT     bind address (default 0.0.0.0:8000)
    RELOAD=true     auto-reload on code changes
"""

import os

import uvicorn

if __name__ == "__main__":
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8000"))

    print("Starting Case Court Service...")
    print(f"API docs: http://localhost:{port}/docs")
    print(f"Health:   http://localhost:{port}/health")
    print()

    uvicorn.run(
        "court_lite.api:app",
        host=host,
        port=port,
        reload=os.environ.get("RELOAD", "false").lower() == "true",
    )
