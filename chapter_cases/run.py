#!/usr/bin/env python3
"""
Quick runner for Chapter Case File Service
==========================================

Usage:
    python -m chapter_cases.run
"""

import uvicorn

if __name__ == "__main__":
    print("Starting Chapter Case File Service...")
    print("API docs: http://localhost:8000/docs")
    print("Health:   http://localhost:8000/health")
    print()

    uvicorn.run(
        "chapter_cases.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
