#!/usr/bin/env python3
"""
Main entry point for running the loadrig CLI as a module.

Usage:
    python3 -m loadrig run run.yaml
    python3 -m loadrig run run.yaml --base-url http://staging:8091 --vus 20
    python3 -m loadrig validate run.yaml
    python3 -m loadrig plan run.yaml --step 30s
    python3 -m loadrig info
"""

from .cli import main

if __name__ == "__main__":
    main()
