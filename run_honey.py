#!/usr/bin/env python3
"""
Start the Honey memory service.

Usage:
    python run_honey.py
"""
from honey.gateway.__main__ import main

if __name__ == "__main__":
    main()
