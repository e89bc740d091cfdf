#!/usr/bin/env python3
"""
Convenient entry point for the Honey CLI.

Usage:
    python run_cli.py [--url URL] health|stats|sessions|recover|capture|search ...
"""
from dotenv import load_dotenv

load_dotenv()

from honey.cli import main

if __name__ == "__main__":
    main()
