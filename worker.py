#!/usr/bin/env python3
"""
Evidence Export Worker

Usage:
    python worker.py [--concurrency=N] [--poll-interval=S] [--worker-id=ID] [--max-attempts=N]
"""

from evidence_export.worker import main

if __name__ == "__main__":
    main()
