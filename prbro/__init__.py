"""
pr-bro - Rank the pull requests waiting on you.

A CLI tool that:
1. Runs your saved GitHub search queries in parallel
2. Enriches each hit with size, approvals and your own review state
3. Scores every PR with a configurable multi-factor formula
4. Prints the ranked queue (snoozed PRs kept separately)

Usage:
    pr-bro init             # Write a starter config
    pr-bro list             # Fetch, score and print the queue
    pr-bro validate         # Check the scoring config without network access
    pr-bro snooze URL       # Hide a PR (optionally --for 2d)
    pr-bro unsnooze URL     # Bring a PR back
    pr-bro cache clear      # Delete the HTTP cache
"""

__version__ = "0.1.0"
__author__ = "pr-bro"
