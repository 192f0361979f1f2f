# ABOUTME: Utilities package initialization for the LegoCharm provider
# ABOUTME: Contains the API client, logging and safety helpers shared by reconcilers

"""
LegoCharm Provider Utilities Package

Shared utilities:
    - client.py: LegoCharm API client with retry logic and not-found detection
    - safety.py: Read-only guard and rate limiting
    - logging.py: Structured logging with correlation IDs and audit trails
"""
