# ABOUTME: LegoCharm provider package initialization
# ABOUTME: Exposes version information for the client, reconcilers and plugin server

"""
LegoCharm Provider - declarative users and domain access grants for LegoCharm.

=============================================================================
WHAT IS LEGOCHARM?
=============================================================================

LegoCharm is an HTTP service that hands out ACME DNS-01 challenge rights.
It keeps three kinds of records behind a REST API at /api/v1/:

- USERS: accounts that authenticate with HTTP basic auth
- DOMAINS: fully qualified domain names the service knows about
- DOMAIN USER PERMISSIONS: "user X may manage domain Y (or its subdomains)"

=============================================================================
WHAT DOES THIS PACKAGE DO?
=============================================================================

Infrastructure-as-code tools describe the world declaratively:

    user "ci-bot" with email "ci@example.com"
    user "ci-bot" may manage "example.com" at level "subdomain"

This package turns such descriptions into API calls (create, read, update,
delete, import) and reports the remote state back so the tool can detect drift.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

legocharm_provider/
├── __init__.py              <- YOU ARE HERE: Package entry point
├── config.py                <- Settings from environment variables
├── provider.py              <- Provider shim: credentials -> client, resource registry
├── server.py                <- MCP plugin server exposing the reconcilers as tools
├── resources/
│   ├── base.py              <- Diagnostics, plan actions, Resource base class
│   ├── user.py              <- legocharm_user reconciler
│   └── user_domain_access.py <- legocharm_user_domain_access reconciler
└── utils/
    ├── client.py            <- Async HTTP client for the LegoCharm REST API
    ├── logging.py           <- Structured logging with audit trails
    └── safety.py            <- Read-only guard and rate limiting
"""

# Semantic version of the provider. Also sent in the User-Agent header.
__version__ = "0.1.0"

__all__ = ["__version__"]
