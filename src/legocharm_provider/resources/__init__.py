# ABOUTME: Resources package initialization for the LegoCharm provider
# ABOUTME: Exposes the reconciler base class and the two LegoCharm resources

"""
LegoCharm Provider Resources Package

    - base.py: Diagnostics, plan actions and the Resource base class
    - user.py: legocharm_user
    - user_domain_access.py: legocharm_user_domain_access
"""

from legocharm_provider.resources.base import (
    Diagnostics,
    PlanAction,
    Resource,
    ResourceResponse,
)
from legocharm_provider.resources.user import UserResource
from legocharm_provider.resources.user_domain_access import UserDomainAccessResource

__all__ = [
    "Diagnostics",
    "PlanAction",
    "Resource",
    "ResourceResponse",
    "UserDomainAccessResource",
    "UserResource",
]
