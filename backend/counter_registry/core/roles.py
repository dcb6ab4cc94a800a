from enum import Enum
from typing import Optional


class UserRole(str, Enum):
    manager = "manager"
    assistant_manager = "assistant-manager"
    guide = "guide"
    pub_crawl_guide = "pub-crawl-guide"


class StaffRole(str, Enum):
    guide = "guide"
    assistant_manager = "assistant_manager"


MANAGER_ROLES = {UserRole.manager, UserRole.assistant_manager}


def is_manager_slug(slug: Optional[str]) -> bool:
    return (slug or "") in {r.value for r in MANAGER_ROLES}


def resolve_staff_role(slug: Optional[str]) -> Optional[StaffRole]:
    """Map a user type slug to the role it holds on a counter, None if not eligible"""
    if slug in (UserRole.guide.value, UserRole.pub_crawl_guide.value):
        return StaffRole.guide
    if slug == UserRole.assistant_manager.value:
        return StaffRole.assistant_manager
    return None
