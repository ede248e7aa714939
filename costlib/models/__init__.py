from .org import Org
from .user import User
from .org_membership import OrgMembership, ROLE_OWNER, ROLE_ADMIN, ROLE_MEMBER
from .division import Division
from .section import Section
from .assembly import Assembly
from .library_item import LibraryItem

__all__ = [
    "Org",
    "User",
    "OrgMembership",
    "ROLE_OWNER",
    "ROLE_ADMIN",
    "ROLE_MEMBER",
    "Division",
    "Section",
    "Assembly",
    "LibraryItem",
]
