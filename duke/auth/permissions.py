"""
Capability predicates.

Every access decision in the portal is made here, from the actor's role and
(where relevant) the target user or organisation. Callers raise
UnauthorisedError when a predicate is false.
"""

from ..models.org import Organisation
from ..models.user import Role, User, is_pupil, role_org_id

MAGNITUDES = {
    "owner": 5,
    "admin": 4,
    "org_admin": 3,
    "teacher": 2,
    "pupil": 1,
}


def magnitude(role: Role) -> int:
    return MAGNITUDES[role.kind]


def is_global(role: Role) -> bool:
    """Owner and Admin act across every organisation."""
    return role.kind in ("owner", "admin")


def is_member_of(role: Role, org_id) -> bool:
    return role_org_id(role) == org_id


def can_view_accounts(actor: User) -> bool:
    return is_global(actor.role)


def can_add_admin(actor: User) -> bool:
    return actor.role.kind == "owner"


def can_view_orgs(actor: User) -> bool:
    return is_global(actor.role)


def can_delete_orgs(actor: User) -> bool:
    return is_global(actor.role)


def can_view_org(actor: User, org: Organisation) -> bool:
    return is_global(actor.role) or is_member_of(actor.role, org.id)


def can_add_associate(actor: User, org: Organisation) -> bool:
    if is_global(actor.role):
        return True
    return actor.role.kind == "org_admin" and is_member_of(actor.role, org.id)


def can_view_outstanding(actor: User) -> bool:
    return is_global(actor.role)


def can_view_stats(actor: User) -> bool:
    return is_global(actor.role)


def can_view_user(actor: User, target: User) -> bool:
    if is_pupil(actor.role):
        return actor.id == target.id
    if magnitude(actor.role) < magnitude(target.role):
        return False
    target_org = role_org_id(target.role)
    if target_org is None:
        return True
    return is_global(actor.role) or is_member_of(actor.role, target_org)


def can_delete_user(actor: User, target: User) -> bool:
    return (
        can_view_user(actor, target)
        and actor.id != target.id
        and magnitude(actor.role) > magnitude(target.role)
    )


# Derived gates

def can_review(actor: User, pupil: User) -> bool:
    """Non-pupils who can view the pupil may review the pupil's sections."""
    return not is_pupil(actor.role) and can_view_user(actor, pupil)


def can_add_pupil(actor: User, org: Organisation) -> bool:
    return can_view_org(actor, org) and not is_pupil(actor.role)


def can_delete_invalid_users(actor: User) -> bool:
    return can_view_accounts(actor)
