MEMBER_PERMISSIONS = frozenset(
    {
        "crm.leads.read",
        "crm.leads.create",
        "crm.leads.update",
        "crm.leads.delete",
        "crm.deals.read",
        "crm.deals.create",
        "crm.deals.update",
        "crm.deals.delete",
        "crm.tasks.read",
        "crm.tasks.create",
        "crm.tasks.update",
        "crm.tasks.delete",
        "crm.interactions.read",
        "crm.interactions.create",
        "crm.meetings.read",
        "crm.meetings.create",
        "crm.meetings.update",
        "crm.meetings.delete",
        "crm.reports.read",
        "crm.users.read",
    }
)

ADMIN_PERMISSIONS = MEMBER_PERMISSIONS | {"crm.users.manage", "system.metrics.read"}

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "member": MEMBER_PERMISSIONS,
    "admin": ADMIN_PERMISSIONS,
}


def resolve_role(roles: list[str]) -> str:
    normalized = {str(role).lower() for role in roles}
    return "admin" if "admin" in normalized else "member"


def permissions_for_roles(roles: list[str]) -> set[str]:
    granted: set[str] = set()
    for role in roles:
        granted |= ROLE_PERMISSIONS.get(str(role).lower(), frozenset())
        if "." in role:
            granted.add(role)
    return granted
