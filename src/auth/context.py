from dataclasses import dataclass


@dataclass
class SuperAdminContext:
    """Identity of the operator calling dead-letter and orphan-queue endpoints."""
    super_admin_id: str
    email: str
