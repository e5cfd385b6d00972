"""
User roles enumeration.

Defines the back-office role types for the field-service system.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        SUPERADMIN: Full access, including finances and pricing
        ADMIN: Dispatch and verification of work orders
        SUPERVISOR: Read-only oversight of technicians
    """
    SUPERADMIN = "SUPERADMIN"
    ADMIN = "ADMIN"
    SUPERVISOR = "SUPERVISOR"
