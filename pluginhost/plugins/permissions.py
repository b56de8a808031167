# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Permission checking for the plugin system."""

from collections.abc import Iterable

from pluginhost.plugins.base import Permission

# Permissions that reach outside the host or expose personal data
DANGEROUS_PERMISSIONS: frozenset[Permission] = frozenset({
    Permission.FILESYSTEM,
    Permission.SYSTEM,
    Permission.CAMERA,
    Permission.MICROPHONE,
    Permission.LOCATION,
    Permission.CONTACTS,
})

PERMISSION_LABELS: dict[Permission, str] = {
    Permission.STORAGE: "Store data locally",
    Permission.NETWORK: "Make network requests",
    Permission.NOTIFICATIONS: "Show notifications",
    Permission.FILESYSTEM: "Access the file system",
    Permission.SYSTEM: "Access system information",
    Permission.CALENDAR: "Access calendar data",
    Permission.CONTACTS: "Access contacts",
    Permission.LOCATION: "Access location",
    Permission.CAMERA: "Use the camera",
    Permission.MICROPHONE: "Use the microphone",
}


class PermissionChecker:
    """Validates and checks plugin permissions."""

    def get_dangerous_permissions(
        self,
        permissions: Iterable[Permission],
    ) -> set[Permission]:
        """Get the subset of permissions that are considered dangerous.

        Args:
            permissions: Permissions to check

        Returns:
            Set of dangerous permissions from the input
        """
        return set(permissions) & DANGEROUS_PERMISSIONS

    def is_permission_valid(self, permission_str: str) -> bool:
        """Check if a permission string is a valid Permission enum value."""
        try:
            Permission(permission_str)
            return True
        except ValueError:
            return False

    def parse_permissions(
        self,
        permission_strings: Iterable[str],
    ) -> tuple[set[Permission], list[str]]:
        """Parse permission strings into Permission enums.

        Args:
            permission_strings: Permission strings from a manifest

        Returns:
            Tuple of (valid permissions set, list of invalid permission strings)
        """
        valid: set[Permission] = set()
        invalid: list[str] = []

        for perm_str in permission_strings:
            try:
                valid.add(Permission(perm_str))
            except ValueError:
                invalid.append(perm_str)

        return valid, invalid

    def check_permissions_subset(
        self,
        required: Iterable[Permission],
        granted: Iterable[Permission],
    ) -> tuple[bool, set[Permission]]:
        """Check if all required permissions are in the granted set.

        Returns:
            Tuple of (all_granted, missing_permissions)
        """
        missing = set(required) - set(granted)
        return len(missing) == 0, missing

    def format_permissions_for_display(
        self,
        permissions: Iterable[Permission],
    ) -> list[dict[str, str | bool]]:
        """Format permissions for display to an operator.

        Returns:
            List of dicts with 'value', 'label', and 'dangerous' keys
        """
        return [
            {
                "value": perm.value,
                "label": PERMISSION_LABELS.get(perm, perm.value.title()),
                "dangerous": perm in DANGEROUS_PERMISSIONS,
            }
            for perm in sorted(set(permissions), key=lambda p: p.value)
        ]
