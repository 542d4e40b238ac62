"""Portal roles and what each one is allowed to do."""
import enum


class Role(enum.Enum):
    ADMIN = 'admin'
    LIBRARIAN = 'librarian'
    STUDENT = 'student'

    @classmethod
    def parse(cls, value) -> 'Role':
        """Map a stored role string to a Role; anything unknown is a student."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or '').strip().lower())
        except ValueError:
            return cls.STUDENT


class Capability(enum.Enum):
    MANAGE_BOOKS = 'manage_books'
    VIEW_ALL_TRANSACTIONS = 'view_all_transactions'
    MANAGE_RESOURCES = 'manage_resources'
    MANAGE_ROLES = 'manage_roles'


_GRANTS = {
    Role.ADMIN: frozenset(Capability),
    Role.LIBRARIAN: frozenset({
        Capability.MANAGE_BOOKS,
        Capability.VIEW_ALL_TRANSACTIONS,
        Capability.MANAGE_RESOURCES,
    }),
    Role.STUDENT: frozenset(),
}


def can(role, capability: Capability) -> bool:
    if role is None:
        return False
    return capability in _GRANTS[Role.parse(role)]
