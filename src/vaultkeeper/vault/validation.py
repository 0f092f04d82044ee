# Vault - Input Validation
#
# Record names are display labels: bounded length, no control characters,
# no path separators (names are shown in listings and used as CLI lookups).

from .exceptions import InvalidInput

NAME_MIN_LENGTH = 1
NAME_MAX_LENGTH = 128
NAME_FORBIDDEN_CHARS = "/\\"
MASTER_PASSWORD_MIN_LENGTH = 8


def validate_name(name: str, *, field: str = "name") -> str:
    """Check a record name and return it unchanged.

    Raises:
        InvalidInput: If the name is empty, too long, or has forbidden characters.
    """
    if not isinstance(name, str):
        raise InvalidInput(f"{field} must be a string")
    if len(name) < NAME_MIN_LENGTH:
        raise InvalidInput(f"{field} must not be empty")
    if len(name) > NAME_MAX_LENGTH:
        raise InvalidInput(
            f"{field} is {len(name)} characters long (max {NAME_MAX_LENGTH})"
        )
    for char in name:
        if char in NAME_FORBIDDEN_CHARS:
            raise InvalidInput(f"{field} cannot contain character {char!r}")
        if ord(char) < 32 or ord(char) == 127:
            raise InvalidInput(f"{field} cannot contain control characters")
    return name


def validate_master_password(password: str) -> str:
    """
    Verify master password meets minimum requirements.

    Requirements:
    - At least 8 characters
    - Not only whitespace

    Returns:
        The password unchanged.
    """
    if not isinstance(password, str) or len(password) < MASTER_PASSWORD_MIN_LENGTH:
        raise InvalidInput(
            f"Master password must be at least {MASTER_PASSWORD_MIN_LENGTH} characters long"
        )
    if not password.strip():
        raise InvalidInput("Master password must not be only whitespace")
    return password
