"""
Password validation utilities
Enforces the account password policy
"""

from typing import Optional, Tuple

from errors import ValidationError


class PasswordValidator:
    """Validates password length and reuse"""

    MIN_LENGTH = 8
    MAX_LENGTH = 128

    @staticmethod
    def validate(password: Optional[str], label: str = "Password") -> Tuple[bool, str]:
        """
        Validate password against the policy

        Returns:
            (is_valid, error_message)
        """
        if not password:
            return False, f"{label} is required"

        if len(password) < PasswordValidator.MIN_LENGTH:
            return False, f"{label} must be at least {PasswordValidator.MIN_LENGTH} characters long"

        if len(password) > PasswordValidator.MAX_LENGTH:
            return False, f"{label} must not exceed {PasswordValidator.MAX_LENGTH} characters"

        return True, ""


def validate_password(password: Optional[str], label: str = "Password") -> None:
    """
    Validate password and raise if invalid

    Raises:
        ValidationError: If password doesn't meet requirements
    """
    is_valid, error_message = PasswordValidator.validate(password, label)
    if not is_valid:
        raise ValidationError(error_message)
