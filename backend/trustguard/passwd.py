import getpass
import sys

from trustguard.security import hash_password


def main() -> int:
    """Prompt for the admin password and print the bcrypt hash for ADMIN_PASSWORD."""
    password = getpass.getpass("Admin password: ")
    if not password:
        print("Password must not be empty", file=sys.stderr)
        return 1
    if getpass.getpass("Repeat password: ") != password:
        print("Passwords do not match", file=sys.stderr)
        return 1

    print(hash_password(password))
    return 0


if __name__ == "__main__":
    sys.exit(main())
