import os
from dataclasses import dataclass


@dataclass
class LocalUser:
    username: str
    role: str
    is_active: bool = True


# Manual user list for local/dev usage and tests.
USERS = [
    {"username": "admin", "password": os.getenv("LOCAL_ADMIN_PASSWORD", "admin123"), "role": "admin"},
    {"username": "analyst", "password": os.getenv("LOCAL_ANALYST_PASSWORD", "analyst123"), "role": "analyst"},
]


def use_local_auth() -> bool:
    return os.getenv("USE_LOCAL_AUTH", "0") == "1"


def get_local_user(username: str) -> LocalUser | None:
    for item in USERS:
        if item["username"] == username:
            return LocalUser(username=item["username"], role=item["role"], is_active=True)
    return None


def verify_local_user(username: str, password: str) -> LocalUser | None:
    for item in USERS:
        if item["username"] == username and item["password"] == password:
            return LocalUser(username=item["username"], role=item["role"], is_active=True)
    return None
