import os

from db.session import SessionLocal
from db.base import Base
from db.session import engine
from authentication.models import User
from authentication.security import hash_password


def ensure_user(db, username: str, password: str, role: str) -> bool:
    user = db.query(User).filter(User.username == username).first()
    if user is None:
        user = User(
            username=username,
            password_hash=hash_password(password),
            role=role,
            is_active=True,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return True
    return False


def main():
    Base.metadata.create_all(bind=engine)
    admin_username = os.getenv("ADMIN_USERNAME", "admin")
    admin_password = os.getenv("ADMIN_PASSWORD", "admin123")
    analyst_username = os.getenv("ANALYST_USERNAME", "analyst")
    analyst_password = os.getenv("ANALYST_PASSWORD", "analyst123")

    db = SessionLocal()
    try:
        created_admin = ensure_user(db, admin_username, admin_password, "admin")
        created_analyst = ensure_user(db, analyst_username, analyst_password, "analyst")
        print(f"Seed complete. admin_created={created_admin} analyst_created={created_analyst}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
