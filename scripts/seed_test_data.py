"""
Seed the local database with sample roles, billers, a project and an accommodation.

Usage:
  python scripts/seed_test_data.py

This script is idempotent: running it multiple times will upsert the same
records based on unique fields (role name, username, project/accommodation name).
"""

from decimal import Decimal

from invoicehub.db import SessionLocal, Base, engine
from invoicehub.models.models import User, Role, BillerProfile, Project, Accommodation
from invoicehub.auth.security import get_password_hash


ROLES = {
    "admin": "Administrator",
    "director": "Director",
    "manager": "Site manager",
    "accountant": "Accountant",
    "worker": "Subcontractor",
}


def ensure_role(session, name: str, description: str = "") -> Role:
    role = session.query(Role).filter(Role.name == name).first()
    if role:
        if description and role.description != description:
            role.description = description
        return role
    role = Role(name=name, description=description or name.title())
    session.add(role)
    session.flush()
    return role


def ensure_user(session, username: str, email: str, password: str, roles: list) -> User:
    user = session.query(User).filter((User.username == username) | (User.email == email)).first()
    if user is None:
        user = User(username=username, email=email, password_hash=get_password_hash(password), is_active=True)
        session.add(user)
        session.flush()
    user.roles = session.query(Role).filter(Role.name.in_(roles)).all()
    session.flush()
    return user


def ensure_profile(session, user: User, **fields) -> BillerProfile:
    profile = session.query(BillerProfile).filter(BillerProfile.user_id == user.id).first()
    if profile is None:
        profile = BillerProfile(user_id=user.id, **fields)
        session.add(profile)
    else:
        for k, v in fields.items():
            setattr(profile, k, v)
    session.flush()
    return profile


def ensure_named(session, model, name: str, **fields):
    row = session.query(model).filter(model.name == name).first()
    if row is None:
        row = model(name=name, **fields)
        session.add(row)
        session.flush()
    return row


def main() -> None:
    # Ensure tables exist (safe for SQLite dev)
    Base.metadata.create_all(bind=engine)

    session = SessionLocal()
    try:
        for name, description in ROLES.items():
            ensure_role(session, name, description)

        ensure_user(session, "admin.user", "admin@example.com", "TestAdmin123!", ["admin"])
        ensure_user(session, "anna.accountant", "anna.accountant@example.com", "TestUser123!", ["accountant"])

        peter = ensure_user(session, "peter.novak", "peter.novak@example.com", "TestUser123!", ["worker"])
        ensure_profile(
            session,
            peter,
            full_name="Peter Novak",
            address="Hlavna 12, 811 01 Bratislava",
            ico="50123456",
            dic="1087654321",
            iban="SK31 1200 0000 1987 4263 7541",
            swift_bic="TATRSKBX",
            contract_number="ZoD-2024-017",
            hourly_rate=Decimal("18.50"),
            is_vat_payer=False,
            billing_class="standard",
        )

        viktor = ensure_user(session, "viktor.retainer", "viktor@example.com", "TestUser123!", ["worker"])
        ensure_profile(
            session,
            viktor,
            full_name="Viktor Retainer",
            address="Mierova 4, 821 05 Bratislava",
            iban="SK89 0900 0000 0051 2345 6789",
            hourly_rate=Decimal("20.00"),
            billing_class="retainer",
        )

        ensure_named(session, Project, "Residential block Ruzinov", client="TKJD, s. r. o.")
        ensure_named(session, Accommodation, "Worker housing Zalobin", address="Zalobin 114", default_price_per_night=Decimal("15.00"))

        session.commit()
        print("Seed data ready")
    finally:
        session.close()


if __name__ == "__main__":
    main()
