"""Seed the database with a demo company: one team, a user per role, approval rules, and credits."""

from datetime import timedelta

from creditflow.core.clock import utcnow
from creditflow.core.database import SessionLocal
from creditflow.models import ApprovalRule, Company, Team, TeamMembership, User
from creditflow.services.auth import create_access_token
from creditflow.services.ledger import get_account, provision_account

SEED_COMPANY = "Acme Research (Seed)"
SEED_TEAM = "Strategy"
SEED_CREDITS = 1000

# Listed in tenure order; the owner joined first.
SEED_USERS = [
    {"email": "owner@acme.example", "display_name": "Olu Owner", "role": "owner"},
    {"email": "admin@acme.example", "display_name": "Ada Admin", "role": "admin"},
    {"email": "approver@acme.example", "display_name": "Avi Approver", "role": "approver"},
    {"email": "member@acme.example", "display_name": "Mei Member", "role": "member"},
]

# Team approvers handle everyday requests; large ones start with an admin.
SEED_RULES = [
    {"min_credits": 0, "max_credits": 2000, "approver_role": "approver", "escalation_hours": 48, "priority": 1},
    {"min_credits": 2000, "max_credits": None, "approver_role": "admin", "escalation_hours": 24, "priority": 2},
]


def seed_directory() -> tuple[Company, list[User]]:
    """Insert the demo directory, its approval rules, and fund its account. Safe to run twice."""
    db = SessionLocal()
    now = utcnow()
    try:
        company = db.query(Company).filter(Company.name == SEED_COMPANY).first()
        if company is None:
            company = Company(name=SEED_COMPANY, created_at=now)
            db.add(company)
            db.flush()

        team = db.query(Team).filter(Team.company_id == company.id, Team.name == SEED_TEAM).first()
        if team is None:
            team = Team(company_id=company.id, name=SEED_TEAM, created_at=now)
            db.add(team)
            db.flush()

        users: list[User] = []
        for offset, data in enumerate(SEED_USERS):
            user = db.query(User).filter(User.email == data["email"]).first()
            if user is None:
                user = User(email=data["email"], display_name=data["display_name"], created_at=now)
                db.add(user)
                db.flush()
                db.add(
                    TeamMembership(
                        team_id=team.id,
                        user_id=user.id,
                        role=data["role"],
                        created_at=now + timedelta(seconds=offset),
                    )
                )
            users.append(user)

        if db.query(ApprovalRule).filter(ApprovalRule.company_id == company.id).first() is None:
            for rule in SEED_RULES:
                db.add(ApprovalRule(company_id=company.id, created_at=now, updated_at=now, **rule))

        if get_account(db, company.id) is None:
            provision_account(db, company.id, now=now, initial_credits=SEED_CREDITS)

        db.commit()
        db.refresh(company)
        for user in users:
            db.refresh(user)
        return company, users
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    company, users = seed_directory()
    print(f"Company: {company.name} (id={company.id}), {SEED_CREDITS} credits")
    for user, data in zip(users, SEED_USERS):
        print(f"  {data['role']:<9} {user.email}  token={create_access_token(user.id)}")
