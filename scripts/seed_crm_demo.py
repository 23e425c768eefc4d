#!/usr/bin/env python3
from __future__ import annotations

import argparse
from datetime import datetime, timedelta, timezone

from crm_shared import actor_for_user, hash_password
from services.crm_lifecycle import (
    change_contact_status,
    create_contact,
    create_deal,
    create_task,
    update_deal,
)
from shared.db import SessionLocal, Tenant, User, init_db

DEMO_USERS = [
    ("founder", "Founder", "Founder"),
    ("ceo", "CEO", "CEO"),
    ("cto1", "CTO One", "CTO"),
    ("cto2", "CTO Two", "CTO"),
    ("dev1", "Developer One", "Developer"),
    ("dev2", "Developer Two", "Developer"),
]

DEMO_CONTACTS = [
    {
        "name": "John Smith",
        "companyName": "TechStart Inc",
        "designation": "CTO",
        "email": "john.smith@techstart.example",
        "industry": "Technology",
        "source": "Website",
        "notes": "Interested in AI/ML solutions for their platform.",
    },
    {
        "name": "Sarah Johnson",
        "companyName": "Innovation Labs",
        "designation": "Product Manager",
        "email": "sarah@innovationlabs.example",
        "industry": "Technology",
        "source": "Cold Outreach",
    },
    {
        "name": "Michael Chen",
        "companyName": "HealthTech Solutions",
        "designation": "Chief Medical Officer",
        "email": "m.chen@healthtech.example",
        "industry": "Healthcare",
        "source": "Referral",
    },
    {
        "name": "Lisa Wang",
        "companyName": "Digital Solutions Corp",
        "designation": "VP of Technology",
        "email": "lisa.wang@digitalsolutions.example",
        "industry": "Technology",
        "source": "Referral",
    },
    {
        "name": "Robert Davis",
        "companyName": "Finance Forward",
        "designation": "Director of IT",
        "email": "r.davis@financeforward.example",
        "industry": "Finance",
        "source": "Inbound",
    },
]


def utc_iso(days_offset: int = 0) -> str:
    dt = datetime.now(timezone.utc) + timedelta(days=days_offset)
    return dt.isoformat().replace("+00:00", "Z")


def seed_identity(slug: str, name: str, domain: str, password: str) -> dict:
    db = SessionLocal()
    try:
        tenant = db.query(Tenant).filter_by(slug=slug).one_or_none()
        if not tenant:
            tenant = Tenant(slug=slug, name=name)
            db.add(tenant)
            db.flush()
        users = {}
        for username, display_name, role in DEMO_USERS:
            email = f"{username}@{domain}"
            user = db.query(User).filter_by(email=email).one_or_none()
            if not user:
                user = User(
                    tenant_id=tenant.id,
                    username=f"{slug}.{username}",
                    email=email,
                    display_name=display_name,
                    password_hash=hash_password(password),
                    role=role,
                )
                db.add(user)
                db.flush()
            users[username] = actor_for_user(user)
        db.commit()
        return users
    finally:
        db.close()


def seed_pipeline(users: dict) -> None:
    founder = users["founder"]
    contacts = [create_contact(founder, payload) for payload in DEMO_CONTACTS]

    create_deal(
        founder,
        {
            "dealName": "AI Platform Integration",
            "contactId": contacts[0]["id"],
            "stage": "Proposal Sent",
            "value": 75000,
            "endDate": utc_iso(30),
        },
    )
    mobile = create_deal(
        founder,
        {
            "dealName": "Mobile App Development",
            "contactId": contacts[1]["id"],
            "stage": "Negotiation",
            "value": 45000,
            "endDate": utc_iso(15),
        },
    )

    # Walk two contacts through the pipeline so the cascades create deals and projects.
    change_contact_status(founder, contacts[3]["id"], "Negotiation")
    change_contact_status(founder, contacts[3]["id"], "Won")
    change_contact_status(founder, contacts[4]["id"], "Lost")
    won = update_deal(founder, mobile["id"], {"stage": "Won"})

    create_task(
        users["cto1"],
        {
            "title": "Prepare proposal deck",
            "description": "Pricing and rollout plan for TechStart.",
            "priority": "High",
            "dueDate": utc_iso(3),
            "assignedToEmail": users["dev1"].email,
        },
    )
    create_task(
        users["cto1"],
        {
            "title": "Kick-off call for mobile app",
            "priority": "Medium",
            "dueDate": utc_iso(5),
            "assignedToEmail": users["dev2"].email,
            "dealId": won["id"],
        },
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed a CRM demo tenant with users and pipeline data")
    parser.add_argument("--slug", default="demo", help="Tenant slug")
    parser.add_argument("--name", default="Demo Agency", help="Tenant display name")
    parser.add_argument("--domain", default="demo.example", help="Email domain for the demo users")
    parser.add_argument("--password", required=True, help="Password given to every demo user")
    args = parser.parse_args()

    init_db()
    users = seed_identity(args.slug, args.name, args.domain, args.password)
    seed_pipeline(users)
    print(f"Seeded CRM demo data for tenant {args.slug} ({users['founder'].tenant_id})")


if __name__ == "__main__":
    main()
