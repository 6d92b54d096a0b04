"""
Seed development data for the authorization server.
Run after migrations: python scripts/seed_oauth.py

Creates:
  - public_test_client_001: public client (PKCE), redirect http://localhost:3000/callback
  - dev_confidential_client: confidential client; its secret is printed once
  - a test user and an admin user
"""

import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from authserver.core.database import SessionLocal
from authserver.schemas.client import ClientCreate
from authserver.schemas.user import UserCreate, UserRole
from authserver.services.client_service import client_registry
from authserver.services.user_service import user_service

CLIENTS = [
    ClientCreate(
        client_id="public_test_client_001",
        name="Public Test Client",
        description="Single-page test application using PKCE",
        redirect_uris=["http://localhost:3000/callback"],
        confidential=False,
        pkce_required=True,
    ),
    ClientCreate(
        client_id="dev_confidential_client",
        name="Development Backend",
        description="Server-side application authenticating with a client secret",
        redirect_uris=["http://localhost:4000/oauth/callback"],
        confidential=True,
        pkce_required=False,
    ),
]

USERS = [
    UserCreate(
        username="testuser",
        name="Test User",
        email="testuser@example.com",
        email_verified=True,
        company="Example Corp",
        job_title="Engineer",
    ),
    UserCreate(
        username="admin",
        name="Administrator",
        email="admin@example.com",
        email_verified=True,
        role=UserRole.ADMIN,
    ),
]


def main():
    db = SessionLocal()
    try:
        for data in CLIENTS:
            if client_registry.lookup(db, data.client_id):
                print(f"Client {data.client_id} already exists. Skipping.")
                continue
            client, secret = client_registry.create_client(db, data)
            print(f"Created client {client.client_id}")
            if secret:
                print(f"  client_secret (shown once): {secret}")

        for data in USERS:
            if user_service.get_user_by_username(db, data.username):
                print(f"User {data.username} already exists. Skipping.")
                continue
            user = user_service.create_user(db, data)
            print(f"Created user {user.username} (id={user.id})")
    finally:
        db.close()


if __name__ == "__main__":
    main()
