#!/usr/bin/env python3
"""
Seed the operator account used for dead-letter replay and orphan-queue inspection.

Reads SUPER_ADMIN_EMAIL and SUPER_ADMIN_PASSWORD from .env file.
Run from project root: python scripts/seed_super_admin.py
"""

import os
import sys

from dotenv import load_dotenv

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
load_dotenv(os.path.join(project_root, ".env"))

import bcrypt as bcrypt_lib
from src.auth.jwt import create_super_admin_token
from src.db import supabase


def hash_password(password: str) -> str:
    return bcrypt_lib.hashpw(password.encode(), bcrypt_lib.gensalt()).decode()


def main():
    email = os.getenv("SUPER_ADMIN_EMAIL")
    password = os.getenv("SUPER_ADMIN_PASSWORD")

    if not email or not password:
        print("Error: SUPER_ADMIN_EMAIL and SUPER_ADMIN_PASSWORD must be set in .env")
        sys.exit(1)

    existing = supabase.table("super_admins").select("id").eq("email", email).execute()
    if existing.data:
        super_admin_id = existing.data[0]["id"]
        print(f"Super-admin with email '{email}' already exists.")
    else:
        result = supabase.table("super_admins").insert({
            "email": email,
            "password_hash": hash_password(password),
            "name": "Operator",
        }).execute()
        if not result.data:
            print("Error: Failed to create super-admin")
            sys.exit(1)
        super_admin_id = result.data[0]["id"]
        print(f"Created super-admin {super_admin_id} ({email})")

    # Operator tooling authenticates with a bearer JWT; print one for immediate use.
    print(f"Token: {create_super_admin_token(super_admin_id)}")


if __name__ == "__main__":
    main()
