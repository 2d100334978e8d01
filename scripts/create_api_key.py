#!/usr/bin/env python3
"""Utility script to issue a platform API key, creating the user if needed."""
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from marketplace.auth.api_key import ApiKeyService
from marketplace.auth.users import UserDirectory
from marketplace.cost.database import Database
from marketplace.cost.ledger import CreditLedger
from marketplace.errors import MarketplaceError


def create_api_key(
    database: Database,
    email: str,
    name: str,
    quota_limit: int = None,
    allowed_models: list = None,
):
    """Create user and credit account if missing, then issue a key."""
    users = UserDirectory(database)
    user = users.find_by_email(email)
    if user is None:
        user = users.create(email)
        print(f"User '{email}' created (id: {user.id})")
    CreditLedger(database).open_account(user.id)

    api_key, raw_key = ApiKeyService(database).create(
        user.id, name, allowed_models=allowed_models, quota_limit=quota_limit
    )
    print(f"API key '{name}' created successfully!")
    print(f"Key ID: {api_key.id}")
    print(f"Key (save this securely, it is not shown again): {raw_key}")
    print(f"Quota: {quota_limit if quota_limit is not None else 'unlimited'}")
    if allowed_models:
        print(f"Allowed models: {', '.join(allowed_models)}")


if __name__ == "__main__":
    if len(sys.argv) < 3:
        print("Usage: python scripts/create_api_key.py <email> <name> [quota_limit] [model,model...]")
        print("Example: python scripts/create_api_key.py 'dev@example.com' 'test-key' 1000 'claude-fast'")
        sys.exit(1)

    email = sys.argv[1]
    name = sys.argv[2]
    quota = int(sys.argv[3]) if len(sys.argv) > 3 else None
    models = [m.strip() for m in sys.argv[4].split(",") if m.strip()] if len(sys.argv) > 4 else None

    database = Database()
    try:
        database.init_db()
        create_api_key(database, email, name, quota, models)
    except MarketplaceError as e:
        print(f"Error creating API key: {e.message}")
        sys.exit(1)
    finally:
        database.close()
