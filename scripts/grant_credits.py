#!/usr/bin/env python3
"""Grant credits to a user by email."""
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from marketplace.auth.users import UserDirectory
from marketplace.cost.database import Database
from marketplace.cost.ledger import CreditLedger
from marketplace.errors import MarketplaceError


def grant_credits(database: Database, email: str, amount: str, description: str):
    user = UserDirectory(database).find_by_email(email)
    if user is None:
        print(f"No user with email '{email}'")
        sys.exit(1)

    ledger = CreditLedger(database)
    ledger.open_account(user.id)
    transaction = ledger.credit(user.id, amount, description, metadata={"source": "script"})
    print(f"Granted {amount} credits to {email}")
    print(f"New balance: {transaction.balance_after}")


if __name__ == "__main__":
    if len(sys.argv) < 3:
        print("Usage: python scripts/grant_credits.py <email> <amount> [description]")
        print("Example: python scripts/grant_credits.py 'dev@example.com' 25 'Welcome bonus'")
        sys.exit(1)

    database = Database()
    try:
        grant_credits(
            database,
            sys.argv[1],
            sys.argv[2],
            sys.argv[3] if len(sys.argv) > 3 else "Admin credit grant",
        )
    except MarketplaceError as e:
        print(f"Error granting credits: {e.message}")
        sys.exit(1)
    finally:
        database.close()
