#!/usr/bin/env python3
"""Show recent proxied requests and spend per model."""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import func, select

from marketplace.cost.database import Database
from marketplace.cost.models import ApiRequest, ShadowModel, User, UserCredits


def show_usage(database: Database, limit: int = 20):
    with database.session() as session:
        rows = session.execute(
            select(ApiRequest, ShadowModel.display_name, User.email)
            .join(ShadowModel, ApiRequest.model_id == ShadowModel.id)
            .join(User, ApiRequest.user_id == User.id)
            .order_by(ApiRequest.created_at.desc())
            .limit(limit)
        ).all()

        print(f"\n=== Recent Requests (last {limit}) ===\n")
        total_cost = 0
        for request, model_name, email in rows:
            print(f"{request.created_at}  {email}  {model_name}  status={request.status_code}")
            print(f"  Tokens: {request.tokens_input} in + {request.tokens_output} out")
            print(f"  Cost: {float(request.cost):.6f}  Duration: {request.duration_ms}ms")
            if request.error_message:
                print(f"  Error: {request.error_message}")
            total_cost += float(request.cost)

        print(f"\nTotal cost (shown requests): {total_cost:.6f}\n")

        print("=== Cost by Model ===\n")
        by_model = session.execute(
            select(
                ShadowModel.display_name,
                func.sum(ApiRequest.cost).label("total_cost"),
                func.count(ApiRequest.id).label("request_count"),
            )
            .join(ShadowModel, ApiRequest.model_id == ShadowModel.id)
            .group_by(ShadowModel.display_name)
        ).all()
        for model_name, cost, count in by_model:
            print(f"{model_name}: {float(cost or 0):.6f} ({count} requests)")

        print("\n=== Balances ===\n")
        balances = session.execute(
            select(User.email, UserCredits.balance, UserCredits.total_purchased, UserCredits.total_consumed)
            .join(UserCredits, UserCredits.user_id == User.id)
            .order_by(User.email)
        ).all()
        for email, balance, purchased, consumed in balances:
            print(f"{email}: balance {float(balance):.6f} (purchased {float(purchased):.6f}, consumed {float(consumed):.6f})")


if __name__ == "__main__":
    database = Database()
    try:
        show_usage(database, int(sys.argv[1]) if len(sys.argv) > 1 else 20)
    finally:
        database.close()
